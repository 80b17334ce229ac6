"""Adapter factory: closed mapping from backend kind to adapter class."""

from typing import ClassVar

import httpx

from mailhub.core.config import Settings
from mailhub.domain.entities import CredentialLease
from mailhub.domain.enums import BackendKind
from mailhub.infrastructure.external.email.protocols import IMailboxAdapter
from mailhub.infrastructure.external.email.providers.gmail_provider import GmailAdapter
from mailhub.infrastructure.external.email.providers.outlook_provider import OutlookAdapter
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class AdapterFactory:
    """Creates the adapter for a lease's backend kind.

    Adding a backend means adding a BackendKind member and an entry here;
    call sites never branch on backend identity.
    """

    _adapters: ClassVar[dict[BackendKind, type[IMailboxAdapter]]] = {
        BackendKind.GMAIL: GmailAdapter,
        BackendKind.OUTLOOK: OutlookAdapter,
    }

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client

    def create_adapter(self, lease: CredentialLease) -> IMailboxAdapter:
        """Create an adapter bound to lease.

        Raises:
            ValueError: If the backend kind has no adapter.
        """
        adapter_class = self._adapters.get(lease.backend_kind)
        if adapter_class is None:
            raise ValueError(
                f"Unsupported backend: {lease.backend_kind}. "
                f"Supported: {self.list_supported_backends()}"
            )
        logger.debug("Creating %s for account %s", adapter_class.__name__, lease.account_id)
        if lease.backend_kind == BackendKind.GMAIL:
            return GmailAdapter(
                lease,
                pubsub_topic=self._settings.gmail_pubsub_topic or None,
                watch_label_ids=self._settings.gmail_watch_labels,
            )
        return OutlookAdapter(
            lease,
            http_client=self._http_client,
            graph_url=self._settings.graph_base_url,
            lifecycle_notification_url=self._settings.outlook_lifecycle_notification_url or None,
            timeout=self._settings.oauth_http_timeout_seconds,
        )

    @classmethod
    def list_supported_backends(cls) -> list[str]:
        return [kind.value for kind in cls._adapters]
