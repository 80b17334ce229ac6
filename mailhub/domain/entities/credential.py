"""Credential domain entity and the read-only lease handed to adapters."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from mailhub.domain.enums import BackendKind, CredentialState


@dataclass(frozen=True)
class Credential:
    """Per-account OAuth credential.

    Owned by the credential lifecycle manager. Replaced wholesale on every
    refresh; marked revoked (never deleted) when the backend rejects the
    refresh token permanently.
    """

    account_id: str
    backend_kind: BackendKind
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    state: CredentialState = CredentialState.ACTIVE
    revoked_at: datetime | None = None
    version: int = 1

    @property
    def is_revoked(self) -> bool:
        return self.state == CredentialState.REVOKED

    def needs_refresh(self, now: datetime, safety_margin: timedelta) -> bool:
        """True when expiry is within the safety margin of now."""
        return self.expires_at - now <= safety_margin

    def refreshed(
        self,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> Credential:
        """Return the replacement credential after a successful refresh.

        The previous refresh token is kept only when the backend did not issue
        a new one.
        """
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            state=CredentialState.ACTIVE,
            revoked_at=None,
            version=self.version + 1,
        )

    def revoked(self, at: datetime) -> Credential:
        return replace(self, state=CredentialState.REVOKED, revoked_at=at)

    def __repr__(self) -> str:
        return (
            f"Credential(account_id={self.account_id!r}, backend_kind={self.backend_kind.value!r}, "
            f"expires_at={self.expires_at.isoformat()!r}, state={self.state.value!r}, "
            f"version={self.version})"
        )


@dataclass(frozen=True)
class CredentialLease:
    """Time-boxed, read-only view of a live credential for one adapter binding."""

    account_id: str
    backend_kind: BackendKind
    access_token: str
    expires_at: datetime
    credential_version: int

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def __repr__(self) -> str:
        return (
            f"CredentialLease(account_id={self.account_id!r}, "
            f"expires_at={self.expires_at.isoformat()!r}, version={self.credential_version})"
        )
