"""Outlook/Office 365 adapter using Microsoft Graph API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx

from mailhub.core.constants import GRAPH_MAIL_SUBSCRIPTION_MAX_MINUTES
from mailhub.domain.entities import (
    AttachmentDescriptor,
    ChangeDescriptor,
    CredentialLease,
    OutgoingMessage,
    UnifiedFolder,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.enums import BackendKind, ChangeKind
from mailhub.domain.exceptions import NotFoundException, ValidationException
from mailhub.infrastructure.external.email.errors import (
    translate_graph_response,
    translate_transport_error,
)
from mailhub.infrastructure.external.email.normalizer import escape_odata_string_literal
from mailhub.infrastructure.external.email.protocols import (
    ChangeBatch,
    NativeQuery,
    SubscriptionGrant,
)
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.utils.datetime import parse_iso_utc, to_iso_z

logger = get_logger(__name__)

DEFAULT_GRAPH_URL = "https://graph.microsoft.com/v1.0"
MESSAGE_FIELDS = (
    "id,conversationId,from,toRecipients,ccRecipients,bccRecipients,subject,"
    "receivedDateTime,isRead,parentFolderId,bodyPreview,body,hasAttachments"
)
ATTACHMENT_EXPAND = "attachments($select=id,name,contentType,size)"
SUBSCRIPTION_RESOURCE = "me/messages"
SUBSCRIPTION_CHANGE_TYPES = "created,updated,deleted"
DELTA_FOLDER = "inbox"
# Skip-style continuation ($search pages with $skip instead of $skiptoken).
_SKIP_PREFIX = "skip="


def _addresses(recipients: list[dict[str, Any]] | None) -> list[str]:
    return [
        r["emailAddress"]["address"]
        for r in recipients or []
        if r.get("emailAddress", {}).get("address")
    ]


def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


def continuation_token(next_link: str | None) -> str | None:
    """Extract the skip token from an @odata.nextLink (None when exhausted)."""
    if not next_link:
        return None
    params = httpx.URL(next_link).params
    if "$skiptoken" in params:
        return params["$skiptoken"]
    if "$skip" in params:
        return f"{_SKIP_PREFIX}{params['$skip']}"
    return None


class OutlookAdapter:
    """Outlook adapter bound to one account's credential lease.

    A message lives in exactly one folder, so add_to_unit is a move and the
    moved message comes back under a new id.
    """

    backend_kind = BackendKind.OUTLOOK
    max_subscription_lifetime_minutes = GRAPH_MAIL_SUBSCRIPTION_MAX_MINUTES

    def __init__(
        self,
        lease: CredentialLease,
        *,
        http_client: httpx.AsyncClient | None = None,
        graph_url: str = DEFAULT_GRAPH_URL,
        lifecycle_notification_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._lease = lease
        self._shared_http = http_client
        self._graph_url = graph_url.rstrip("/")
        self._lifecycle_url = lifecycle_notification_url
        self._timeout = timeout

    @property
    def lease(self) -> CredentialLease:
        return self._lease

    @asynccontextmanager
    async def _http_cm(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield shared HTTP client or a short-lived one (connection reuse when shared)."""
        if self._shared_http is not None:
            yield self._shared_http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def _request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        resource: tuple[str, str] | None = None,
    ) -> httpx.Response:
        url = path_or_url if path_or_url.startswith("http") else f"{self._graph_url}{path_or_url}"
        headers = {"Authorization": f"Bearer {self._lease.access_token}"}
        try:
            async with self._http_cm() as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=headers
                )
        except httpx.TransportError as e:
            raise translate_transport_error(e, BackendKind.OUTLOOK) from e
        if response.is_error:
            logger.debug("Graph %s %s failed: %d", method, url, response.status_code)
            raise translate_graph_response(
                response, account_id=self._lease.account_id, resource=resource
            )
        return response

    async def _get_all(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Follow @odata.nextLink until the collection is exhausted."""
        items: list[dict[str, Any]] = []
        next_link: str | None = None
        while True:
            if next_link:
                response = await self._request("GET", next_link)
            else:
                response = await self._request("GET", path, params=params)
            data = response.json()
            items.extend(data.get("value", []))
            next_link = data.get("@odata.nextLink")
            if not next_link:
                return items

    # ---- messages ----

    async def list_messages(
        self,
        *,
        unit_id: str | None,
        query: NativeQuery,
        page_token: str | None,
        page_size: int,
    ) -> tuple[list[UnifiedMessage], str | None]:
        path = f"/me/mailFolders/{unit_id}/messages" if unit_id else "/me/messages"
        params: dict[str, Any] = {"$top": page_size, "$select": MESSAGE_FIELDS}
        if query.text:
            params["$search"] = query.text
        elif query.filter:
            params["$filter"] = query.filter
        else:
            params["$orderby"] = "receivedDateTime desc"
        if page_token:
            if page_token.startswith(_SKIP_PREFIX):
                params["$skip"] = page_token[len(_SKIP_PREFIX) :]
            else:
                params["$skiptoken"] = page_token
        resource = ("folder", unit_id) if unit_id else None
        response = await self._request("GET", path, params=params, resource=resource)
        data = response.json()
        messages = [self._parse_message(item) for item in data.get("value", [])]
        return messages, continuation_token(data.get("@odata.nextLink"))

    async def get_message(self, message_id: str) -> UnifiedMessage:
        response = await self._request(
            "GET",
            f"/me/messages/{message_id}",
            params={"$select": MESSAGE_FIELDS, "$expand": ATTACHMENT_EXPAND},
            resource=("message", message_id),
        )
        return self._parse_message(response.json())

    def _message_body(self, message: OutgoingMessage) -> dict[str, Any]:
        if message.body_html is not None:
            body = {"contentType": "HTML", "content": message.body_html}
        else:
            body = {"contentType": "Text", "content": message.body_text or ""}
        return {
            "subject": message.subject,
            "body": body,
            "toRecipients": _recipients(message.to),
            "ccRecipients": _recipients(message.cc),
            "bccRecipients": _recipients(message.bcc),
        }

    async def send_message(self, message: OutgoingMessage) -> str | None:
        """Send; a thread_id replies to the newest message of that conversation.

        Graph does not return the sent message id, so this returns None.
        """
        payload = self._message_body(message)
        if message.thread_id:
            latest = await self._latest_in_conversation(message.thread_id)
            payload.pop("subject")
            await self._request(
                "POST",
                f"/me/messages/{latest}/reply",
                json={"message": payload},
                resource=("message", latest),
            )
        else:
            await self._request(
                "POST", "/me/sendMail", json={"message": payload, "saveToSentItems": True}
            )
        logger.info("Outlook message sent for account %s", self._lease.account_id)
        return None

    async def _latest_in_conversation(self, conversation_id: str) -> str:
        messages = await self._conversation_messages(conversation_id, select="id,receivedDateTime")
        if not messages:
            raise NotFoundException("thread", conversation_id)
        return max(messages, key=lambda m: (m["receivedDateTime"], m["id"]))["id"]

    async def delete_message(self, message_id: str) -> None:
        await self._request(
            "DELETE", f"/me/messages/{message_id}", resource=("message", message_id)
        )

    async def set_read_state(self, message_id: str, is_read: bool) -> None:
        await self._request(
            "PATCH",
            f"/me/messages/{message_id}",
            json={"isRead": is_read},
            resource=("message", message_id),
        )

    async def add_to_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        """Move: the previous folder membership is dropped by the backend."""
        response = await self._request(
            "POST",
            f"/me/messages/{message_id}/move",
            json={"destinationId": unit_id},
            resource=("message", message_id),
        )
        moved = self._parse_message(response.json())
        logger.debug("Outlook message %s moved to %s as %s", message_id, unit_id, moved.id)
        return moved

    async def remove_from_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        raise ValidationException(
            "Outlook messages always belong to exactly one folder", field="unit_id"
        )

    def _parse_message(self, item: dict[str, Any]) -> UnifiedMessage:
        """Parse Graph API message into UnifiedMessage."""
        body = item.get("body") or {}
        content = body.get("content")
        is_html = str(body.get("contentType", "")).lower() == "html"
        sender = (item.get("from") or {}).get("emailAddress", {}).get("address", "")
        attachments = [
            AttachmentDescriptor(
                id=a["id"],
                filename=a.get("name", ""),
                mime_type=a.get("contentType", "application/octet-stream"),
                size=int(a.get("size", 0)),
            )
            for a in item.get("attachments", [])
        ]
        folder = item.get("parentFolderId")
        return UnifiedMessage(
            id=item["id"],
            thread_id=item.get("conversationId"),
            sender=sender,
            to=_addresses(item.get("toRecipients")),
            cc=_addresses(item.get("ccRecipients")),
            bcc=_addresses(item.get("bccRecipients")),
            subject=item.get("subject") or "",
            received_at=parse_iso_utc(item["receivedDateTime"]),
            is_read=bool(item.get("isRead", False)),
            labels=[folder] if folder else [],
            body_text=None if is_html else content,
            body_html=content if is_html else None,
            snippet=item.get("bodyPreview", ""),
            attachments=attachments,
        )

    # ---- folders ----

    async def list_folders(self) -> list[UnifiedFolder]:
        items = await self._get_all("/me/mailFolders", {"$top": 100})
        return [self._parse_folder(item) for item in items]

    async def create_folder(self, name: str, parent_id: str | None = None) -> UnifiedFolder:
        path = f"/me/mailFolders/{parent_id}/childFolders" if parent_id else "/me/mailFolders"
        resource = ("folder", parent_id) if parent_id else None
        response = await self._request(
            "POST", path, json={"displayName": name}, resource=resource
        )
        folder = self._parse_folder(response.json())
        logger.info("Outlook folder created: %s", folder.id)
        return folder

    async def update_folder(self, folder_id: str, name: str) -> UnifiedFolder:
        response = await self._request(
            "PATCH",
            f"/me/mailFolders/{folder_id}",
            json={"displayName": name},
            resource=("folder", folder_id),
        )
        return self._parse_folder(response.json())

    async def delete_folder(self, folder_id: str) -> None:
        await self._request(
            "DELETE", f"/me/mailFolders/{folder_id}", resource=("folder", folder_id)
        )

    def _parse_folder(self, item: dict[str, Any]) -> UnifiedFolder:
        return UnifiedFolder(
            id=item["id"],
            name=item.get("displayName", ""),
            native_id=item["id"],
            unread_count=int(item.get("unreadItemCount", 0)),
            total_count=int(item.get("totalItemCount", 0)),
        )

    # ---- conversations and attachments ----

    async def _conversation_messages(
        self, conversation_id: str, *, select: str = MESSAGE_FIELDS
    ) -> list[dict[str, Any]]:
        conversation = escape_odata_string_literal(conversation_id)
        return await self._get_all(
            "/me/messages",
            {"$filter": f"conversationId eq '{conversation}'", "$select": select},
        )

    async def get_thread(self, thread_id: str) -> UnifiedThread:
        items = await self._conversation_messages(thread_id)
        if not items:
            raise NotFoundException("thread", thread_id)
        messages = [self._parse_message(item) for item in items]
        return UnifiedThread(
            id=thread_id, message_ids=[m.id for m in messages], messages=messages
        )

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        response = await self._request(
            "GET",
            f"/me/messages/{message_id}/attachments/{attachment_id}/$value",
            resource=("attachment", attachment_id),
        )
        return response.content

    # ---- change-notification subscriptions ----

    async def create_subscription(
        self,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        body: dict[str, Any] = {
            "changeType": SUBSCRIPTION_CHANGE_TYPES,
            "notificationUrl": callback_url,
            "resource": SUBSCRIPTION_RESOURCE,
            "expirationDateTime": to_iso_z(expires_at),
            "clientState": client_secret,
        }
        if self._lifecycle_url:
            body["lifecycleNotificationUrl"] = self._lifecycle_url
        response = await self._request("POST", "/subscriptions", json=body)
        data = response.json()
        logger.info(
            "Graph subscription %s created for account %s", data["id"], self._lease.account_id
        )
        return SubscriptionGrant(
            backend_subscription_id=data["id"],
            expires_at=parse_iso_utc(data["expirationDateTime"]),
        )

    async def renew_subscription(
        self,
        backend_subscription_id: str,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        response = await self._request(
            "PATCH",
            f"/subscriptions/{backend_subscription_id}",
            json={"expirationDateTime": to_iso_z(expires_at)},
            resource=("subscription", backend_subscription_id),
        )
        data = response.json()
        return SubscriptionGrant(
            backend_subscription_id=data.get("id", backend_subscription_id),
            expires_at=parse_iso_utc(data["expirationDateTime"]),
        )

    async def cancel_subscription(self, backend_subscription_id: str) -> None:
        await self._request(
            "DELETE",
            f"/subscriptions/{backend_subscription_id}",
            resource=("subscription", backend_subscription_id),
        )
        logger.info("Graph subscription %s deleted", backend_subscription_id)

    # ---- incremental changes ----

    async def list_changes(self, cursor: str | None) -> ChangeBatch:
        """Inbox delta query. cursor is the deltaLink from the previous round."""
        changes: list[ChangeDescriptor] = []
        url = cursor or f"{self._graph_url}/me/mailFolders/{DELTA_FOLDER}/messages/delta"
        params = None if cursor else {"$select": "id,conversationId"}
        while True:
            response = await self._request("GET", url, params=params)
            data = response.json()
            for item in data.get("value", []):
                kind = ChangeKind.DELETED if "@removed" in item else ChangeKind.UPDATED
                changes.append(
                    ChangeDescriptor(
                        kind=kind, message_id=item["id"], thread_id=item.get("conversationId")
                    )
                )
            if "@odata.nextLink" in data:
                url, params = data["@odata.nextLink"], None
                continue
            return ChangeBatch(changes=changes, next_cursor=data.get("@odata.deltaLink"))

    async def close(self) -> None:
        # Shared clients are owned by the caller; short-lived ones close per request.
        return None
