"""Gmail adapter using Gmail API with batch and history support."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
from typing import Any

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailhub.core.constants import GMAIL_WATCH_MAX_LIFETIME_DAYS
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
from mailhub.domain.exceptions import MailhubException, NotFoundException, ValidationException
from mailhub.infrastructure.external.email.errors import (
    translate_gmail_http_error,
    translate_transport_error,
)
from mailhub.infrastructure.external.email.protocols import (
    ChangeBatch,
    NativeQuery,
    SubscriptionGrant,
)
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.utils.datetime import from_timestamp_ms_utc

logger = get_logger(__name__)

BATCH_SIZE = 100
HISTORY_PAGE_SIZE = 500
UNREAD_LABEL = "UNREAD"

_HISTORY_KINDS = {
    "messagesAdded": ChangeKind.CREATED,
    "messagesDeleted": ChangeKind.DELETED,
    "labelsAdded": ChangeKind.UPDATED,
    "labelsRemoved": ChangeKind.UPDATED,
}


def _decode_b64url(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _addresses(value: str) -> list[str]:
    return [addr for _, addr in getaddresses([value]) if addr]


class GmailAdapter:
    """Gmail adapter bound to one account's credential lease.

    Every blocking googleapiclient call runs in a worker thread. The
    google-auth Credentials object carries only the leased access token, so
    the client library never refreshes on its own; refresh belongs to the
    credential lifecycle manager.
    """

    backend_kind = BackendKind.GMAIL
    max_subscription_lifetime_minutes = GMAIL_WATCH_MAX_LIFETIME_DAYS * 24 * 60

    def __init__(
        self,
        lease: CredentialLease,
        *,
        service: Any = None,
        pubsub_topic: str | None = None,
        watch_label_ids: list[str] | None = None,
    ) -> None:
        self._lease = lease
        self._service = service
        self._pubsub_topic = pubsub_topic
        self._watch_label_ids = watch_label_ids or ["INBOX"]

    @property
    def lease(self) -> CredentialLease:
        return self._lease

    async def _get_service(self) -> Any:
        if self._service is None:
            creds = Credentials(token=self._lease.access_token)
            self._service = await asyncio.to_thread(
                build, "gmail", "v1", credentials=creds, cache_discovery=False
            )
        return self._service

    async def _execute(self, request: Any, resource: tuple[str, str] | None = None) -> Any:
        """Run a prepared request off the event loop, translating failures."""
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise translate_gmail_http_error(
                e, account_id=self._lease.account_id, resource=resource
            ) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise translate_transport_error(e, BackendKind.GMAIL) from e

    async def _batch_execute(self, requests: dict[str, Any], resource_type: str) -> dict[str, Any]:
        """Execute requests via the batch endpoint, keyed by caller id.

        Items that vanished between listing and fetching are skipped; any other
        item failure fails the whole call.
        """
        service = await self._get_service()
        results: dict[str, Any] = {}
        failures: list[MailhubException] = []
        keys = list(requests)
        for start in range(0, len(keys), BATCH_SIZE):
            chunk = keys[start : start + BATCH_SIZE]

            def add_callback(key: str):
                def cb(request_id: str, response: Any, exception: Exception | None) -> None:
                    if exception is None:
                        results[key] = response
                        return
                    if isinstance(exception, HttpError):
                        error = translate_gmail_http_error(
                            exception,
                            account_id=self._lease.account_id,
                            resource=(resource_type, key),
                        )
                    else:
                        error = translate_transport_error(exception, BackendKind.GMAIL)
                    if isinstance(error, NotFoundException):
                        logger.warning("Gmail batch item %s %s is gone", resource_type, key)
                    else:
                        failures.append(error)

                return cb

            batch = service.new_batch_http_request()
            for key in chunk:
                batch.add(requests[key], callback=add_callback(key))
            await self._execute(batch)
            if failures:
                raise failures[0]
        return results

    # ---- messages ----

    async def list_messages(
        self,
        *,
        unit_id: str | None,
        query: NativeQuery,
        page_token: str | None,
        page_size: int,
    ) -> tuple[list[UnifiedMessage], str | None]:
        service = await self._get_service()
        params: dict[str, Any] = {"userId": "me", "maxResults": page_size}
        if unit_id:
            params["labelIds"] = [unit_id]
        if query.text:
            params["q"] = query.text
        if page_token:
            params["pageToken"] = page_token
        result = await self._execute(service.users().messages().list(**params))
        ids = [m["id"] for m in result.get("messages", [])]
        fetched = await self._batch_execute(
            {
                msg_id: service.users().messages().get(userId="me", id=msg_id, format="full")
                for msg_id in ids
            },
            "message",
        )
        messages = [self._parse_message(fetched[msg_id]) for msg_id in ids if msg_id in fetched]
        return messages, result.get("nextPageToken")

    async def get_message(self, message_id: str) -> UnifiedMessage:
        service = await self._get_service()
        msg = await self._execute(
            service.users().messages().get(userId="me", id=message_id, format="full"),
            ("message", message_id),
        )
        return self._parse_message(msg)

    async def _reply_headers(self, service: Any, thread_id: str) -> dict[str, str]:
        """In-Reply-To/References (and the subject) of the newest message in a thread.

        Gmail only threads a sent message when these match, threadId alone is not enough.
        """
        thread = await self._execute(
            service.users().threads().get(
                userId="me",
                id=thread_id,
                format="metadata",
                metadataHeaders=["Message-ID", "References", "Subject"],
            ),
            ("thread", thread_id),
        )
        messages = thread.get("messages") or []
        if not messages:
            return {}
        latest = max(messages, key=lambda m: int(m.get("internalDate", 0)))
        headers = {
            h["name"].lower(): h["value"] for h in latest.get("payload", {}).get("headers", [])
        }
        reply: dict[str, str] = {}
        message_id = headers.get("message-id")
        if message_id:
            reply["In-Reply-To"] = message_id
            reply["References"] = " ".join(filter(None, [headers.get("references"), message_id]))
        if headers.get("subject"):
            reply["Subject"] = headers["subject"]
        return reply

    async def send_message(self, message: OutgoingMessage) -> str | None:
        service = await self._get_service()
        reply = await self._reply_headers(service, message.thread_id) if message.thread_id else {}
        mime = EmailMessage()
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        if message.bcc:
            mime["Bcc"] = ", ".join(message.bcc)
        subject = message.subject
        if not subject and reply.get("Subject"):
            original = reply["Subject"]
            subject = original if original.lower().startswith("re:") else f"Re: {original}"
        mime["Subject"] = subject
        for name in ("In-Reply-To", "References"):
            if name in reply:
                mime[name] = reply[name]
        mime.set_content(message.body_text or "")
        if message.body_html is not None:
            mime.add_alternative(message.body_html, subtype="html")
        body: dict[str, Any] = {
            "raw": base64.urlsafe_b64encode(mime.as_bytes()).decode()
        }
        if message.thread_id:
            body["threadId"] = message.thread_id
        sent = await self._execute(service.users().messages().send(userId="me", body=body))
        logger.info("Gmail message sent for account %s", self._lease.account_id)
        return sent.get("id")

    async def delete_message(self, message_id: str) -> None:
        service = await self._get_service()
        await self._execute(
            service.users().messages().trash(userId="me", id=message_id),
            ("message", message_id),
        )

    async def set_read_state(self, message_id: str, is_read: bool) -> None:
        service = await self._get_service()
        body = {"removeLabelIds": [UNREAD_LABEL]} if is_read else {"addLabelIds": [UNREAD_LABEL]}
        await self._execute(
            service.users().messages().modify(userId="me", id=message_id, body=body),
            ("message", message_id),
        )

    async def add_to_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        """Union: the label joins whatever labels the message already has."""
        service = await self._get_service()
        await self._execute(
            service.users().messages().modify(
                userId="me", id=message_id, body={"addLabelIds": [unit_id]}
            ),
            ("message", message_id),
        )
        return await self.get_message(message_id)

    async def remove_from_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        service = await self._get_service()
        await self._execute(
            service.users().messages().modify(
                userId="me", id=message_id, body={"removeLabelIds": [unit_id]}
            ),
            ("message", message_id),
        )
        return await self.get_message(message_id)

    def _parse_message(self, msg: dict[str, Any]) -> UnifiedMessage:
        """Parse Gmail API message into UnifiedMessage."""
        payload = msg.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        label_ids = msg.get("labelIds", [])
        body_text, body_html, attachments = self._walk_parts(payload)
        sender = parseaddr(headers.get("from", ""))[1] or headers.get("from", "")
        return UnifiedMessage(
            id=msg["id"],
            thread_id=msg.get("threadId"),
            sender=sender,
            to=_addresses(headers.get("to", "")),
            cc=_addresses(headers.get("cc", "")),
            bcc=_addresses(headers.get("bcc", "")),
            subject=headers.get("subject", ""),
            received_at=from_timestamp_ms_utc(int(msg.get("internalDate", 0))),
            is_read=UNREAD_LABEL not in label_ids,
            labels=label_ids,
            body_text=body_text,
            body_html=body_html,
            snippet=msg.get("snippet", ""),
            attachments=attachments,
        )

    def _walk_parts(
        self, payload: dict[str, Any]
    ) -> tuple[str | None, str | None, list[AttachmentDescriptor]]:
        body_text: str | None = None
        body_html: str | None = None
        attachments: list[AttachmentDescriptor] = []
        stack = [payload]
        while stack:
            part = stack.pop(0)
            stack.extend(part.get("parts", []))
            body = part.get("body", {})
            mime_type = part.get("mimeType", "")
            if part.get("filename") and body.get("attachmentId"):
                attachments.append(
                    AttachmentDescriptor(
                        id=body["attachmentId"],
                        filename=part["filename"],
                        mime_type=mime_type,
                        size=int(body.get("size", 0)),
                    )
                )
                continue
            data = body.get("data")
            if not data:
                continue
            text = _decode_b64url(data).decode("utf-8", errors="replace")
            if mime_type == "text/plain" and body_text is None:
                body_text = text
            elif mime_type == "text/html" and body_html is None:
                body_html = text
        return body_text, body_html, attachments

    # ---- labels ----

    async def list_folders(self) -> list[UnifiedFolder]:
        service = await self._get_service()
        result = await self._execute(service.users().labels().list(userId="me"))
        labels = result.get("labels", [])
        detailed = await self._batch_execute(
            {
                label["id"]: service.users().labels().get(userId="me", id=label["id"])
                for label in labels
            },
            "label",
        )
        return [self._parse_label(detailed.get(label["id"], label)) for label in labels]

    async def create_folder(self, name: str, parent_id: str | None = None) -> UnifiedFolder:
        """Nested labels are expressed through a slash-separated name."""
        service = await self._get_service()
        if parent_id:
            parent = await self._execute(
                service.users().labels().get(userId="me", id=parent_id),
                ("label", parent_id),
            )
            name = f"{parent['name']}/{name}"
        body = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        created = await self._execute(service.users().labels().create(userId="me", body=body))
        logger.info("Gmail label created: %s", created.get("id"))
        return self._parse_label(created)

    async def update_folder(self, folder_id: str, name: str) -> UnifiedFolder:
        service = await self._get_service()
        updated = await self._execute(
            service.users().labels().patch(userId="me", id=folder_id, body={"name": name}),
            ("label", folder_id),
        )
        return self._parse_label(updated)

    async def delete_folder(self, folder_id: str) -> None:
        service = await self._get_service()
        await self._execute(
            service.users().labels().delete(userId="me", id=folder_id),
            ("label", folder_id),
        )

    def _parse_label(self, label: dict[str, Any]) -> UnifiedFolder:
        return UnifiedFolder(
            id=label["id"],
            name=label.get("name", label["id"]),
            native_id=label["id"],
            unread_count=int(label.get("messagesUnread", 0)),
            total_count=int(label.get("messagesTotal", 0)),
            is_system=label.get("type") == "system",
        )

    # ---- threads and attachments ----

    async def get_thread(self, thread_id: str) -> UnifiedThread:
        service = await self._get_service()
        thread = await self._execute(
            service.users().threads().get(userId="me", id=thread_id, format="full"),
            ("thread", thread_id),
        )
        messages = [self._parse_message(m) for m in thread.get("messages", [])]
        return UnifiedThread(
            id=thread.get("id", thread_id),
            message_ids=[m.id for m in messages],
            messages=messages,
        )

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        service = await self._get_service()
        result = await self._execute(
            service.users().messages().attachments().get(
                userId="me", messageId=message_id, id=attachment_id
            ),
            ("attachment", attachment_id),
        )
        return _decode_b64url(result.get("data", ""))

    # ---- push subscription (users.watch) ----

    def _watch_id(self) -> str:
        # Gmail has one watch per mailbox and no watch id of its own.
        return f"gmail-watch-{self._lease.account_id}"

    async def _watch(self) -> SubscriptionGrant:
        if not self._pubsub_topic:
            raise ValidationException(
                "Gmail push requires a Pub/Sub topic", field="gmail_pubsub_topic"
            )
        service = await self._get_service()
        body = {
            "topicName": self._pubsub_topic,
            "labelIds": self._watch_label_ids,
            "labelFilterBehavior": "include",
        }
        response = await self._execute(service.users().watch(userId="me", body=body))
        return SubscriptionGrant(
            backend_subscription_id=self._watch_id(),
            expires_at=from_timestamp_ms_utc(int(response["expiration"])),
            history_cursor=str(response["historyId"]),
        )

    async def create_subscription(
        self,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        """Start a watch. Gmail fixes the lifetime itself; the push endpoint and
        its verification token are configured on the Pub/Sub subscription."""
        grant = await self._watch()
        logger.info(
            "Gmail watch started for account %s until %s",
            self._lease.account_id,
            grant.expires_at.isoformat(),
        )
        return grant

    async def renew_subscription(
        self,
        backend_subscription_id: str,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        # Re-calling watch on an active mailbox extends it.
        return await self._watch()

    async def cancel_subscription(self, backend_subscription_id: str) -> None:
        service = await self._get_service()
        await self._execute(service.users().stop(userId="me"))
        logger.info("Gmail watch stopped for account %s", self._lease.account_id)

    # ---- incremental changes ----

    async def list_changes(self, cursor: str | None) -> ChangeBatch:
        """Changes since a history id.

        Without a cursor, returns no changes and the mailbox's current history
        id. A history id too old for Gmail surfaces as NotFoundException.
        """
        service = await self._get_service()
        if cursor is None:
            profile = await self._execute(service.users().getProfile(userId="me"))
            return ChangeBatch(changes=[], next_cursor=str(profile["historyId"]))
        changes: list[ChangeDescriptor] = []
        new_history_id = cursor
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": cursor,
                "historyTypes": ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"],
                "maxResults": HISTORY_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            result = await self._execute(
                service.users().history().list(**params), ("history", cursor)
            )
            if "historyId" in result:
                new_history_id = str(result["historyId"])
            for record in result.get("history", []):
                for field, kind in _HISTORY_KINDS.items():
                    for item in record.get(field, []):
                        m = item.get("message", {})
                        if m.get("id"):
                            changes.append(
                                ChangeDescriptor(
                                    kind=kind, message_id=m["id"], thread_id=m.get("threadId")
                                )
                            )
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        return ChangeBatch(changes=changes, next_cursor=new_history_id)

    async def close(self) -> None:
        service, self._service = self._service, None
        if service is not None and hasattr(service, "close"):
            await asyncio.to_thread(service.close)
