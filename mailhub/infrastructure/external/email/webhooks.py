"""Parsing of backend webhook payloads into InboundNotification.

Graph posts batches of change notifications ({"value": [...]}) with the
subscription's clientState on each item, and lifecycle events on a separate
URL. Gmail delivers through a Pub/Sub push envelope whose data is base64 JSON
{"emailAddress", "historyId"}; the verification token travels in the push
endpoint's query string.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Any

from mailhub.domain.entities import ChangeDescriptor, InboundNotification
from mailhub.domain.enums import BackendKind, ChangeKind
from mailhub.domain.exceptions import ValidationException
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

_GRAPH_CHANGE_KINDS = {
    "created": ChangeKind.CREATED,
    "updated": ChangeKind.UPDATED,
    "deleted": ChangeKind.DELETED,
}


@dataclass(frozen=True)
class LifecycleEvent:
    """Graph lifecycle notification (reauthorizationRequired, subscriptionRemoved, missed)."""

    backend_subscription_id: str
    event: str
    presented_secret: str | None


def graph_notification_id(item: dict[str, Any]) -> str:
    """Stable id for a Graph notification (Graph does not assign one).

    Redeliveries of the same change carry the same subscription, change type,
    item id and etag.
    """
    resource_data = item.get("resourceData") or {}
    parts = (
        str(item.get("subscriptionId", "")),
        str(item.get("changeType", "")),
        str(resource_data.get("id", item.get("resource", ""))),
        str(resource_data.get("@odata.etag", "")),
    )
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


def _graph_items(payload: dict[str, Any]) -> list[Any]:
    items = payload.get("value")
    if items is None:
        return []
    if not isinstance(items, list):
        logger.warning("Ignoring Graph payload whose value is not a list")
        return []
    return items


def parse_graph_notifications(payload: dict[str, Any]) -> list[InboundNotification]:
    """Parse a Graph change notification batch. Malformed items are skipped."""
    notifications: list[InboundNotification] = []
    for item in _graph_items(payload):
        if not isinstance(item, dict) or not item.get("subscriptionId"):
            logger.warning("Skipping Graph notification without subscriptionId")
            continue
        kind = _GRAPH_CHANGE_KINDS.get(str(item.get("changeType", "")).lower())
        if kind is None:
            logger.warning("Skipping Graph notification with changeType %r", item.get("changeType"))
            continue
        resource_data = item.get("resourceData") or {}
        notifications.append(
            InboundNotification(
                backend_kind=BackendKind.OUTLOOK,
                notification_id=graph_notification_id(item),
                presented_secret=item.get("clientState"),
                backend_subscription_id=str(item["subscriptionId"]),
                changes=(ChangeDescriptor(kind=kind, message_id=resource_data.get("id")),),
            )
        )
    return notifications


def parse_graph_lifecycle_events(payload: dict[str, Any]) -> list[LifecycleEvent]:
    events: list[LifecycleEvent] = []
    for item in _graph_items(payload):
        if not isinstance(item, dict):
            continue
        subscription_id = item.get("subscriptionId")
        event = item.get("lifecycleEvent")
        if not subscription_id or not event:
            logger.warning("Skipping malformed Graph lifecycle notification")
            continue
        events.append(
            LifecycleEvent(
                backend_subscription_id=str(subscription_id),
                event=str(event),
                presented_secret=item.get("clientState"),
            )
        )
    return events


def parse_pubsub_push(envelope: dict[str, Any], token: str | None) -> InboundNotification:
    """Parse a Pub/Sub push envelope carrying a Gmail watch notification.

    Raises:
        ValidationException: Envelope or data is not a Gmail notification.
    """
    message = envelope.get("message")
    if not isinstance(message, dict):
        raise ValidationException("Pub/Sub envelope has no message", field="message")
    message_id = message.get("messageId") or message.get("message_id")
    if not message_id:
        raise ValidationException("Pub/Sub message has no messageId", field="message.messageId")
    try:
        data = json.loads(base64.b64decode(message.get("data", "")))
        email_address = str(data["emailAddress"])
        history_id = str(data["historyId"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationException("Pub/Sub data is not a Gmail notification", field="message.data") from e
    return InboundNotification(
        backend_kind=BackendKind.GMAIL,
        notification_id=str(message_id),
        presented_secret=token,
        mailbox_address=email_address,
        history_id=history_id,
    )
