"""Inbound change notification endpoints.

Graph (Outlook) posts change batches to /outlook and lifecycle events to
/outlook/lifecycle; both first validate the URL by sending a validationToken
that must be echoed back as text/plain. Gmail notifications arrive as Pub/Sub
push requests on /gmail?token=<verification token>.

Malformed or rejected notifications are acknowledged so the backend stops
redelivering them. For Gmail, a retryable failure while expanding history is
surfaced as 503 so Pub/Sub redelivers it later.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from mailhub.api.v1.dependencies import DispatcherDep, SubscriptionManagerDep
from mailhub.application.services.change_dispatcher import DispatchOutcome
from mailhub.domain.exceptions import MailhubException, ValidationException
from mailhub.infrastructure.external.email.webhooks import (
    parse_graph_lifecycle_events,
    parse_graph_notifications,
    parse_pubsub_push,
)
from mailhub.schemas.webhook import LifecycleAck, NotificationAck

logger = logging.getLogger(__name__)

router = APIRouter()


async def _json_body(request: Request) -> dict[str, Any]:
    """Request body as a JSON object; anything else becomes an empty dict."""
    try:
        body = json.loads(await request.body() or b"{}")
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON")
        return {}
    return body if isinstance(body, dict) else {}


@router.post(
    "/outlook",
    response_model=NotificationAck,
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"description": "Validation handshake (token echoed as text/plain)"}},
)
async def outlook_notifications(
    request: Request,
    dispatcher: DispatcherDep,
    validation_token: str | None = Query(default=None, alias="validationToken"),
) -> NotificationAck | PlainTextResponse:
    """Receive a Graph change notification batch."""
    if validation_token is not None:
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)
    ack = NotificationAck()
    for notification in parse_graph_notifications(await _json_body(request)):
        try:
            result = await dispatcher.dispatch(notification)
        except MailhubException as e:
            logger.warning(
                "Failed to dispatch Graph notification %s: %s",
                notification.notification_id,
                e.message,
            )
            ack.failed += 1
            continue
        setattr(ack, result.outcome.value, getattr(ack, result.outcome.value) + 1)
    return ack


@router.post(
    "/outlook/lifecycle",
    response_model=LifecycleAck,
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"description": "Validation handshake (token echoed as text/plain)"}},
)
async def outlook_lifecycle(
    request: Request,
    subscription_manager: SubscriptionManagerDep,
    validation_token: str | None = Query(default=None, alias="validationToken"),
) -> LifecycleAck | PlainTextResponse:
    """Receive Graph lifecycle events (reauthorization, removal, missed)."""
    if validation_token is not None:
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)
    ack = LifecycleAck()
    for event in parse_graph_lifecycle_events(await _json_body(request)):
        try:
            handled = await subscription_manager.handle_lifecycle_event(
                event.backend_subscription_id, event.event, event.presented_secret
            )
        except MailhubException as e:
            logger.warning(
                "Lifecycle event %s for %s failed: %s",
                event.event,
                event.backend_subscription_id,
                e.message,
            )
            handled = None
        if handled is None:
            ack.ignored += 1
        else:
            ack.handled += 1
    return ack


@router.post("/gmail", status_code=status.HTTP_204_NO_CONTENT)
async def gmail_push(
    request: Request,
    dispatcher: DispatcherDep,
    token: str | None = Query(default=None),
) -> Response:
    """Receive a Pub/Sub push carrying a Gmail watch notification."""
    try:
        notification = parse_pubsub_push(await _json_body(request), token)
    except ValidationException as e:
        logger.warning("Ignoring malformed Pub/Sub push: %s", e.message)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    try:
        result = await dispatcher.dispatch(notification)
    except MailhubException as e:
        if e.retryable:
            raise
        logger.warning(
            "Failed to dispatch Gmail notification %s: %s", notification.notification_id, e.message
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    if result.outcome != DispatchOutcome.ACCEPTED:
        logger.debug("Gmail notification %s: %s", notification.notification_id, result.outcome.value)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
