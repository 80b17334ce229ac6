"""OutlookAdapter against a mocked Microsoft Graph (httpx.MockTransport)."""

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from mailhub.domain.entities import CredentialLease, OutgoingMessage
from mailhub.domain.enums import BackendKind, ChangeKind
from mailhub.domain.exceptions import (
    AuthExpiredException,
    BackendUnavailableException,
    NotFoundException,
    RateLimitedException,
    ValidationException,
)
from mailhub.infrastructure.external.email.protocols import NativeQuery
from mailhub.infrastructure.external.email.providers.outlook_provider import (
    OutlookAdapter,
    continuation_token,
)

GRAPH = "https://graph.microsoft.com/v1.0"
NOW = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


def graph_message(message_id: str, **overrides):
    item = {
        "id": message_id,
        "conversationId": "conv-1",
        "from": {"emailAddress": {"address": "ada@example.com"}},
        "toRecipients": [{"emailAddress": {"address": "grace@outlook.example"}}],
        "subject": f"Subject {message_id}",
        "receivedDateTime": "2026-01-05T08:00:00Z",
        "isRead": False,
        "parentFolderId": "inbox-id",
        "bodyPreview": "preview",
        "body": {"contentType": "html", "content": "<p>hi</p>"},
    }
    item.update(overrides)
    return item


class GraphStub:
    """Records requests and answers from a queue of (status, json, headers)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body, headers = self.responses.pop(0)
        return httpx.Response(status, json=body, headers=headers or {})

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


def make_adapter(stub: GraphStub, **kwargs) -> OutlookAdapter:
    lease = CredentialLease(
        account_id="acct-outlook",
        backend_kind=BackendKind.OUTLOOK,
        access_token="graph-token",
        expires_at=NOW + timedelta(minutes=5),
        credential_version=3,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return OutlookAdapter(lease, http_client=client, **kwargs)


async def test_list_messages_sends_top_and_returns_skip_token():
    stub = GraphStub(
        (
            200,
            {
                "value": [graph_message("AAMk1")],
                "@odata.nextLink": f"{GRAPH}/me/mailFolders/inbox/messages?$top=1&$skiptoken=NEXT",
            },
            None,
        )
    )
    adapter = make_adapter(stub)

    messages, token = await adapter.list_messages(
        unit_id="inbox", query=NativeQuery(), page_token=None, page_size=1
    )

    request = stub.requests[0]
    assert request.url.path == "/v1.0/me/mailFolders/inbox/messages"
    assert request.url.params["$top"] == "1"
    assert request.url.params["$orderby"] == "receivedDateTime desc"
    assert request.headers["Authorization"] == "Bearer graph-token"
    assert token == "NEXT"
    [message] = messages
    assert message.id == "AAMk1"
    assert message.thread_id == "conv-1"
    assert message.sender == "ada@example.com"
    assert message.labels == ["inbox-id"]
    assert message.body_html == "<p>hi</p>"
    assert message.body_text is None
    assert message.received_at == datetime(2026, 1, 5, 8, 0, tzinfo=UTC)


async def test_list_messages_passes_search_and_skip_continuation():
    stub = GraphStub((200, {"value": []}, None))
    adapter = make_adapter(stub)

    await adapter.list_messages(
        unit_id=None, query=NativeQuery(text='"budget"'), page_token="skip=50", page_size=25
    )

    params = stub.requests[0].url.params
    assert stub.requests[0].url.path == "/v1.0/me/messages"
    assert params["$search"] == '"budget"'
    assert params["$skip"] == "50"
    assert "$orderby" not in params
    assert "$filter" not in params


def test_continuation_token_variants():
    assert continuation_token(None) is None
    assert continuation_token(f"{GRAPH}/me/messages?$skiptoken=abc") == "abc"
    assert continuation_token(f"{GRAPH}/me/messages?$search=x&$skip=10") == "skip=10"
    assert continuation_token(f"{GRAPH}/me/messages") is None


async def test_item_not_found_maps_to_not_found():
    stub = GraphStub(
        (404, {"error": {"code": "ErrorItemNotFound", "message": "gone"}}, None)
    )
    adapter = make_adapter(stub)

    with pytest.raises(NotFoundException) as exc_info:
        await adapter.get_message("AAMk404")

    assert exc_info.value.details == {"resource_type": "message", "resource_id": "AAMk404"}


async def test_throttling_maps_to_rate_limited_with_retry_after():
    stub = GraphStub(
        (429, {"error": {"code": "TooManyRequests", "message": "slow down"}}, {"Retry-After": "7"})
    )
    adapter = make_adapter(stub)

    with pytest.raises(RateLimitedException) as exc_info:
        await adapter.list_folders()

    assert exc_info.value.retry_after == 7.0


async def test_unauthorized_maps_to_auth_expired():
    stub = GraphStub((401, {"error": {"code": "InvalidAuthenticationToken"}}, None))
    adapter = make_adapter(stub)

    with pytest.raises(AuthExpiredException) as exc_info:
        await adapter.list_folders()

    assert exc_info.value.details["account_id"] == "acct-outlook"


async def test_server_error_maps_to_backend_unavailable():
    stub = GraphStub((503, {}, None))
    adapter = make_adapter(stub)

    with pytest.raises(BackendUnavailableException):
        await adapter.delete_message("AAMk1")


async def test_transport_error_maps_to_backend_unavailable():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    lease = CredentialLease("acct-outlook", BackendKind.OUTLOOK, "t", NOW, 1)
    adapter = OutlookAdapter(
        lease, http_client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    )

    with pytest.raises(BackendUnavailableException):
        await adapter.list_folders()


async def test_move_returns_message_under_new_id():
    stub = GraphStub((201, graph_message("AAMk-new", parentFolderId="archive-id"), None))
    adapter = make_adapter(stub)

    moved = await adapter.add_to_unit("AAMk-old", "archive")

    assert stub.requests[0].url.path == "/v1.0/me/messages/AAMk-old/move"
    assert stub.body() == {"destinationId": "archive"}
    assert moved.id == "AAMk-new"
    assert moved.labels == ["archive-id"]


async def test_remove_from_unit_is_rejected_without_request():
    stub = GraphStub()
    adapter = make_adapter(stub)

    with pytest.raises(ValidationException):
        await adapter.remove_from_unit("AAMk1", "inbox")
    assert stub.requests == []


async def test_list_folders_follows_next_link():
    stub = GraphStub(
        (
            200,
            {
                "value": [{"id": "f1", "displayName": "Inbox", "unreadItemCount": 3}],
                "@odata.nextLink": f"{GRAPH}/me/mailFolders?$skip=1",
            },
            None,
        ),
        (200, {"value": [{"id": "f2", "displayName": "Archive", "totalItemCount": 9}]}, None),
    )
    adapter = make_adapter(stub)

    folders = await adapter.list_folders()

    assert [(f.id, f.name) for f in folders] == [("f1", "Inbox"), ("f2", "Archive")]
    assert folders[0].unread_count == 3
    assert folders[1].total_count == 9
    assert stub.requests[1].url.path == "/v1.0/me/mailFolders"
    assert stub.requests[1].url.params["$skip"] == "1"


async def test_send_new_message_and_reply_in_thread():
    stub = GraphStub(
        (202, None, None),
        (
            200,
            {
                "value": [
                    {"id": "old", "receivedDateTime": "2026-01-04T08:00:00Z"},
                    {"id": "new", "receivedDateTime": "2026-01-05T08:00:00Z"},
                ]
            },
            None,
        ),
        (202, None, None),
    )
    adapter = make_adapter(stub)

    sent = await adapter.send_message(
        OutgoingMessage(to=["bob@example.com"], subject="hello", body_text="hi")
    )
    assert sent is None
    assert stub.requests[0].url.path == "/v1.0/me/sendMail"
    assert stub.body(0)["message"]["body"] == {"contentType": "Text", "content": "hi"}
    assert stub.body(0)["saveToSentItems"] is True

    await adapter.send_message(
        OutgoingMessage(to=["bob@example.com"], subject="re", body_text="ok", thread_id="conv-1")
    )
    assert stub.requests[1].url.params["$filter"] == "conversationId eq 'conv-1'"
    assert stub.requests[2].url.path == "/v1.0/me/messages/new/reply"
    assert "subject" not in stub.body(2)["message"]


async def test_create_subscription_body_and_granted_expiry():
    stub = GraphStub(
        (201, {"id": "graph-sub-1", "expirationDateTime": "2026-01-08T07:30:00.0000000Z"}, None)
    )
    adapter = make_adapter(stub, lifecycle_notification_url="https://hooks.example/lifecycle")

    grant = await adapter.create_subscription(
        callback_url="https://hooks.example/outlook",
        expires_at=datetime(2026, 1, 8, 7, 30, tzinfo=UTC),
        client_secret="s3cret",
    )

    assert stub.body() == {
        "changeType": "created,updated,deleted",
        "notificationUrl": "https://hooks.example/outlook",
        "resource": "me/messages",
        "expirationDateTime": "2026-01-08T07:30:00.000Z",
        "clientState": "s3cret",
        "lifecycleNotificationUrl": "https://hooks.example/lifecycle",
    }
    assert grant.backend_subscription_id == "graph-sub-1"
    assert grant.expires_at == datetime(2026, 1, 8, 7, 30, tzinfo=UTC)
    assert grant.history_cursor is None


async def test_renew_and_cancel_subscription():
    stub = GraphStub(
        (200, {"id": "graph-sub-1", "expirationDateTime": "2026-01-09T00:00:00Z"}, None),
        (204, None, None),
    )
    adapter = make_adapter(stub)

    grant = await adapter.renew_subscription(
        "graph-sub-1",
        callback_url="https://hooks.example/outlook",
        expires_at=datetime(2026, 1, 9, tzinfo=UTC),
        client_secret="s3cret",
    )
    await adapter.cancel_subscription("graph-sub-1")

    assert stub.requests[0].method == "PATCH"
    assert stub.body(0) == {"expirationDateTime": "2026-01-09T00:00:00.000Z"}
    assert grant.expires_at == datetime(2026, 1, 9, tzinfo=UTC)
    assert stub.requests[1].method == "DELETE"
    assert stub.requests[1].url.path == "/v1.0/subscriptions/graph-sub-1"


async def test_expired_subscription_renewal_maps_to_not_found():
    stub = GraphStub((404, {"error": {"code": "ResourceNotFound", "message": "gone"}}, None))
    adapter = make_adapter(stub)

    with pytest.raises(NotFoundException):
        await adapter.renew_subscription(
            "graph-sub-1",
            callback_url="",
            expires_at=datetime(2026, 1, 9, tzinfo=UTC),
            client_secret="",
        )


async def test_delta_follows_pages_and_returns_delta_link():
    delta_link = f"{GRAPH}/me/mailFolders/inbox/messages/delta?$deltatoken=D2"
    stub = GraphStub(
        (
            200,
            {
                "value": [{"id": "AAMk1", "conversationId": "c1"}],
                "@odata.nextLink": f"{GRAPH}/me/mailFolders/inbox/messages/delta?$skiptoken=P2",
            },
            None,
        ),
        (
            200,
            {"value": [{"id": "AAMk2", "@removed": {"reason": "deleted"}}], "@odata.deltaLink": delta_link},
            None,
        ),
    )
    adapter = make_adapter(stub)

    batch = await adapter.list_changes(None)

    assert [(c.kind, c.message_id) for c in batch.changes] == [
        (ChangeKind.UPDATED, "AAMk1"),
        (ChangeKind.DELETED, "AAMk2"),
    ]
    assert batch.next_cursor == delta_link
    assert stub.requests[0].url.params["$select"] == "id,conversationId"


async def test_delta_resumes_from_cursor():
    cursor = f"{GRAPH}/me/mailFolders/inbox/messages/delta?$deltatoken=D1"
    stub = GraphStub((200, {"value": [], "@odata.deltaLink": cursor + "x"}, None))
    adapter = make_adapter(stub)

    batch = await adapter.list_changes(cursor)

    assert stub.requests[0].url.params["$deltatoken"] == "D1"
    assert batch.changes == []
    assert batch.next_cursor == cursor + "x"
