"""HTTP tests for the Graph and Pub/Sub webhook endpoints."""

import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from mailhub.core.container import Container
from mailhub.domain.entities import Account, Subscription
from mailhub.domain.enums import BackendKind, SubscriptionState
from mailhub.domain.exceptions import BackendUnavailableException
from mailhub.shared.utils.datetime import utc_now
from tests.fakes import GMAIL_PUSH_TOKEN, OUTLOOK_CALLBACK

OUTLOOK = "/api/v1/webhooks/outlook"
LIFECYCLE = "/api/v1/webhooks/outlook/lifecycle"
GMAIL = "/api/v1/webhooks/gmail"


@pytest.fixture
async def outlook_subscription(container: Container) -> Subscription:
    await container.account_repo.save(Account("acct-1", BackendKind.OUTLOOK, "ada@example.com"))
    subscription = Subscription(
        account_id="acct-1",
        backend_kind=BackendKind.OUTLOOK,
        state=SubscriptionState.ACTIVE,
        backend_subscription_id="graph-sub-1",
        expires_at=utc_now() + timedelta(days=2),
        client_secret="s3cret",
        callback_url=OUTLOOK_CALLBACK,
    )
    await container.subscription_repo.save(subscription)
    return subscription


def graph_batch(client_state: str = "s3cret", subscription_id: str = "graph-sub-1") -> dict:
    return {
        "value": [
            {
                "subscriptionId": subscription_id,
                "changeType": "created",
                "clientState": client_state,
                "resource": "Users/u/Messages/AAMk1",
                "resourceData": {"id": "AAMk1"},
            }
        ]
    }


def pubsub_push(email_address: str, history_id: str = "100") -> dict:
    data = json.dumps({"emailAddress": email_address, "historyId": history_id}).encode()
    return {"message": {"data": base64.b64encode(data).decode(), "messageId": "pubsub-1"}}


async def test_outlook_validation_handshake_echoes_token(client: AsyncClient) -> None:
    response = await client.post(OUTLOOK, params={"validationToken": "abc 123"})

    assert response.status_code == 200
    assert response.text == "abc 123"
    assert response.headers["content-type"].startswith("text/plain")


async def test_outlook_notification_is_accepted(
    client: AsyncClient, container: Container, outlook_subscription: Subscription
) -> None:
    response = await client.post(OUTLOOK, json=graph_batch())

    assert response.status_code == 202
    assert response.json()["accepted"] == 1
    assert await container.sequence_repo.current("acct-1") == 1


async def test_outlook_redelivery_is_duplicate(
    client: AsyncClient, outlook_subscription: Subscription
) -> None:
    await client.post(OUTLOOK, json=graph_batch())
    response = await client.post(OUTLOOK, json=graph_batch())

    assert response.json()["duplicate"] == 1


async def test_outlook_wrong_client_state_is_rejected_but_acknowledged(
    client: AsyncClient, container: Container, outlook_subscription: Subscription
) -> None:
    response = await client.post(OUTLOOK, json=graph_batch(client_state="forged"))

    assert response.status_code == 202
    assert response.json()["rejected"] == 1
    assert await container.sequence_repo.current("acct-1") == 0


async def test_outlook_unknown_subscription_and_bad_body(client: AsyncClient) -> None:
    unknown = await client.post(OUTLOOK, json=graph_batch(subscription_id="nope"))
    garbage = await client.post(OUTLOOK, content=b"not json")

    assert unknown.json()["unroutable"] == 1
    assert garbage.status_code == 202
    assert garbage.json()["accepted"] == 0


@pytest.mark.parametrize("value", [None, 5, "x", {"subscriptionId": "nope"}])
async def test_graph_batch_with_non_list_value_is_acknowledged(client: AsyncClient, value) -> None:
    notifications = await client.post(OUTLOOK, json={"value": value})
    lifecycle = await client.post(LIFECYCLE, json={"value": value})

    assert notifications.status_code == 202
    assert notifications.json()["accepted"] == 0
    assert lifecycle.status_code == 202
    assert lifecycle.json() == {"handled": 0, "ignored": 0}


async def test_lifecycle_handshake_and_unknown_subscription(client: AsyncClient) -> None:
    handshake = await client.post(LIFECYCLE, params={"validationToken": "xyz"})
    response = await client.post(
        LIFECYCLE,
        json={"value": [{"subscriptionId": "nope", "lifecycleEvent": "subscriptionRemoved"}]},
    )

    assert handshake.text == "xyz"
    assert response.status_code == 202
    assert response.json() == {"handled": 0, "ignored": 1}


async def test_lifecycle_removal_expires_subscription(
    client: AsyncClient, container: Container, outlook_subscription: Subscription
) -> None:
    response = await client.post(
        LIFECYCLE,
        json={
            "value": [
                {
                    "subscriptionId": "graph-sub-1",
                    "lifecycleEvent": "subscriptionRemoved",
                    "clientState": "s3cret",
                }
            ]
        },
    )

    assert response.json()["handled"] == 1
    stored = await container.subscription_repo.get("acct-1")
    assert stored is not None and stored.state == SubscriptionState.EXPIRED


async def test_gmail_malformed_push_is_acknowledged(client: AsyncClient) -> None:
    response = await client.post(GMAIL, params={"token": GMAIL_PUSH_TOKEN}, json={"message": {}})

    assert response.status_code == 204


async def test_gmail_unknown_mailbox_is_acknowledged(client: AsyncClient) -> None:
    response = await client.post(
        GMAIL, params={"token": GMAIL_PUSH_TOKEN}, json=pubsub_push("nobody@example.com")
    )

    assert response.status_code == 204


async def test_gmail_transient_failure_asks_for_redelivery(
    client: AsyncClient, container: Container, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        container.dispatcher,
        "dispatch",
        AsyncMock(side_effect=BackendUnavailableException("history down", retry_after=5)),
    )

    response = await client.post(
        GMAIL, params={"token": GMAIL_PUSH_TOKEN}, json=pubsub_push("ada@gmail.example")
    )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["error"] == "BACKEND_UNAVAILABLE"
