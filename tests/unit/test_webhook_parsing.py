"""Webhook payload parsing for Graph notifications and Gmail Pub/Sub pushes."""

import base64
import json

import pytest

from mailhub.domain.enums import BackendKind, ChangeKind
from mailhub.domain.exceptions import ValidationException
from mailhub.infrastructure.external.email.webhooks import (
    graph_notification_id,
    parse_graph_lifecycle_events,
    parse_graph_notifications,
    parse_pubsub_push,
)


def graph_item(**overrides):
    item = {
        "subscriptionId": "sub-1",
        "changeType": "created",
        "clientState": "s3cret",
        "resource": "Users/u/Messages/AAMk1",
        "resourceData": {"id": "AAMk1", "@odata.etag": 'W/"CQAAABYAAAA"'},
    }
    item.update(overrides)
    return item


def pubsub_envelope(data: dict, message_id: str = "1234567890") -> dict:
    return {
        "message": {
            "data": base64.b64encode(json.dumps(data).encode()).decode(),
            "messageId": message_id,
            "publishTime": "2026-01-05T09:00:00Z",
        },
        "subscription": "projects/p/subscriptions/gmail-push",
    }


class TestGraphNotifications:
    def test_parses_batch(self):
        payload = {"value": [graph_item(), graph_item(changeType="deleted", resourceData={"id": "AAMk2"})]}

        first, second = parse_graph_notifications(payload)

        assert first.backend_kind == BackendKind.OUTLOOK
        assert first.backend_subscription_id == "sub-1"
        assert first.presented_secret == "s3cret"
        assert first.changes[0].kind == ChangeKind.CREATED
        assert first.changes[0].message_id == "AAMk1"
        assert second.changes[0].kind == ChangeKind.DELETED
        assert first.notification_id != second.notification_id

    def test_skips_malformed_items(self):
        payload = {
            "value": [
                graph_item(subscriptionId=None),
                graph_item(changeType="missed"),
                "not-an-object",
                graph_item(),
            ]
        }

        assert len(parse_graph_notifications(payload)) == 1

    def test_empty_payload(self):
        assert parse_graph_notifications({}) == []

    @pytest.mark.parametrize("value", [None, 5, "batch", {"subscriptionId": "sub-1"}])
    def test_non_list_value_yields_nothing(self, value):
        assert parse_graph_notifications({"value": value}) == []

    def test_notification_id_is_stable_across_redelivery(self):
        assert graph_notification_id(graph_item()) == graph_notification_id(graph_item())
        changed = graph_item(resourceData={"id": "AAMk1", "@odata.etag": 'W/"other"'})
        assert graph_notification_id(changed) != graph_notification_id(graph_item())


class TestGraphLifecycle:
    def test_parses_events(self):
        payload = {
            "value": [
                {"subscriptionId": "sub-1", "lifecycleEvent": "reauthorizationRequired", "clientState": "s"},
                {"subscriptionId": "sub-2", "lifecycleEvent": "subscriptionRemoved"},
                {"lifecycleEvent": "missed"},
            ]
        }

        events = parse_graph_lifecycle_events(payload)

        assert [(e.backend_subscription_id, e.event) for e in events] == [
            ("sub-1", "reauthorizationRequired"),
            ("sub-2", "subscriptionRemoved"),
        ]
        assert events[0].presented_secret == "s"
        assert events[1].presented_secret is None

    @pytest.mark.parametrize("value", [None, 5, "batch", {"subscriptionId": "sub-1"}])
    def test_non_list_value_yields_nothing(self, value):
        assert parse_graph_lifecycle_events({"value": value}) == []


class TestPubSubPush:
    def test_parses_gmail_notification(self):
        envelope = pubsub_envelope({"emailAddress": "ada@gmail.example", "historyId": 9876})

        notification = parse_pubsub_push(envelope, "token")

        assert notification.backend_kind == BackendKind.GMAIL
        assert notification.notification_id == "1234567890"
        assert notification.mailbox_address == "ada@gmail.example"
        assert notification.history_id == "9876"
        assert notification.presented_secret == "token"
        assert notification.changes == ()

    @pytest.mark.parametrize(
        "envelope",
        [
            {},
            {"message": "nope"},
            {"message": {"data": ""}},
            {"message": {"messageId": "1", "data": "not base64 json"}},
            pubsub_envelope({"emailAddress": "ada@gmail.example"}),
        ],
    )
    def test_rejects_malformed_envelopes(self, envelope):
        with pytest.raises(ValidationException):
            parse_pubsub_push(envelope, "token")
