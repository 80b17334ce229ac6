"""CapabilityNormalizer: unit membership, thread order, cursors, query translation."""

from datetime import timedelta

import pytest

from mailhub.domain.entities import SyncCursor
from mailhub.domain.enums import BackendKind, MembershipSemantics
from mailhub.domain.exceptions import ValidationException
from mailhub.infrastructure.external.email.normalizer import (
    CapabilityNormalizer,
    escape_odata_string_literal,
)
from mailhub.infrastructure.external.email.protocols import NativeQuery
from tests.fakes import GMAIL_ACCOUNT, OUTLOOK_ACCOUNT, T0, Hub, make_message

normalizer = CapabilityNormalizer()


# ---- organizational units ----


async def test_assign_on_label_backend_is_union(hub: Hub) -> None:
    hub.mailbox(GMAIL_ACCOUNT).add(make_message("m1", labels=["INBOX", "Label_1"]))

    result = await hub.mailbox_service.assign_organizational_unit(GMAIL_ACCOUNT, "m1", "Label_2")

    assert result.semantics == MembershipSemantics.UNION
    assert result.message.id == "m1"
    assert set(result.message.labels) == {"INBOX", "Label_1", "Label_2"}


async def test_assign_on_folder_backend_is_move_with_new_id(hub: Hub) -> None:
    hub.mailbox(OUTLOOK_ACCOUNT).add(make_message("m1", labels=["inbox"]))

    result = await hub.mailbox_service.assign_organizational_unit(OUTLOOK_ACCOUNT, "m1", "archive")

    assert result.semantics == MembershipSemantics.MOVE
    assert result.message.labels == ["archive"]
    assert result.message.id != "m1"
    page = await hub.mailbox_service.list_messages(OUTLOOK_ACCOUNT, unit_id="inbox")
    assert page.messages == []


async def test_assign_is_visible_when_listing_the_unit(hub: Hub) -> None:
    hub.mailbox(GMAIL_ACCOUNT).add(make_message("m1", labels=["INBOX"]))

    await hub.mailbox_service.assign_organizational_unit(GMAIL_ACCOUNT, "m1", "Label_9")
    page = await hub.mailbox_service.list_messages(GMAIL_ACCOUNT, unit_id="Label_9")

    assert [m.id for m in page.messages] == ["m1"]


async def test_well_known_unit_names_map_per_backend(hub: Hub) -> None:
    hub.mailbox(GMAIL_ACCOUNT).add(make_message("g1", labels=["INBOX"]))

    result = await hub.mailbox_service.assign_organizational_unit(GMAIL_ACCOUNT, "g1", "spam")

    assert "SPAM" in result.message.labels


def test_resolve_unit_id_maps_well_known_and_passes_others_through() -> None:
    assert normalizer.resolve_unit_id(BackendKind.GMAIL, "inbox") == "INBOX"
    assert normalizer.resolve_unit_id(BackendKind.GMAIL, "Drafts") == "DRAFT"
    assert normalizer.resolve_unit_id(BackendKind.OUTLOOK, "trash") == "deleteditems"
    assert normalizer.resolve_unit_id(BackendKind.OUTLOOK, "AAMkAGI2") == "AAMkAGI2"
    # Gmail has no archive label; the name passes through as a user label id.
    assert normalizer.resolve_unit_id(BackendKind.GMAIL, "archive") == "archive"


def test_resolve_unit_id_rejects_empty() -> None:
    with pytest.raises(ValidationException):
        normalizer.resolve_unit_id(BackendKind.OUTLOOK, "")


async def test_remove_on_label_backend_drops_only_that_label(hub: Hub) -> None:
    hub.mailbox(GMAIL_ACCOUNT).add(make_message("m1", labels=["INBOX", "Label_1"]))

    message = await hub.mailbox_service.remove_organizational_unit(GMAIL_ACCOUNT, "m1", "Label_1")

    assert message.labels == ["INBOX"]


async def test_remove_on_folder_backend_is_rejected(hub: Hub) -> None:
    hub.mailbox(OUTLOOK_ACCOUNT).add(make_message("m1", labels=["inbox"]))

    with pytest.raises(ValidationException) as exc_info:
        await hub.mailbox_service.remove_organizational_unit(OUTLOOK_ACCOUNT, "m1", "inbox")

    assert exc_info.value.details["field"] == "unit_id"
    assert "remove_from_unit" not in hub.mailbox(OUTLOOK_ACCOUNT).calls


# ---- threads ----


def test_order_thread_sorts_by_receipt_time_then_id() -> None:
    later = make_message("a", received_at=T0 + timedelta(minutes=5))
    tie_b = make_message("b", received_at=T0)
    tie_a = make_message("a0", received_at=T0)

    thread = normalizer.order_thread("t1", [later, tie_b, tie_a])

    assert thread.message_ids == ["a0", "b", "a"]
    assert [m.id for m in thread.messages] == thread.message_ids


async def test_get_thread_returns_ordered_messages(hub: Hub) -> None:
    box = hub.mailbox(OUTLOOK_ACCOUNT)
    box.add(
        make_message("r2", thread_id="conv", received_at=T0 + timedelta(hours=2)),
        make_message("r1", thread_id="conv", received_at=T0 + timedelta(hours=1)),
        make_message("r0", thread_id="conv", received_at=T0),
    )

    thread = await hub.mailbox_service.get_thread(OUTLOOK_ACCOUNT, "conv")

    assert thread.message_ids == ["r0", "r1", "r2"]


# ---- cursors ----


def test_cursor_is_tagged_with_issuing_backend() -> None:
    page = normalizer.page(BackendKind.GMAIL, [], "token-123")

    assert page.next_cursor == SyncCursor(token="token-123", backend_kind=BackendKind.GMAIL)
    assert normalizer.page(BackendKind.GMAIL, [], None).next_cursor is None


def test_cursor_from_other_backend_is_rejected() -> None:
    cursor = SyncCursor(token="abc", backend_kind=BackendKind.OUTLOOK)

    with pytest.raises(ValidationException) as exc_info:
        normalizer.unwrap_cursor(BackendKind.GMAIL, cursor)
    assert exc_info.value.details["field"] == "cursor"


def test_cursor_survives_transport_encoding() -> None:
    cursor = SyncCursor(token="https://graph/x?$skiptoken=abc", backend_kind=BackendKind.OUTLOOK)

    assert SyncCursor.decode(cursor.encode()) == cursor
    with pytest.raises(ValidationException):
        SyncCursor.decode("not-a-cursor")


# ---- queries ----


def test_gmail_query_translation() -> None:
    native = normalizer.translate_query(
        BackendKind.GMAIL,
        'from:ada@example.com subject:"quarterly report" is:unread after:2025-01-31 invoice',
    )

    assert native == NativeQuery(
        text='from:ada@example.com subject:"quarterly report" is:unread after:2025/01/31 invoice'
    )


def test_graph_filter_translation() -> None:
    native = normalizer.translate_query(
        BackendKind.OUTLOOK, 'from:"o\'brien@example.com" is:read has:attachment before:2025-02-01'
    )

    assert native.text is None
    assert native.filter == (
        "from/emailAddress/address eq 'o''brien@example.com' and isRead eq true"
        " and hasAttachments eq true and receivedDateTime lt 2025-02-01T00:00:00Z"
    )


def test_graph_free_text_uses_search() -> None:
    native = normalizer.translate_query(BackendKind.OUTLOOK, "budget review")

    assert native == NativeQuery(text='"budget review"')


def test_graph_rejects_free_text_combined_with_filters() -> None:
    with pytest.raises(ValidationException):
        normalizer.translate_query(BackendKind.OUTLOOK, "from:ada@example.com budget")


@pytest.mark.parametrize(
    "query",
    [
        "label:work",
        "from:a OR from:b",
        "-from:spam@example.com",
        "(from:a)",
        "is:starred",
        "after:31/01/2025",
        'subject:"unterminated',
    ],
)
def test_unsupported_query_syntax_is_rejected(query: str) -> None:
    with pytest.raises(ValidationException):
        normalizer.translate_query(BackendKind.GMAIL, query)


def test_empty_query_translates_to_empty_native_query() -> None:
    assert normalizer.translate_query(BackendKind.OUTLOOK, None).is_empty
    assert normalizer.translate_query(BackendKind.GMAIL, "   ").is_empty


def test_odata_literal_escaping() -> None:
    assert escape_odata_string_literal("it's") == "it''s"
