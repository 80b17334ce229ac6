"""Capability normalizer: one semantic model over label and folder backends.

Holds the mapping tables and policies that reconcile the two backend families:

- Organizational units. Gmail labels are a set per message, Outlook folders
  hold exactly one. `assign_organizational_unit` is a union on Gmail and an
  exclusive move on Outlook. The asymmetry is part of the contract: callers
  needing exclusive placement on Gmail follow up with
  `remove_organizational_unit`. Removal on Outlook is rejected because a
  message cannot be outside every folder.
- Threads. Grouping ids are opaque; messages are ordered by server receipt
  time, ties broken by message id.
- Cursors. Page tokens and skip tokens are wrapped in a SyncCursor tagged with
  the backend kind and never decoded.
- Queries. The common grammar (see query.py) is translated to Gmail search
  syntax or Graph $search/$filter; anything a backend cannot express fails
  with ValidationException.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import ClassVar

from mailhub.domain.entities import (
    AssignmentResult,
    MessagePage,
    SyncCursor,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.enums import BackendKind, MembershipSemantics, WellKnownFolder
from mailhub.domain.exceptions import ValidationException
from mailhub.infrastructure.external.email.protocols import IMailboxAdapter, NativeQuery
from mailhub.infrastructure.external.email.query import ParsedQuery, parse_query
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


def escape_odata_string_literal(value: str) -> str:
    """Escape a value for use inside single quotes in an OData $filter."""
    return value.replace("'", "''")


def _gmail_quote(value: str) -> str:
    if any(ch.isspace() for ch in value):
        return '"' + value.replace('"', "") + '"'
    return value


class CapabilityNormalizer:
    """Mapping tables and policies between backend concepts and the unified model."""

    MEMBERSHIP: ClassVar[dict[BackendKind, MembershipSemantics]] = {
        BackendKind.GMAIL: MembershipSemantics.UNION,
        BackendKind.OUTLOOK: MembershipSemantics.MOVE,
    }

    WELL_KNOWN_UNITS: ClassVar[dict[BackendKind, dict[WellKnownFolder, str]]] = {
        BackendKind.GMAIL: {
            WellKnownFolder.INBOX: "INBOX",
            WellKnownFolder.SENT: "SENT",
            WellKnownFolder.DRAFTS: "DRAFT",
            WellKnownFolder.TRASH: "TRASH",
            WellKnownFolder.SPAM: "SPAM",
            # No archive label on Gmail: archive is a caller-chosen user label.
        },
        BackendKind.OUTLOOK: {
            WellKnownFolder.INBOX: "inbox",
            WellKnownFolder.SENT: "sentitems",
            WellKnownFolder.DRAFTS: "drafts",
            WellKnownFolder.TRASH: "deleteditems",
            WellKnownFolder.SPAM: "junkemail",
            WellKnownFolder.ARCHIVE: "archive",
        },
    }

    # ---- organizational units ----

    def membership_semantics(self, kind: BackendKind) -> MembershipSemantics:
        return self.MEMBERSHIP[kind]

    def resolve_unit_id(self, kind: BackendKind, unit_id: str) -> str:
        """Map a well-known unit name to the backend id; pass other ids through."""
        if not unit_id:
            raise ValidationException("Organizational unit id is required", field="unit_id")
        try:
            well_known = WellKnownFolder(unit_id.lower())
        except ValueError:
            return unit_id
        return self.WELL_KNOWN_UNITS[kind].get(well_known, unit_id)

    async def assign_organizational_unit(
        self,
        adapter: IMailboxAdapter,
        message_id: str,
        unit_id: str,
    ) -> AssignmentResult:
        """Place a message in a unit: union on label backends, move on folder backends."""
        kind = adapter.backend_kind
        native_unit = self.resolve_unit_id(kind, unit_id)
        semantics = self.membership_semantics(kind)
        message = await adapter.add_to_unit(message_id, native_unit)
        logger.debug(
            "Assigned unit %s to message %s on %s (%s)",
            native_unit,
            message_id,
            kind.value,
            semantics.value,
        )
        return AssignmentResult(message=message, semantics=semantics)

    async def remove_organizational_unit(
        self,
        adapter: IMailboxAdapter,
        message_id: str,
        unit_id: str,
    ) -> UnifiedMessage:
        """Drop one membership. Only meaningful where memberships are a set."""
        kind = adapter.backend_kind
        if self.membership_semantics(kind) == MembershipSemantics.MOVE:
            raise ValidationException(
                f"{kind.value} keeps every message in exactly one folder; "
                "assign a different unit instead of removing",
                field="unit_id",
            )
        return await adapter.remove_from_unit(message_id, self.resolve_unit_id(kind, unit_id))

    # ---- threads ----

    def order_thread(
        self, thread_id: str, messages: Iterable[UnifiedMessage]
    ) -> UnifiedThread:
        """Order by server receipt time, then message id for determinism."""
        ordered = sorted(messages, key=lambda m: (m.received_at, m.id))
        return UnifiedThread(
            id=thread_id,
            message_ids=[m.id for m in ordered],
            messages=ordered,
        )

    # ---- cursors ----

    def wrap_cursor(self, kind: BackendKind, token: str | None) -> SyncCursor | None:
        return SyncCursor(token=token, backend_kind=kind) if token else None

    def unwrap_cursor(self, kind: BackendKind, cursor: SyncCursor | None) -> str | None:
        """Return the raw token for the adapter; reject cursors from another backend."""
        if cursor is None:
            return None
        if cursor.backend_kind != kind:
            raise ValidationException(
                f"Cursor was issued by {cursor.backend_kind.value}, not {kind.value}",
                field="cursor",
            )
        return cursor.token

    def page(
        self, kind: BackendKind, messages: list[UnifiedMessage], next_token: str | None
    ) -> MessagePage:
        return MessagePage(messages=messages, next_cursor=self.wrap_cursor(kind, next_token))

    # ---- queries ----

    def translate_query(self, kind: BackendKind, query: str | None) -> NativeQuery:
        parsed = parse_query(query)
        if parsed.is_empty:
            return NativeQuery()
        if kind == BackendKind.GMAIL:
            return NativeQuery(text=self._to_gmail(parsed))
        return self._to_graph(parsed)

    def _to_gmail(self, parsed: ParsedQuery) -> str:
        parts: list[str] = []
        for term in parsed.terms:
            if term.field in ("after", "before"):
                parts.append(f"{term.field}:{term.value.replace('-', '/')}")
            elif term.field == "has":
                parts.append("has:attachment")
            else:
                parts.append(f"{term.field}:{_gmail_quote(term.value)}")
        parts.extend(_gmail_quote(text) for text in parsed.free_text)
        return " ".join(parts)

    def _to_graph(self, parsed: ParsedQuery) -> NativeQuery:
        if parsed.free_text and parsed.terms:
            # Graph rejects $search combined with $filter on messages.
            raise ValidationException(
                "outlook cannot combine free-text search with field filters",
                field="query",
            )
        if parsed.free_text:
            text = " ".join(parsed.free_text).replace('"', "")
            return NativeQuery(text=f'"{text}"')
        clauses: list[str] = []
        for term in parsed.terms:
            value = escape_odata_string_literal(term.value)
            if term.field == "from":
                clauses.append(f"from/emailAddress/address eq '{value}'")
            elif term.field == "to":
                clauses.append(f"toRecipients/any(r:r/emailAddress/address eq '{value}')")
            elif term.field == "subject":
                clauses.append(f"contains(subject,'{value}')")
            elif term.field == "is":
                clauses.append(f"isRead eq {'true' if term.value == 'read' else 'false'}")
            elif term.field == "has":
                clauses.append("hasAttachments eq true")
            elif term.field == "after":
                clauses.append(f"receivedDateTime ge {term.value}T00:00:00Z")
            elif term.field == "before":
                clauses.append(f"receivedDateTime lt {term.value}T00:00:00Z")
        return NativeQuery(filter=" and ".join(clauses))
