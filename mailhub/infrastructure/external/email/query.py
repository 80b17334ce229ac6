"""Common search query grammar.

A query is whitespace-separated terms. A term is either `field:value` or
free text; values with spaces are double-quoted (`subject:"quarterly report"`).

Supported fields:
    from:<address>   to:<address>   subject:<text>
    is:read | is:unread             has:attachment
    after:YYYY-MM-DD  before:YYYY-MM-DD

Boolean operators (OR, AND, NOT), negation (-term) and grouping are not part
of the grammar and are rejected rather than passed through.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import date

from mailhub.domain.exceptions import ValidationException

SUPPORTED_FIELDS = frozenset({"from", "to", "subject", "is", "has", "after", "before"})
_OPERATORS = frozenset({"OR", "AND", "NOT"})
_FIELD_RE = re.compile(r"^([A-Za-z]+):(.*)$", re.DOTALL)


@dataclass(frozen=True)
class QueryTerm:
    field: str
    value: str


@dataclass(frozen=True)
class ParsedQuery:
    terms: tuple[QueryTerm, ...] = field(default_factory=tuple)
    free_text: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.terms and not self.free_text

    def values(self, name: str) -> list[str]:
        return [t.value for t in self.terms if t.field == name]


def _parse_date(value: str, name: str) -> str:
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError as e:
        raise ValidationException(
            f"{name}: expects YYYY-MM-DD, got {value!r}", field="query"
        ) from e


def _validate_term(name: str, value: str) -> QueryTerm:
    if name not in SUPPORTED_FIELDS:
        raise ValidationException(f"Unsupported query field: {name}", field="query")
    if not value:
        raise ValidationException(f"Empty value for query field: {name}", field="query")
    if name == "is":
        lowered = value.lower()
        if lowered not in ("read", "unread"):
            raise ValidationException(f"Unsupported is: value {value!r}", field="query")
        return QueryTerm(name, lowered)
    if name == "has":
        lowered = value.lower()
        if lowered not in ("attachment", "attachments"):
            raise ValidationException(f"Unsupported has: value {value!r}", field="query")
        return QueryTerm(name, "attachment")
    if name in ("after", "before"):
        return QueryTerm(name, _parse_date(value, name))
    return QueryTerm(name, value)


def parse_query(query: str | None) -> ParsedQuery:
    """Parse the common grammar. Raises ValidationException on unsupported syntax."""
    if query is None or not query.strip():
        return ParsedQuery()
    if any(ch in query for ch in "(){}"):
        raise ValidationException("Grouping is not supported in queries", field="query")
    try:
        tokens = shlex.split(query)
    except ValueError as e:
        raise ValidationException(f"Malformed query: {e}", field="query") from e
    terms: list[QueryTerm] = []
    free_text: list[str] = []
    for token in tokens:
        if token in _OPERATORS:
            raise ValidationException(
                f"Boolean operator {token} is not supported", field="query"
            )
        if token.startswith("-"):
            raise ValidationException("Negated terms are not supported", field="query")
        match = _FIELD_RE.match(token)
        if match:
            terms.append(_validate_term(match.group(1).lower(), match.group(2).strip()))
        else:
            free_text.append(token)
    return ParsedQuery(terms=tuple(terms), free_text=tuple(free_text))
