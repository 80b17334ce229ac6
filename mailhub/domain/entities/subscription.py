"""Push subscription domain entity and its state machine.

Unregistered -> Pending -> Active -> RenewalDue -> (Active | Expired) -> Revoked

Expired and Revoked subscriptions can only come back through an explicit
new registration (-> Pending); nothing resurrects them automatically.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import ClassVar

from mailhub.domain.enums import BackendKind, SubscriptionState
from mailhub.domain.exceptions import ValidationException

_S = SubscriptionState


@dataclass(frozen=True)
class Subscription:
    """Per-account push subscription record (owned by the subscription manager)."""

    account_id: str
    backend_kind: BackendKind
    state: SubscriptionState = SubscriptionState.UNREGISTERED
    backend_subscription_id: str | None = None
    expires_at: datetime | None = None
    client_secret: str | None = None
    callback_url: str | None = None
    requested_expiry: datetime | None = None
    history_cursor: str | None = None
    failure_reason: str | None = None
    renewal_attempts: int = 0

    ALLOWED_TRANSITIONS: ClassVar[dict[SubscriptionState, frozenset[SubscriptionState]]] = {
        _S.UNREGISTERED: frozenset({_S.PENDING}),
        # Registration failure returns to UNREGISTERED.
        _S.PENDING: frozenset({_S.ACTIVE, _S.UNREGISTERED}),
        # ACTIVE -> EXPIRED when the backend reports the subscription removed.
        _S.ACTIVE: frozenset({_S.RENEWAL_DUE, _S.EXPIRED, _S.REVOKED}),
        _S.RENEWAL_DUE: frozenset({_S.ACTIVE, _S.EXPIRED}),
        _S.EXPIRED: frozenset({_S.PENDING, _S.REVOKED}),
        _S.REVOKED: frozenset({_S.PENDING}),
    }

    def can_transition_to(self, target: SubscriptionState) -> bool:
        return target in self.ALLOWED_TRANSITIONS[self.state]

    def transition_to(self, target: SubscriptionState, **changes: object) -> Subscription:
        """Return a copy in the target state. Raises ValidationException on an illegal edge."""
        if not self.can_transition_to(target):
            raise ValidationException(
                f"Illegal subscription transition {self.state.value} -> {target.value}",
                field="state",
            )
        return replace(self, state=target, **changes)  # type: ignore[arg-type]

    def renewal_due(self, now: datetime, margin: timedelta) -> bool:
        """True when an ACTIVE subscription has crossed (expiry - margin)."""
        if self.state != _S.ACTIVE or self.expires_at is None:
            return False
        return now >= self.expires_at - margin

    def is_lapsed(self, now: datetime) -> bool:
        """True when the backend-enforced expiry has already passed."""
        return self.expires_at is not None and now >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"Subscription(account_id={self.account_id!r}, state={self.state.value!r}, "
            f"backend_subscription_id={self.backend_subscription_id!r}, "
            f"expires_at={self.expires_at.isoformat() if self.expires_at else None!r})"
        )
