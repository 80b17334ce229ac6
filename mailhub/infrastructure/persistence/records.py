"""Persistence record mapping (entity <-> plain dict).

Record fields are exactly what the storage collaborator must hold:
credential (account id, backend kind, tokens, expiry, revoked flag) and
subscription (account id, backend subscription id, expiry, secret, state),
plus the bookkeeping fields the managers need to resume after a restart.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from mailhub.domain.entities import Account, Credential, Subscription
from mailhub.domain.enums import BackendKind, CredentialState, SubscriptionState


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def account_to_record(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "backend_kind": account.backend_kind.value,
        "email_address": account.email_address,
        "credential_ref": account.credential_ref,
    }


def account_from_record(data: dict[str, Any]) -> Account:
    return Account(
        id=data["id"],
        backend_kind=BackendKind(data["backend_kind"]),
        email_address=data["email_address"],
        credential_ref=data.get("credential_ref", ""),
    )


def credential_to_record(credential: Credential) -> dict[str, Any]:
    return {
        "account_id": credential.account_id,
        "backend_kind": credential.backend_kind.value,
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "expires_at": _iso(credential.expires_at),
        "revoked": credential.is_revoked,
        "revoked_at": _iso(credential.revoked_at),
        "version": credential.version,
    }


def credential_from_record(data: dict[str, Any]) -> Credential:
    expires_at = _dt(data["expires_at"])
    if expires_at is None:
        raise ValueError("credential record has no expires_at")
    return Credential(
        account_id=data["account_id"],
        backend_kind=BackendKind(data["backend_kind"]),
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=expires_at,
        state=CredentialState.REVOKED if data.get("revoked") else CredentialState.ACTIVE,
        revoked_at=_dt(data.get("revoked_at")),
        version=int(data.get("version", 1)),
    )


def subscription_to_record(subscription: Subscription) -> dict[str, Any]:
    return {
        "account_id": subscription.account_id,
        "backend_kind": subscription.backend_kind.value,
        "backend_subscription_id": subscription.backend_subscription_id,
        "expires_at": _iso(subscription.expires_at),
        "client_secret": subscription.client_secret,
        "state": subscription.state.value,
        "callback_url": subscription.callback_url,
        "requested_expiry": _iso(subscription.requested_expiry),
        "history_cursor": subscription.history_cursor,
        "failure_reason": subscription.failure_reason,
        "renewal_attempts": subscription.renewal_attempts,
    }


def subscription_from_record(data: dict[str, Any]) -> Subscription:
    return Subscription(
        account_id=data["account_id"],
        backend_kind=BackendKind(data["backend_kind"]),
        state=SubscriptionState(data["state"]),
        backend_subscription_id=data.get("backend_subscription_id"),
        expires_at=_dt(data.get("expires_at")),
        client_secret=data.get("client_secret"),
        callback_url=data.get("callback_url"),
        requested_expiry=_dt(data.get("requested_expiry")),
        history_cursor=data.get("history_cursor"),
        failure_reason=data.get("failure_reason"),
        renewal_attempts=int(data.get("renewal_attempts", 0)),
    )
