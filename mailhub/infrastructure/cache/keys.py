"""Redis key builders. Single place for key format (DRY).

Key components (account ids, backend subscription ids) must not contain
KEY_SEP to avoid ambiguous or colliding keys.
"""

from mailhub.core.constants import (
    CHANGE_EVENT_CHANNEL_PREFIX,
    KEY_PREFIX,
    KEY_PREFIX_ACCOUNT,
    KEY_PREFIX_ACCOUNT_EMAIL,
    KEY_PREFIX_CREDENTIAL,
    KEY_PREFIX_SEQUENCE,
    KEY_PREFIX_SUBSCRIPTION,
    KEY_PREFIX_SUBSCRIPTION_BACKEND,
    KEY_PREFIX_SUBSCRIPTION_INDEX,
    KEY_SEP,
)


def _validate_key_component(value: str, name: str) -> None:
    """Raise ValueError if value is empty or contains the key separator."""
    if not value:
        raise ValueError(f"Key component {name!r} must not be empty")
    if KEY_SEP in value:
        raise ValueError(f"Key component {name!r} must not contain separator {KEY_SEP!r}")


def _key(*parts: str) -> str:
    return KEY_SEP.join((KEY_PREFIX, *parts))


def account_key(account_id: str) -> str:
    _validate_key_component(account_id, "account_id")
    return _key(KEY_PREFIX_ACCOUNT, account_id)


def account_email_key(email_address: str) -> str:
    # Addresses never contain ':' in practice; validate anyway.
    _validate_key_component(email_address, "email_address")
    return _key(KEY_PREFIX_ACCOUNT_EMAIL, email_address.lower())


def credential_key(account_id: str) -> str:
    _validate_key_component(account_id, "account_id")
    return _key(KEY_PREFIX_CREDENTIAL, account_id)


def subscription_key(account_id: str) -> str:
    _validate_key_component(account_id, "account_id")
    return _key(KEY_PREFIX_SUBSCRIPTION, account_id)


def subscription_backend_key(backend_subscription_id: str) -> str:
    _validate_key_component(backend_subscription_id, "backend_subscription_id")
    return _key(KEY_PREFIX_SUBSCRIPTION_BACKEND, backend_subscription_id)


def subscription_index_key() -> str:
    """Set of account ids that have a subscription record."""
    return _key(KEY_PREFIX_SUBSCRIPTION_INDEX)


def sequence_key(account_id: str) -> str:
    _validate_key_component(account_id, "account_id")
    return _key(KEY_PREFIX_SEQUENCE, account_id)


def change_event_channel(account_id: str) -> str:
    _validate_key_component(account_id, "account_id")
    return _key(CHANGE_EVENT_CHANNEL_PREFIX, account_id)
