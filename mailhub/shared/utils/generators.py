"""ID and secret generators (CUID2 for ids, urlsafe tokens for secrets)."""

import secrets

from cuid2 import cuid_wrapper

cuid_generator = cuid_wrapper()


def generate_cuid() -> str:
    """Generate a collision-resistant unique identifier (CUID2).

    Returns:
        A new CUID string.
    """
    result = cuid_generator()
    if not isinstance(result, str):
        raise TypeError(
            f"Expected str from cuid_generator, got {type(result).__name__}"
        )
    return result


def generate_client_secret(nbytes: int = 32) -> str:
    """Return a random urlsafe secret for validating inbound notifications."""
    return secrets.token_urlsafe(nbytes)
