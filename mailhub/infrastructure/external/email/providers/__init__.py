"""Mailbox adapters: Gmail (labels) and Outlook (folders)."""

from mailhub.infrastructure.external.email.providers.gmail_provider import GmailAdapter
from mailhub.infrastructure.external.email.providers.outlook_provider import OutlookAdapter

__all__ = [
    "GmailAdapter",
    "OutlookAdapter",
]
