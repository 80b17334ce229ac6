"""Core constants: storage key prefixes and shared literal values."""

# Redis key prefixes
KEY_PREFIX = "mailhub"
KEY_PREFIX_ACCOUNT = "account"
KEY_PREFIX_ACCOUNT_EMAIL = "account_email"
KEY_PREFIX_CREDENTIAL = "credential"
KEY_PREFIX_SUBSCRIPTION = "subscription"
KEY_PREFIX_SUBSCRIPTION_BACKEND = "subscription_backend"
KEY_PREFIX_SUBSCRIPTION_INDEX = "subscriptions"
KEY_PREFIX_SEQUENCE = "sequence"
CHANGE_EVENT_CHANNEL_PREFIX = "change_events"

# Delimiter for composite keys
KEY_SEP = ":"

# Backend limits
GMAIL_WATCH_MAX_LIFETIME_DAYS = 7
GRAPH_MAIL_SUBSCRIPTION_MAX_MINUTES = 10070
