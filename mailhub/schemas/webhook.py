"""Webhook acknowledgement schemas.

Backends only look at the status code; the body is for operators.
"""

from pydantic import BaseModel, Field


class NotificationAck(BaseModel):
    """Outcome counts for one Graph notification batch."""

    accepted: int = Field(default=0, description="Notifications turned into change events")
    duplicate: int = Field(default=0, description="Redeliveries already processed")
    rejected: int = Field(default=0, description="Secret mismatch or inactive subscription")
    unroutable: int = Field(default=0, description="No matching subscription")
    failed: int = Field(default=0, description="Errors while processing")


class LifecycleAck(BaseModel):
    """Count of lifecycle events applied."""

    handled: int = Field(default=0)
    ignored: int = Field(default=0)
