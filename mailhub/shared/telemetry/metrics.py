"""Counters for credential refreshes and inbound notifications.

Backed by the OpenTelemetry metrics API (no-op until a MeterProvider is set
at startup). A process-local snapshot is kept alongside so callers and tests
can observe the counts without an exporter.
"""

from __future__ import annotations

import threading
from collections import Counter

from opentelemetry import metrics


class MailhubMetrics:
    """Refresh success/failure and notification outcome counters."""

    def __init__(self, meter_name: str = "mailhub") -> None:
        meter = metrics.get_meter(meter_name)
        self._refresh_counter = meter.create_counter(
            "mailhub.credential.refresh",
            description="Credential refresh exchanges by outcome",
        )
        self._notification_counter = meter.create_counter(
            "mailhub.notification",
            description="Inbound notifications by outcome",
        )
        self._renewal_counter = meter.create_counter(
            "mailhub.subscription.renewal",
            description="Subscription renewals by outcome",
        )
        self._counts: Counter[tuple[str, str, str]] = Counter()
        self._lock = threading.Lock()

    def _bump(self, family: str, backend: str, outcome: str) -> None:
        with self._lock:
            self._counts[(family, backend, outcome)] += 1

    def record_refresh(self, backend: str, outcome: str) -> None:
        """outcome: success | failure | revoked."""
        self._refresh_counter.add(1, {"backend": backend, "outcome": outcome})
        self._bump("refresh", backend, outcome)

    def record_notification(self, backend: str, outcome: str) -> None:
        """outcome: accepted | duplicate | rejected | unroutable."""
        self._notification_counter.add(1, {"backend": backend, "outcome": outcome})
        self._bump("notification", backend, outcome)

    def record_renewal(self, backend: str, outcome: str) -> None:
        """outcome: renewed | expired."""
        self._renewal_counter.add(1, {"backend": backend, "outcome": outcome})
        self._bump("renewal", backend, outcome)

    def count(self, family: str, outcome: str, backend: str | None = None) -> int:
        """Return the local count for family/outcome, optionally for one backend."""
        with self._lock:
            return sum(
                n
                for (f, b, o), n in self._counts.items()
                if f == family and o == outcome and (backend is None or b == backend)
            )
