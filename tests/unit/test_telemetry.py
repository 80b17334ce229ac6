"""Tracing decorator and telemetry configuration."""

import pytest
from fastapi import FastAPI

from mailhub.domain.exceptions import NotFoundException
from mailhub.shared.telemetry.telemetry import TelemetryConfig, get_telemetry, set_telemetry
from mailhub.shared.telemetry.tracing import add_span_attributes, traced


async def test_traced_returns_result_and_propagates_errors() -> None:
    @traced("test.lookup")
    async def lookup(account_id: str, *, message_id: str) -> str:
        add_span_attributes(account_id=account_id)
        if message_id == "missing":
            raise NotFoundException("message", message_id)
        return f"{account_id}/{message_id}"

    assert await lookup("a1", message_id="m1") == "a1/m1"
    with pytest.raises(NotFoundException):
        await lookup("a1", message_id="missing")


def test_traced_rejects_sync_functions() -> None:
    with pytest.raises(TypeError):

        @traced()
        def not_async() -> None:
            pass


def test_disabled_telemetry_is_a_no_op() -> None:
    telemetry = TelemetryConfig("mailhub", "1.0.0", enabled=False)

    assert telemetry.setup_telemetry(exporter_type="console") is None
    telemetry.instrument_fastapi(FastAPI())
    telemetry.instrument_redis()
    telemetry.shutdown()
    assert telemetry.tracer_provider is None


def test_global_telemetry_instance() -> None:
    telemetry = TelemetryConfig("mailhub", "1.0.0", enabled=False)
    set_telemetry(telemetry)
    try:
        assert get_telemetry() is telemetry
    finally:
        set_telemetry(None)
    assert get_telemetry() is None
