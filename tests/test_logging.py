"""Tests for structured logging configuration."""
import json
import logging
from typing import Any

import pytest
import structlog

from sandbox_gateway.monitoring.logging import service_context, setup_logging


@pytest.mark.unit
class TestLogging:

    def test_service_context_keeps_explicit_fields(self, test_settings: Any) -> None:
        processor = service_context(test_settings, "renewal-worker")

        stamped = processor(None, "info", {"event": "subscription_renewed", "component": "override"})

        assert stamped["app_name"] == "sandbox-gateway-test"
        assert stamped["app_env"] == "test"
        assert stamped["component"] == "override"

    def test_events_are_written_as_single_json_lines(self, test_settings: Any, capsys: Any) -> None:
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            setup_logging(test_settings, component="webhook-retry-worker")
            structlog.get_logger("sandbox_gateway.core.scheduler").info(
                "subscription_renewed", subscription_id="sub_1", amount=500000
            )
        finally:
            structlog.reset_defaults()
            root.handlers[:] = handlers
            root.setLevel(level)

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
        renewed = next(line for line in lines if line["event"] == "subscription_renewed")

        assert renewed["subscription_id"] == "sub_1"
        assert renewed["amount"] == 500000
        assert renewed["level"] == "info"
        assert renewed["logger"] == "sandbox_gateway.core.scheduler"
        assert renewed["component"] == "webhook-retry-worker"
        assert renewed["app_name"] == "sandbox-gateway-test"
        assert "timestamp" in renewed
        assert any(line["event"] == "logging_configured" for line in lines)
