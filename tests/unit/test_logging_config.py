"""Unit tests for the structlog logging configuration."""

import json

import structlog

from reconciler.logging_config import setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")
        structlog.contextvars.clear_contextvars()

    def test_production_renders_json_with_service(self, capsys):
        setup_logging(debug=False, service="reconciler-test")
        structlog.get_logger("test").info("reconcile_completed", identity_id="u1")
        structlog.contextvars.clear_contextvars()

        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "reconcile_completed"
        assert event["identity_id"] == "u1"
        assert event["service"] == "reconciler-test"
        assert event["level"] == "info"

    def test_debug_events_filtered_in_production(self, capsys):
        setup_logging(debug=False)
        structlog.get_logger("test").debug("noisy_event")
        structlog.contextvars.clear_contextvars()

        assert "noisy_event" not in capsys.readouterr().out


class TestStructlogContextBinding:
    def test_batch_context_is_scoped(self):
        structlog.contextvars.clear_contextvars()
        with structlog.contextvars.bound_contextvars(batch_id="batch-1"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "batch-1"
        assert "batch_id" not in structlog.contextvars.get_contextvars()

    def test_context_cleared_between_requests(self):
        structlog.contextvars.bind_contextvars(request_id="req-1")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-2")

        assert structlog.contextvars.get_contextvars()["request_id"] == "req-2"
        structlog.contextvars.clear_contextvars()
