"""Tests for structured logging setup and timezone helpers."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

import pytest
import structlog

from inverter_gateway.errors import InvalidInput
from inverter_gateway.logging.context import bind_context, clear_context, device_context
from inverter_gateway.logging.structured import REDACTED, redact_secrets, setup_logging
from inverter_gateway.timezone_utils import local_today, parse_query_date, resolve_timezone


class TestStructuredLogging:
    def test_json_lines_carry_bound_context(self, tmp_path) -> None:
        log_file = tmp_path / "gateway.log"
        setup_logging(level="DEBUG", fmt="json", log_file=str(log_file))
        try:
            bind_context(device_id="P250801055", request_id="abc")
            logging.getLogger("inverter_gateway.test").info("served by %s", "mirror")
        finally:
            clear_context()
            for handler in logging.getLogger().handlers:
                handler.flush()

        line = log_file.read_text().strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "served by mirror"
        assert record["device_id"] == "P250801055"
        assert record["level"] == "info"

    def test_secrets_redacted(self) -> None:
        event = redact_secrets(None, "info", {"event": "share token issued", "token": "abc", "password": "", "device_id": "P1"})
        assert event["token"] == REDACTED
        assert event["password"] == ""
        assert event["device_id"] == "P1"

    def test_device_context_restores_previous(self) -> None:
        clear_context()
        bind_context(request_id="r1")
        with device_context("P1", topic="reportApp/P1"):
            assert structlog.contextvars.get_contextvars()["device_id"] == "P1"
        ctx = structlog.contextvars.get_contextvars()
        assert "device_id" not in ctx
        assert ctx["request_id"] == "r1"
        clear_context()

    def test_level_applied(self) -> None:
        setup_logging(level="warning", fmt="console")
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING


class TestTimezone:
    def test_known_zone_offset(self) -> None:
        tz = resolve_timezone("Asia/Ho_Chi_Minh")
        assert datetime(2025, 1, 15, tzinfo=tz).utcoffset() == timedelta(hours=7)

    def test_unknown_zone_falls_back(self) -> None:
        assert resolve_timezone("Nowhere/Special") is not None

    def test_local_today(self) -> None:
        assert local_today("Asia/Ho_Chi_Minh").year >= 2025

    def test_parse_query_date(self) -> None:
        assert parse_query_date("2025-01-15", "Asia/Ho_Chi_Minh").isoformat() == "2025-01-15"
        assert parse_query_date(None, "Asia/Ho_Chi_Minh") == local_today("Asia/Ho_Chi_Minh")
        with pytest.raises(InvalidInput):
            parse_query_date("2025-13-40", "UTC")
