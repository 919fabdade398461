"""Tests for the JSON-lines logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest

from podpilot_boot._logging import (
    LIBRARY_LOGGER_NAME,
    JsonLinesFormatter,
    _NonBlockingHandler,
    configure_logging,
    get_service_logger,
    parse_level,
    shutdown_logging,
)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("podpilot_boot.apps", logging.WARNING, __file__, 1, "port %d busy", (7860,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonLinesFormatter:
    """One flat JSON object per record."""

    def test_core_fields(self) -> None:
        payload = json.loads(JsonLinesFormatter().format(_record()))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "podpilot_boot.apps"
        assert payload["message"] == "port 7860 busy"
        assert payload["timestamp"].endswith("+00:00")

    def test_extra_fields_flattened(self) -> None:
        payload = json.loads(JsonLinesFormatter().format(_record(service="comfyui", pid=42, stream="stderr")))

        assert payload["service"] == "comfyui"
        assert payload["pid"] == 42
        assert payload["stream"] == "stderr"
        assert "args" not in payload
        assert "msg" not in payload

    def test_non_json_values_stringified(self) -> None:
        payload = json.loads(JsonLinesFormatter().format(_record(agent_bin=Path("/app/podpilot-agent"))))
        assert payload["agent_bin"] == "/app/podpilot-agent"

    def test_exception_info(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonLinesFormatter().format(record))
        assert payload["exception_type"] == "RuntimeError"
        assert "RuntimeError: boom" in payload["traceback"]

    def test_single_line(self) -> None:
        record = _record()
        record.msg = "line one\nline two"
        record.args = ()
        assert "\n" not in JsonLinesFormatter().format(record)


class TestParseLevel:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("debug", logging.DEBUG),
            ("INFO", logging.INFO),
            ("warn", logging.WARNING),
            ("warning", logging.WARNING),
            ("error", logging.ERROR),
            (logging.CRITICAL, logging.CRITICAL),
        ],
    )
    def test_known_levels(self, name: str | int, expected: int) -> None:
        assert parse_level(name) == expected

    def test_unknown_level(self) -> None:
        with pytest.raises(ValueError, match="Unknown log level"):
            parse_level("verbose")


class TestConfigureLogging:
    """Handler lifecycle on the package root logger."""

    def test_idempotent(self) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        try:
            configure_logging(level="debug")
            configure_logging(level="warn")

            handlers = [h for h in lib_logger.handlers if isinstance(h, _NonBlockingHandler)]
            assert len(handlers) == 1
            assert lib_logger.level == logging.WARNING
        finally:
            shutdown_logging()
            logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(logging.NOTSET)

        assert not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers)

    def test_writes_json_lines_to_stdout(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level="info")
        try:
            get_service_logger("comfyui").info("model loaded", extra={"service": "comfyui", "pid": 7})
            get_service_logger("comfyui").debug("below threshold")
        finally:
            shutdown_logging()
            logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(logging.NOTSET)

        lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
        payloads = [json.loads(line) for line in lines]
        messages = [p["message"] for p in payloads]

        assert "model loaded" in messages
        assert "below threshold" not in messages
        loaded = next(p for p in payloads if p["message"] == "model loaded")
        assert loaded["logger"] == "podpilot_boot.services.comfyui"
        assert loaded["service"] == "comfyui"
