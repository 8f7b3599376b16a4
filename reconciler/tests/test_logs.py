from __future__ import annotations

import json
import logging
import sys

from reconciler.src.logs import JSONFormatter, configure_logging, redact_sensitive_text


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        output = JSONFormatter().format(self._make_record())
        parsed = json.loads(output)

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_redact_sensitive_text_leaves_plain_text_alone() -> None:
    assert redact_sensitive_text("reconciled widgets/default/a") == "reconciled widgets/default/a"


def test_configure_logging_installs_single_json_handler() -> None:
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging("debug")
        configure_logging("warning")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_configure_logging_falls_back_to_info_for_unknown_level() -> None:
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging("chatty")

        assert root.level == logging.INFO
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
