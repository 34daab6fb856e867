"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from local_workflow_engine.engine.logging import JsonFormatter, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="local_workflow_engine.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Trigger fired for %s",
        args=("wf-1",),
        exc_info=None,
    )
    record.__dict__.update(extra)
    return record


def test_formatter_emits_one_json_object_with_extras() -> None:
    line = JsonFormatter().format(_record(workflow_id="wf-1", matched=2))

    payload = json.loads(line)

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "local_workflow_engine.test"
    assert payload["message"] == "Trigger fired for wf-1"
    assert payload["extra"] == {"workflow_id": "wf-1", "matched": 2}
    assert "\n" not in line


def test_formatter_stringifies_unserializable_extras() -> None:
    payload = json.loads(JsonFormatter().format(_record(path=object())))
    assert payload["extra"]["path"].startswith("<object object")


def test_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_replaces_handlers(capsys: pytest.CaptureFixture[str]) -> None:
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    try:
        configure_logging("debug")
        configure_logging("info")

        assert len(root.handlers) == 1
        assert root.level == logging.INFO
        assert logging.getLogger("urllib3").level == logging.WARNING

        logging.getLogger("local_workflow_engine.test").info("hello", extra={"n": 1})
        out = capsys.readouterr().out.strip().splitlines()
        assert json.loads(out[-1])["extra"] == {"n": 1}
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
