"""Tests for run-scoped logging."""

import json
import logging

from reconciler.logging_config import CustomJsonFormatter, RunContextFormatter, get_logger


def _record(**extra):
    record = logging.LogRecord("reconciler.test", logging.INFO, __file__, 10, "hello", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_groups_run_fields():
    formatter = CustomJsonFormatter("%(message)s")
    payload = json.loads(formatter.format(_record(run_id="r1", feed_id="f1", stage="match")))

    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["run"] == {"run_id": "r1", "feed_id": "f1", "stage": "match"}
    assert "run_id" not in payload


def test_json_formatter_without_run_context():
    payload = json.loads(CustomJsonFormatter("%(message)s").format(_record()))
    assert "run" not in payload


def test_console_formatter_prefix():
    formatter = RunContextFormatter("%(message)s")
    assert formatter.format(_record()) == "hello"
    assert formatter.format(_record(run_id="r1")) == "[r1] hello"
    assert formatter.format(_record(run_id="r1", stage="parse")) == "[r1/parse] hello"


def test_bind_merges_context():
    log = get_logger("reconciler.test", run_id="r1", feed_id="f1")
    staged = log.bind(stage="classify")

    assert staged.extra == {"run_id": "r1", "feed_id": "f1", "stage": "classify"}
    assert log.extra == {"run_id": "r1", "feed_id": "f1"}

    _, kwargs = staged.process("msg", {"extra": {"rows": 3}})
    assert kwargs["extra"] == {"run_id": "r1", "feed_id": "f1", "stage": "classify", "rows": 3}
