from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from context_bundler.observability.logging import (
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _read_events(path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_structlog_events_become_json_lines(tmp_path) -> None:
    handle = setup_logging({"log_level": "INFO"}, run_id="run-1", log_dir=tmp_path)
    log = structlog.get_logger("context_bundler.tests")

    with correlation_scope(work_item_id="W-101", role="qa-agent", bundle_id=None):
        log.info("bundle_built", bundle_id="bnd-1", api_token="sk-123", characters=4200)
    log.debug("not_written")
    handle.flush()

    assert handle.log_path == tmp_path / "run-1" / "bundler.jsonl"
    events = _read_events(handle.log_path)
    assert len(events) == 1
    event = events[0]
    assert event["message"] == "bundle_built"
    assert event["level"] == "INFO"
    assert event["logger"] == "context_bundler.tests"
    assert event["run_id"] == "run-1"
    assert event["work_item_id"] == "W-101"
    assert event["role"] == "qa-agent"
    assert "bundle_id" not in event
    assert event["fields"] == {
        "api_token": "***REDACTED***",
        "bundle_id": "bnd-1",
        "characters": 4200,
    }
    assert str(event["timestamp"]).endswith("Z")


def test_messages_are_redacted_unless_disabled(tmp_path) -> None:
    handle = setup_logging({"redact_secrets": True}, run_id="run-2", log_dir=tmp_path)
    logging.getLogger("context_bundler").warning("retrying with Bearer abc.def")
    handle.flush()
    assert "abc.def" not in handle.log_path.read_text(encoding="utf-8")

    raw = setup_logging({"redact_secrets": False}, run_id="run-3", log_dir=tmp_path)
    logging.getLogger("context_bundler").warning("password=hunter2")
    raw.flush()
    assert "hunter2" in raw.log_path.read_text(encoding="utf-8")


def test_setup_replaces_previous_handlers(tmp_path) -> None:
    first = setup_logging({}, run_id="first", log_dir=tmp_path)
    second = setup_logging({}, run_id="second", log_dir=tmp_path)

    logger = logging.getLogger("context_bundler")
    assert all(handler not in logger.handlers for handler in first.handlers)
    assert all(handler in logger.handlers for handler in second.handlers)


def test_setup_rejects_blank_run_id_and_bad_level(tmp_path) -> None:
    with pytest.raises(ValueError, match="run_id"):
        setup_logging({}, run_id="  ", log_dir=tmp_path)
    with pytest.raises(ValueError, match="unsupported logging level"):
        setup_logging({"log_level": "LOUD"}, run_id="run", log_dir=tmp_path)


def test_correlation_scope_nests_and_restores() -> None:
    assert get_correlation_context() == {}
    with correlation_scope(work_item_id="W-1"):
        with correlation_scope(role="qa-agent", work_item_id=" "):
            assert get_correlation_context() == {"role": "qa-agent"}
        assert get_correlation_context() == {"work_item_id": "W-1"}
    assert get_correlation_context() == {}


def test_default_redactor_walks_nested_values() -> None:
    payload = {
        "headers": {"Authorization": "Bearer xyz"},
        "notes": ["token=abc123 and more"],
        "count": 3,
    }
    assert default_log_redactor(payload) == {
        "headers": {"Authorization": "***REDACTED***"},
        "notes": ["token=***REDACTED*** and more"],
        "count": 3,
    }
