from __future__ import annotations

import logging
from pathlib import Path

from catalog_admin.logging_utils import configure_logging, get_log_file_path, resolve_log_level
from catalog_admin.services.events import emit_structured_event, sanitize_context_value
from catalog_admin.services.jobs import UploadJob


def test_resolve_log_level(monkeypatch) -> None:
    monkeypatch.delenv("CATALOG_ADMIN_LOG_LEVEL", raising=False)
    assert resolve_log_level() == logging.INFO

    monkeypatch.setenv("CATALOG_ADMIN_LOG_LEVEL", "debug")
    assert resolve_log_level() == logging.DEBUG
    assert resolve_log_level("warning") == logging.WARNING
    assert resolve_log_level("15") == 15
    assert resolve_log_level("loud") == logging.INFO


def test_configure_logging_replaces_its_own_handlers(tmp_path: Path) -> None:
    root = logging.getLogger()
    original_level = root.level
    foreign = logging.NullHandler()
    root.addHandler(foreign)
    try:
        first = logging.StreamHandler()
        second = logging.StreamHandler()
        configure_logging(logging.INFO, handlers=[first])
        configure_logging(logging.INFO, handlers=[second])

        assert second in root.handlers
        assert first not in root.handlers
        assert foreign in root.handlers
        assert logging.getLogger("botocore").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            if getattr(handler, "_catalog_admin_handler", False) or handler is foreign:
                root.removeHandler(handler)
        root.setLevel(original_level)

    assert get_log_file_path(tmp_path) == tmp_path / "catalog_admin.log"


def test_sanitize_context_value_flattens_records() -> None:
    job = UploadJob(
        id=1, course_id=2, lecture_number=3, r2_dir="dir", status="pending", created_at="now"
    )

    flattened = sanitize_context_value(job)

    assert flattened["r2_dir"] == "dir"
    assert "output" not in flattened
    assert sanitize_context_value("  ") is None
    assert sanitize_context_value("x" * 300).endswith("…")


def test_error_events_are_escalated(caplog) -> None:
    logger = logging.getLogger("catalog_admin.events.test")
    with caplog.at_level(logging.DEBUG, logger="catalog_admin.events.test"):
        emit_structured_event(
            "DB_QUERY",
            "films.insert",
            payload={"status": "error", "table": "films"},
            duration_ms=1.5,
            level=logging.DEBUG,
            logger=logger,
        )

    (record,) = caplog.records
    assert record.levelno == logging.WARNING
    assert record.getMessage().startswith("[DB_QUERY] films.insert (status=error, table=films)")
    assert record.event_payload == {"status": "error", "table": "films"}
    assert record.event_duration_ms == 1.5
