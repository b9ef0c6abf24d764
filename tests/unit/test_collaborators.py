"""Unit tests for audit, notification and auto-save collaborators."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from workflow_orchestrator.orchestrator.engine.autosave import AutoSaveRunner
from workflow_orchestrator.orchestrator.engine.collaborators import (
    AuditEvent,
    AuditEventKind,
    InMemoryAuditSink,
    InMemoryNotificationSink,
    LoggingAuditSink,
    NotificationKind,
    redact,
)

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


def test_redact_masks_sensitive_keys_at_any_depth() -> None:
    data = {
        "Password": "hunter2",
        "payment": {"bank_details": {"ssn": "123", "iban": "DE00"}},
        "items": [{"token": "t"}, {"amount": 5}],
    }

    assert redact(data) == {
        "Password": "[REDACTED]",
        "payment": {"bank_details": {"ssn": "[REDACTED]", "iban": "DE00"}},
        "items": [{"token": "[REDACTED]"}, {"amount": 5}],
    }
    assert data["Password"] == "hunter2"


def test_audit_search_filters_newest_first() -> None:
    sink = InMemoryAuditSink()
    for minute, kind, success in (
        (0, AuditEventKind.WORKFLOW_CREATED, True),
        (1, AuditEventKind.PERMISSION_CHECKED, False),
        (2, AuditEventKind.WORKFLOW_TRANSITIONED, True),
        (3, AuditEventKind.PERMISSION_CHECKED, True),
    ):
        sink.record(
            AuditEvent(
                kind=kind,
                timestamp=T0 + timedelta(minutes=minute),
                actor_id="bob",
                workflow_id="exp-1",
                success=success,
            )
        )

    checks = sink.search(kind=AuditEventKind.PERMISSION_CHECKED)
    assert [e.timestamp.minute for e in checks] == [3, 1]
    assert len(sink.search(success=False)) == 1
    assert [e.timestamp.minute for e in sink.search(since=T0 + timedelta(minutes=2))] == [3, 2]
    assert len(sink.search(workflow_id="exp-1", limit=2)) == 2
    assert sink.search(actor_id="carol") == []


def test_audit_sink_keeps_a_bounded_window() -> None:
    sink = InMemoryAuditSink(max_events=3, retention=None)
    for minute in range(5):
        at = T0 + timedelta(minutes=minute)
        sink.record(AuditEvent(kind=AuditEventKind.CONTEXT_UPDATED, timestamp=at))

    assert [e.timestamp.minute for e in sink.events] == [2, 3, 4]


def test_audit_sink_drops_events_past_retention() -> None:
    sink = InMemoryAuditSink(retention=timedelta(days=1))
    sink.record(AuditEvent(kind=AuditEventKind.WORKFLOW_CREATED, timestamp=T0))
    sink.record(AuditEvent(kind=AuditEventKind.CONTEXT_UPDATED, timestamp=T0 + timedelta(hours=1)))
    sink.record(
        AuditEvent(kind=AuditEventKind.WORKFLOW_TRANSITIONED, timestamp=T0 + timedelta(days=2))
    )

    assert [e.kind for e in sink.events] == [AuditEventKind.WORKFLOW_TRANSITIONED]

    assert sink.cleanup_old_entries(T0 + timedelta(days=4)) == 1
    assert sink.events == []
    assert sink.cleanup_old_entries(T0 + timedelta(days=5)) == 0


def test_logging_audit_sink_emits_structured_record(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("INFO", logger="workflow_orchestrator.audit"):
        LoggingAuditSink().record(AuditEvent(kind=AuditEventKind.CONTEXT_UPDATED, actor_id="bob"))

    (record,) = caplog.records
    assert record.audit["kind"] == "context_updated"
    assert record.audit["actor_id"] == "bob"


def test_notification_sink_indexes_by_recipient() -> None:
    sink = InMemoryNotificationSink()
    sink.notify(["carol", "dave"], NotificationKind.ACTION_REQUIRED, {"workflow_id": "exp-1"})
    sink.notify(["alice"], NotificationKind.WORKFLOW_COMPLETED, {"workflow_id": "exp-1"})

    assert [n.kind for n in sink.for_recipient("dave")] == [NotificationKind.ACTION_REQUIRED]
    assert len(sink.sent) == 2


def test_auto_save_runner_sweeps_until_stopped() -> None:
    swept = threading.Event()
    calls: list[int] = []

    def sweep() -> int:
        calls.append(1)
        swept.set()
        return 1

    runner = AutoSaveRunner(sweep, interval_seconds=0.01)
    runner.start()
    try:
        assert swept.wait(timeout=5)
        assert runner.running
    finally:
        runner.stop()

    assert not runner.running
    assert calls


def test_auto_save_runner_requires_positive_interval() -> None:
    with pytest.raises(ValueError):
        AutoSaveRunner(lambda: 0, interval_seconds=0)
