from __future__ import annotations

from pathlib import Path

import allure

from agent_supervisor.execution.audit import (
    AuditSession,
    NullAuditRecorder,
    audit_log_path,
    read_audit_log,
)
from agent_supervisor.execution.models import Attempt, utc_now

pytestmark = [
    allure.epic("Agent Supervisor"),
    allure.feature("Audit Trail"),
]


def _closed_attempt(number: int, *, success: bool, error: str | None = None) -> Attempt:
    attempt = Attempt(attempt_number=number, started_at=utc_now(), is_final_attempt=False)
    attempt.finish(
        success=success,
        duration_ms=1500,
        cost_usd=0.5,
        turn_count=4,
        error_message=error,
        checkpoint_id="abc1234def",
    )
    return attempt


def test_session_writes_lifecycle_records(audit_root: Path) -> None:
    with AuditSession(audit_root, "task-1", description="write report") as session:
        assert session.record_attempt_start("task-1", "do the thing", 1) is True
        assert session.record_attempt_end("task-1", _closed_attempt(1, success=False, error="x"))
        session.record_attempt_start("task-1", "do the thing again", 2)
        session.record_attempt_end("task-1", _closed_attempt(2, success=True))

    records = read_audit_log(audit_root, "task-1")

    assert [record["event"] for record in records] == [
        "session_start",
        "attempt_start",
        "attempt_end",
        "attempt_start",
        "attempt_end",
        "session_end",
    ]
    assert records[0]["description"] == "write report"
    assert records[1]["prompt_chars"] == len("do the thing")
    assert records[2]["success"] is False
    assert records[2]["error_message"] == "x"
    assert records[4]["checkpoint_id"] == "abc1234def"
    assert records[-1]["attempts"] == 2
    assert records[-1]["total_cost_usd"] == 1.0


def test_secrets_are_redacted_in_previews(audit_root: Path) -> None:
    session = AuditSession(audit_root, "task-2")
    session.record_attempt_start("task-2", "use key sk-abcdefghijklmnop please", 1)

    record = read_audit_log(audit_root, "task-2")[0]

    assert "sk-abcdefghijklmnop" not in record["prompt_preview"]
    assert "[redacted-token]" in record["prompt_preview"]


def test_write_failure_returns_false(tmp_path: Path) -> None:
    blocked_root = tmp_path / "not-a-directory"
    blocked_root.write_text("occupied", "utf-8")
    session = AuditSession(blocked_root, "task-3")

    assert session.initialize() is False
    assert session.record_attempt_start("task-3", "prompt", 1) is False
    session.close()


def test_close_is_idempotent(audit_root: Path) -> None:
    session = AuditSession(audit_root, "task-4")
    session.close()
    session.close()

    assert [record["event"] for record in read_audit_log(audit_root, "task-4")] == ["session_end"]


def test_task_id_is_sanitized_into_a_single_segment(audit_root: Path) -> None:
    path = audit_log_path(audit_root, "../../etc/passwd")

    assert path.parent.parent == audit_root
    assert path.name == "audit.jsonl"


def test_reader_skips_garbage_lines(audit_root: Path) -> None:
    path = audit_log_path(audit_root, "task-5")
    path.parent.mkdir(parents=True)
    path.write_text('{"event": "session_start"}\nnot json\n[1, 2]\n\n', "utf-8")

    assert read_audit_log(audit_root, "task-5") == [{"event": "session_start"}]
    assert read_audit_log(audit_root, "missing") == []


def test_null_recorder_accepts_everything() -> None:
    recorder = NullAuditRecorder()

    assert recorder.record_attempt_start("t", "p", 1) is True
    assert recorder.record_attempt_end("t", _closed_attempt(1, success=True)) is True
    recorder.close()
