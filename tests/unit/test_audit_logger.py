"""Tests for the audit logger."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from gewe_bridge.audit.logger import AuditLogger
from gewe_bridge.models import AuditEvent, AuditEventType, RiskLevel


def _make_event(**kwargs: object) -> AuditEvent:
    defaults: dict[str, object] = {
        "event_type": AuditEventType.WEBHOOK_AUTH_FAILURE,
        "action": "POST /webhook",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


def test_log_appends_json_line(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(_make_event())

    lines = log_file.read_text().strip().split("\n")
    assert len(lines) == 1
    parsed = json.loads(lines[0])
    assert parsed["event_type"] == "webhook_auth_failure"
    assert parsed["risk_level"] == "high"
    assert "source_ip" not in parsed


def test_log_multiple_events_append(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))

    for i in range(3):
        logger.log(_make_event(action=f"action_{i}"))

    lines = log_file.read_text().strip().split("\n")
    assert [json.loads(line)["action"] for line in lines] == ["action_0", "action_1", "action_2"]


def test_log_creates_parent_directory(tmp_path: Path) -> None:
    log_file = tmp_path / "subdir" / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(_make_event())
    assert log_file.exists()


def test_log_timestamps_are_iso8601(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(_make_event())
    parsed = json.loads(log_file.read_text().strip())
    assert datetime.fromisoformat(parsed["timestamp"]).tzinfo is not None


def test_details_serialized(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(_make_event(
        event_type=AuditEventType.POLICY_DROP,
        account_id="default",
        details={"reason": "dm_pairing", "sender_id": "wxid_a"},
    ))
    parsed = json.loads(log_file.read_text().strip())
    assert parsed["account_id"] == "default"
    assert parsed["details"] == {"reason": "dm_pairing", "sender_id": "wxid_a"}


def test_rotation_keeps_backups(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file), max_bytes=200, backup_count=2)

    for i in range(10):
        logger.log(_make_event(action=f"action_{i}"))

    assert log_file.exists()
    assert (tmp_path / "audit.jsonl.1").exists()
    assert (tmp_path / "audit.jsonl.2").exists()
    assert not (tmp_path / "audit.jsonl.3").exists()
    last = json.loads(log_file.read_text().strip().split("\n")[-1])
    assert last["action"] == "action_9"


def test_unwritable_path_does_not_raise(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    logger = AuditLogger(log_path=str(blocker / "audit.jsonl"))
    logger.log(_make_event())
    assert not (blocker / "audit.jsonl").exists()
