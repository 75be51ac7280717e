"""Tests for tamper-evident audit trail behavior."""

import json
import stat

import pytest

from tandem.audit import AUDIT_KEY_ENV, AuditTrail, EventType, MemoryAuditSink


@pytest.fixture
def trail(tmp_path, monkeypatch):
    monkeypatch.delenv(AUDIT_KEY_ENV, raising=False)
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.CART_CREATED, mandate_id="cart_1", details={"total": "89.99"})
    trail.log(EventType.PAYMENT_COMPLETED, mandate_id="pm-1")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["details"]["total"] = "0.01"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken: event hash mismatch"):
        trail.read_events()


def test_audit_detects_deleted_entry(trail, tmp_path):
    for n in range(3):
        trail.log(EventType.MESSAGE_RECEIVED, task_id=f"t-{n}")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_links_events(trail):
    first = trail.log(EventType.TOKEN_ISSUED)
    second = trail.log(EventType.TOKEN_BOUND, mandate_id="pm-1")
    assert first.prev_hash is None
    assert second.prev_hash == first.event_hash


def test_chain_continues_across_instances(trail, tmp_path):
    trail.log(EventType.TOKEN_ISSUED)
    reopened = AuditTrail(path=trail.path, key_path=trail.key_path)
    reopened.log(EventType.TOKEN_BOUND)
    assert len(reopened.read_events()) == 2


def test_files_are_private(trail):
    trail.log(EventType.TOKEN_ISSUED)
    assert stat.S_IMODE(trail.path.stat().st_mode) == 0o600
    assert stat.S_IMODE(trail.key_path.stat().st_mode) == 0o600


def test_read_filters_and_limit(trail):
    trail.log(EventType.MESSAGE_RECEIVED, task_id="t-1")
    trail.log(EventType.TASK_TRANSITION, task_id="t-1", details={"from": "submitted", "to": "working"})
    trail.log(EventType.MESSAGE_RECEIVED, task_id="t-2")

    assert [e.task_id for e in trail.read_events(task_id="t-1")] == ["t-1", "t-1"]
    received = trail.read_events(event_type=EventType.MESSAGE_RECEIVED)
    assert [e.task_id for e in received] == ["t-1", "t-2"]
    assert [e.task_id for e in trail.read_events(limit=1)] == ["t-2"]
    assert trail.read_events(task_id="t-1", event_type=EventType.TASK_TRANSITION)[0].details == {
        "from": "submitted", "to": "working",
    }


def test_summary(trail):
    trail.log(EventType.CHALLENGE_ISSUED, task_id="t-1")
    trail.log(EventType.CHALLENGE_FAILED, task_id="t-1", success=False, reason="Challenge response incorrect.")
    trail.log(EventType.CHALLENGE_SATISFIED, task_id="t-1")
    trail.log(EventType.CHALLENGE_ISSUED, task_id="t-2")

    summary = trail.summary(task_id="t-1")
    assert summary["total_events"] == 3
    assert summary["failures"] == 1
    assert summary["by_type"] == {"challenge_issued": 1, "challenge_failed": 1, "challenge_satisfied": 1}
    assert json.loads(summary["last_event"])["event_type"] == "challenge_satisfied"


def test_empty_trail(trail):
    assert trail.read_events() == []
    assert trail.summary()["last_event"] is None


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, "shared-secret")
    writer = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "a" / "key")
    writer.log(EventType.PAYMENT_RELAYED)

    # Same key, different key file: the chain still verifies.
    reader = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "b" / "key")
    assert len(reader.read_events()) == 1

    monkeypatch.setenv(AUDIT_KEY_ENV, "other-secret")
    with pytest.raises(RuntimeError, match="Audit chain broken"):
        AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "c" / "key").read_events()


class TestMemoryAuditSink:
    def test_keeps_events_in_order(self):
        sink = MemoryAuditSink()
        sink.log(EventType.CART_CREATED, agent="Generic Merchant", mandate_id="cart_1")
        sink.log(EventType.CART_UPDATED, agent="Generic Merchant", mandate_id="cart_1")
        sink.log(EventType.CART_CREATED, agent="Generic Merchant", mandate_id="cart_2")

        assert [e.mandate_id for e in sink.of_type(EventType.CART_CREATED)] == ["cart_1", "cart_2"]
        assert len(sink.events) == 3
        assert sink.events[0].event_hash is None

    def test_event_json_drops_empty_fields(self):
        event = MemoryAuditSink().log(EventType.TOKEN_REJECTED, success=False, reason="Invalid token")
        data = json.loads(event.to_json())
        assert data["success"] is False
        assert data["reason"] == "Invalid token"
        assert "task_id" not in data
