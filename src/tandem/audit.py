"""
Audit trail for protocol traffic.

Every agent copies its inbound message parts and its task transitions
into an audit sink. ``AuditTrail`` writes append-only JSONL entries
with an HMAC hash chain so tampering is detected during reads;
``MemoryAuditSink`` keeps events in process for tests and the demo.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".tandem" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".tandem-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "TANDEM_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    CALLER_REJECTED = "caller_rejected"
    TASK_TRANSITION = "task_transition"
    CART_CREATED = "cart_created"
    CART_UPDATED = "cart_updated"
    TOKEN_ISSUED = "token_issued"
    TOKEN_BOUND = "token_bound"
    TOKEN_VERIFIED = "token_verified"
    TOKEN_REJECTED = "token_rejected"
    CHALLENGE_ISSUED = "challenge_issued"
    CHALLENGE_FAILED = "challenge_failed"
    CHALLENGE_SATISFIED = "challenge_satisfied"
    PAYMENT_RELAYED = "payment_relayed"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    DOWNSTREAM_FAILED = "downstream_failed"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    agent: Optional[str] = None
    task_id: Optional[str] = None
    context_id: Optional[str] = None
    mandate_id: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"), default=str)


class AuditSink(Protocol):
    def log(
        self,
        event_type: EventType,
        agent: Optional[str] = None,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        mandate_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent: ...


def _payload(
    event_type: EventType,
    agent: Optional[str],
    task_id: Optional[str],
    context_id: Optional[str],
    mandate_id: Optional[str],
    success: bool,
    reason: Optional[str],
    details: Optional[dict],
) -> dict[str, Any]:
    base_payload = {
        "event_type": event_type.value,
        "timestamp": time.time(),
        "agent": agent,
        "task_id": task_id,
        "context_id": context_id,
        "mandate_id": mandate_id,
        "success": success,
        "reason": reason,
        "details": details,
    }
    return {k: v for k, v in base_payload.items() if v is not None}


class MemoryAuditSink:
    """Keeps events in a list. Not persisted."""

    def __init__(self):
        self.events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def log(
        self,
        event_type: EventType,
        agent: Optional[str] = None,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        mandate_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(**_payload(
            event_type, agent, task_id, context_id, mandate_id, success, reason, details
        ))
        with self._lock:
            self.events.append(event)
        return event

    def of_type(self, event_type: EventType) -> list[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type.value]


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._write_lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"), default=str)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        agent: Optional[str] = None,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        mandate_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = _payload(
            event_type, agent, task_id, context_id, mandate_id, success, reason, details
        )
        # Round-trip so the hash covers exactly what read_events will see.
        payload = json.loads(json.dumps(payload, default=str))
        with self._write_lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)

            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )

            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)

            self._last_hash = current_hash
        return event

    def read_events(
        self,
        task_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if task_id and raw.get("task_id") != task_id:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def summary(self, task_id: Optional[str] = None) -> dict:
        events = self.read_events(task_id=task_id, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_json() if events else None,
        }
