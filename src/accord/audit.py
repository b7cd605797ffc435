"""
Audit trail for policy decisions and executions.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads. AuditTrail is the reference
implementation of the AuditRecorder capability the policy engine uses.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from .budget import day_start
from .config import DEFAULT_DATA_DIR
from .storage import ensure_private_dir, ensure_private_file, load_or_create_secret


DEFAULT_AUDIT_PATH = DEFAULT_DATA_DIR / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".accord-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "ACCORD_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    POLICY_ADDED = "policy_added"
    POLICY_REMOVED = "policy_removed"
    POLICY_CHANGE_CLASSIFIED = "policy_change_classified"
    PROVIDER_REGISTERED = "provider_registered"
    PROVIDER_FAILED = "provider_failed"
    AUTO_APPROVED = "auto_approved"
    ESCALATED = "escalated"
    RESERVATION_RELEASED = "reservation_released"
    EXECUTION_RECORDED = "execution_recorded"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    request_id: Optional[str] = None
    policy_id: Optional[str] = None
    agent_id: Optional[str] = None
    amount: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


@dataclass(frozen=True)
class ExecutionRecord:
    """What the engine records for one executed (or failed) request."""

    request_id: str
    policy_id: str
    vendor_id: str
    action: str
    success: bool
    timestamp: float
    amount: Optional[int] = None
    token: str = "native"
    agent_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    policy_id: str
    count: int
    amount_by_token: dict[str, int] = field(default_factory=dict)


class AuditRecorder(Protocol):
    """Audit capability consumed by the policy engine."""

    def log(self, event_type: EventType, **fields: Any) -> AuditEvent: ...

    def record_execution(self, record: ExecutionRecord) -> AuditEvent: ...

    def get_executions(self, policy_id: str, from_ts: float, to_ts: float) -> list[ExecutionRecord]: ...

    def get_usage_today(self, policy_id: str, now: Optional[datetime] = None) -> UsageSnapshot: ...


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
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._hmac_key = load_or_create_secret(self.key_path, AUDIT_KEY_ENV)
        self._last_hash = self._scan_last_hash()

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
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        request_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        timestamp: Optional[float] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time() if timestamp is None else timestamp,
            "request_id": request_id,
            "policy_id": policy_id,
            "agent_id": agent_id,
            "amount": amount,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with self._lock:
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

    def _verified_entries(self) -> Iterator[dict[str, Any]]:
        """Yield raw entries in file order, checking each link of the chain."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                raw = json.loads(line)
                prev_hash = raw.pop("prev_hash", None) or ""
                event_hash = raw.pop("event_hash", None) or ""
                if prev_hash != expected_prev:
                    raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {lineno}")
                if not hmac.compare_digest(self._event_hash(raw, prev_hash), event_hash):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {lineno}")
                expected_prev = event_hash
                yield {**raw, "prev_hash": prev_hash or None, "event_hash": event_hash}
        self._last_hash = expected_prev

    def read_events(
        self,
        policy_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain and return matching events, oldest first."""
        if not self.path.exists():
            return []
        fields = AuditEvent.__dataclass_fields__
        with self._lock:
            events = [
                AuditEvent(**{k: v for k, v in raw.items() if k in fields})
                for raw in self._verified_entries()
                if (not policy_id or raw.get("policy_id") == policy_id)
                and (not event_type or raw.get("event_type") == event_type.value)
            ]
        if limit is None:
            return events
        return events[-limit:]

    def record_execution(self, record: ExecutionRecord) -> AuditEvent:
        return self.log(
            EventType.EXECUTION_RECORDED,
            request_id=record.request_id,
            policy_id=record.policy_id,
            agent_id=record.agent_id,
            amount=record.amount,
            success=record.success,
            reason=record.error,
            timestamp=record.timestamp,
            details={
                "vendor_id": record.vendor_id,
                "action": record.action,
                "token": record.token,
                "tx_hash": record.tx_hash,
            },
        )

    def get_executions(self, policy_id: str, from_ts: float, to_ts: float) -> list[ExecutionRecord]:
        """Executions recorded under `policy_id` with from_ts <= timestamp <= to_ts."""
        records = []
        for event in self.read_events(policy_id=policy_id, event_type=EventType.EXECUTION_RECORDED, limit=None):
            if not from_ts <= event.timestamp <= to_ts:
                continue
            details = event.details or {}
            records.append(
                ExecutionRecord(
                    request_id=event.request_id or "",
                    policy_id=policy_id,
                    vendor_id=details.get("vendor_id", "unknown"),
                    action=details.get("action", "unknown"),
                    success=event.success,
                    timestamp=event.timestamp,
                    amount=event.amount,
                    token=details.get("token", "native"),
                    agent_id=event.agent_id,
                    tx_hash=details.get("tx_hash"),
                    error=event.reason,
                )
            )
        return records

    def get_usage_today(self, policy_id: str, now: Optional[datetime] = None) -> UsageSnapshot:
        """Count and per-token totals since the start of the current UTC day."""
        now = now or datetime.now(timezone.utc)
        records = self.get_executions(policy_id, day_start(now).timestamp(), now.timestamp())
        amount_by_token: dict[str, int] = {}
        for record in records:
            amount_by_token[record.token] = amount_by_token.get(record.token, 0) + (record.amount or 0)
        return UsageSnapshot(policy_id=policy_id, count=len(records), amount_by_token=amount_by_token)

    def summary(self, policy_id: Optional[str] = None) -> dict:
        events = self.read_events(policy_id=policy_id, limit=None)
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
