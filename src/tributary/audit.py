"""
Audit trail for deferred-payment protocol events.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads. The trail is write-only for the
protocol handler: no access decision ever reads it back.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from collections import Counter
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file


AUDIT_HMAC_KEY_ENV = "TRIBUTARY_AUDIT_HMAC_KEY"
DEFAULT_AUDIT_PATH = Path.home() / ".tributary" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".tributary-secrets" / "audit_hmac.key"


class EventType(str, Enum):
    QUOTE_ISSUED = "quote_issued"
    PROOF_RECEIVED = "proof_received"
    PROOF_REJECTED = "proof_rejected"
    SIMULATION_FAILED = "simulation_failed"
    TRANSACTION_SUBMITTED = "transaction_submitted"
    TRANSACTION_FAILED = "transaction_failed"
    VERIFICATION_FAILED = "verification_failed"
    CREDENTIAL_ISSUED = "credential_issued"
    CREDENTIAL_ACCEPTED = "credential_accepted"
    CREDENTIAL_REJECTED = "credential_rejected"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    subscription_id: Optional[str] = None
    payer: Optional[str] = None
    policy_address: Optional[str] = None
    amount: Optional[int] = None
    signature: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


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

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_HMAC_KEY_ENV)
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
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        subscription_id: Optional[str] = None,
        payer: Optional[str] = None,
        policy_address: Optional[str] = None,
        amount: Optional[int] = None,
        signature: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "subscription_id": subscription_id,
            "payer": payer,
            "policy_address": policy_address,
            "amount": amount,
            "signature": signature,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
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

    def _verified_entries(self) -> Iterator[dict]:
        """Yield raw entries in order, raising on the first broken link."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                prev_hash = raw.pop("prev_hash", "") or ""
                event_hash = raw.pop("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError(f"Audit chain broken at line {line_no}: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(raw, prev_hash), event_hash):
                    raise RuntimeError(f"Audit chain broken at line {line_no}: event hash mismatch")
                expected_prev = event_hash
                raw["prev_hash"] = prev_hash or None
                raw["event_hash"] = event_hash
                yield raw
        self._last_hash = expected_prev

    def read_events(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        known = AuditEvent.__dataclass_fields__
        events = [
            AuditEvent(**{k: v for k, v in raw.items() if k in known})
            for raw in self._verified_entries()
            if (not subscription_id or raw.get("subscription_id") == subscription_id)
            and (not event_type or raw.get("event_type") == event_type.value)
        ]
        return events[-limit:]

    def summary(self, subscription_id: Optional[str] = None) -> dict:
        events = self.read_events(subscription_id=subscription_id, limit=10000)
        by_type = Counter(e.event_type for e in events)
        return {
            "total_events": len(events),
            "by_type": dict(by_type),
            "failures": sum(1 for e in events if not e.success),
            "credentials_issued": by_type.get(EventType.CREDENTIAL_ISSUED.value, 0),
            "last_event": events[-1].to_json() if events else None,
        }
