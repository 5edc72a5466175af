"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from tributary.audit import AuditTrail, EventType


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.QUOTE_ISSUED, subscription_id="sub-1", amount=100)
    trail.log(EventType.CREDENTIAL_ISSUED, subscription_id="sub-1", payer="Payer", amount=100)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken at line 1"):
        trail.read_events()


def test_deleted_entry_breaks_chain(trail, tmp_path):
    for i in range(3):
        trail.log(EventType.PROOF_RECEIVED, subscription_id=f"sub-{i}")
    path = tmp_path / "audit.jsonl"
    lines = path.read_text().splitlines()
    path.write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(trail, tmp_path):
    trail.log(EventType.QUOTE_ISSUED, subscription_id="sub-1")
    reopened = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secret" / "audit_hmac.key")
    reopened.log(EventType.PROOF_RECEIVED, subscription_id="sub-1")

    events = reopened.read_events()
    assert [e.event_type for e in events] == ["quote_issued", "proof_received"]
    assert events[1].prev_hash == events[0].event_hash


def test_filters_and_limit(trail):
    trail.log(EventType.QUOTE_ISSUED, subscription_id="a")
    trail.log(EventType.QUOTE_ISSUED, subscription_id="b")
    trail.log(EventType.PROOF_REJECTED, subscription_id="b", success=False, reason="bad scheme")

    assert len(trail.read_events(subscription_id="b")) == 2
    rejected = trail.read_events(event_type=EventType.PROOF_REJECTED)
    assert rejected[0].reason == "bad scheme"
    assert not rejected[0].success
    assert len(trail.read_events(limit=1)) == 1


def test_summary(trail):
    trail.log(EventType.QUOTE_ISSUED, subscription_id="s")
    trail.log(EventType.SIMULATION_FAILED, subscription_id="s", success=False, details={"err": "x"})
    trail.log(EventType.CREDENTIAL_ISSUED, subscription_id="s", amount=100)

    summary = trail.summary()
    assert summary["total_events"] == 3
    assert summary["failures"] == 1
    assert summary["credentials_issued"] == 1
    assert summary["by_type"]["simulation_failed"] == 1


def test_files_are_private(trail, tmp_path):
    trail.log(EventType.QUOTE_ISSUED)
    assert (tmp_path / "audit.jsonl").stat().st_mode & 0o777 == 0o600
    assert (tmp_path / "secret").stat().st_mode & 0o777 == 0o700
