"""
Tests for the audit logger.
"""
import json
import threading

import pytest

from devstack_safety.models import AuditEntry, AuditEvent
from devstack_safety.safety.audit import REDACTED, AuditLogger


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(tmp_path / "logs" / "audit.jsonl", redact_keys=["password", "token"])


def test_append_writes_one_json_line(audit):
    audit.record("redis-setup", AuditEvent.START, metadata={"port": 6379})

    lines = audit.log_path.read_text().splitlines()
    assert len(lines) == 1
    data = json.loads(lines[0])
    assert data["operation_key"] == "redis-setup"
    assert data["event"] == "START"
    assert data["detail"] == {"metadata": {"port": 6379}}


def test_append_never_rewrites_prior_entries(audit):
    audit.record("redis-setup", AuditEvent.START)
    first = audit.log_path.read_text()

    audit.record("redis-setup", AuditEvent.ACTION_SUCCEEDED)

    assert audit.log_path.read_text().startswith(first)


def test_entries_survive_new_logger_instance(audit):
    audit.record("docker-install", AuditEvent.START)
    audit.record("docker-install", AuditEvent.ACTION_SUCCEEDED)

    reopened = AuditLogger(audit.log_path)
    reopened.record("docker-install", AuditEvent.START)

    events = [e.event for e in reopened.read("docker-install")]
    assert events == [AuditEvent.START, AuditEvent.ACTION_SUCCEEDED, AuditEvent.START]


def test_read_filters_by_key(audit):
    audit.record("a", AuditEvent.START)
    audit.record("b", AuditEvent.START)
    audit.record("a", AuditEvent.ACTION_SUCCEEDED)

    assert [e.event for e in audit.read("a")] == [AuditEvent.START, AuditEvent.ACTION_SUCCEEDED]
    assert len(audit.read()) == 3


def test_read_missing_log_is_empty(tmp_path):
    assert AuditLogger(tmp_path / "audit.jsonl").read() == []


def test_read_skips_malformed_lines(audit):
    audit.record("a", AuditEvent.START)
    with open(audit.log_path, 'a') as f:
        f.write("{truncated\n")
        f.write(json.dumps({"operation_key": "a", "event": "NOT_AN_EVENT", "timestamp": "x"}) + "\n")
    audit.record("a", AuditEvent.ACTION_SUCCEEDED)

    assert [e.event for e in audit.read("a")] == [AuditEvent.START, AuditEvent.ACTION_SUCCEEDED]


def test_sensitive_values_redacted(audit):
    entry = audit.append(AuditEntry(
        operation_key="postgres-setup",
        event=AuditEvent.START,
        detail={
            "metadata": {
                "context": {"db_password": "hunter2", "users": [{"api_token": "abc"}], "port": 5432},
            },
        },
    ))

    context = entry.detail["metadata"]["context"]
    assert context["db_password"] == REDACTED
    assert context["users"][0]["api_token"] == REDACTED
    assert context["port"] == 5432
    assert "hunter2" not in audit.log_path.read_text()


def test_sequence_increases_in_emission_order(audit):
    entries = [audit.record("k", AuditEvent.START) for _ in range(3)]

    assert [e.sequence for e in entries] == [1, 2, 3]


def test_concurrent_appends_keep_lines_intact(audit):
    def writer(key):
        for _ in range(20):
            audit.record(key, AuditEvent.START, payload="x" * 200)

    threads = [threading.Thread(target=writer, args=(f"key-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    entries = audit.read()
    assert len(entries) == 80
    for i in range(4):
        sequences = [e.sequence for e in entries if e.operation_key == f"key-{i}"]
        assert sequences == sorted(sequences)


def test_sequence_continues_across_sessions(audit):
    audit.record("redis-setup", AuditEvent.START)
    audit.record("redis-setup", AuditEvent.ACTION_SUCCEEDED)

    next_session = AuditLogger(audit.log_path)
    entry = next_session.record("redis-setup", AuditEvent.START)

    assert entry.sequence == 3


def test_sequence_seed_skips_trailing_garbage(audit):
    audit.record("redis-setup", AuditEvent.START)
    with open(audit.log_path, "a") as f:
        f.write("{torn line\n")

    assert AuditLogger(audit.log_path).record("redis-setup", AuditEvent.START).sequence == 2
