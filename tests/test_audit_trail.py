"""Tests for the append-only audit log."""

import re
import threading

import pytest

from ghost_core.audit_trail import (
    AuditLevel, AuditLog, format_note, parse_line, parse_note,
)
from ghost_core.errors import AuditWriteError
from ghost_core.models import Role

LINE_FORMAT = re.compile(
    r'^\[(INFO|WARN|ERROR|BLOCK|ESCALATE|APPROVE|DENY)\] \d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z'
    r' \| agent=\S+ \| action=\S+ \| user_role=\S+ \| model=\S+ \| outcome=\S+'
    r' \| escalated=(true|false) \| note=".*"$'
)


@pytest.fixture
def log(tmp_path):
    return AuditLog(tmp_path / "run_log.md")


def test_append_writes_stable_line_format(log):
    entry = log.append(
        AuditLevel.ESCALATE, agent="EscalationGovernor", action="escalate", role=Role.OWNER,
        model="paid_low", outcome="escalated", escalated=True, note='reason="two consecutive failures"',
    )

    lines = log.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert LINE_FORMAT.match(lines[0])
    assert "user_role=OWNER" in lines[0]
    assert "escalated=true" in lines[0]
    assert entry.sequence_no == 1


def test_entries_round_trip_through_the_file(log):
    written = log.append(AuditLevel.INFO, agent="Switchboard", action="route", outcome="routed",
                         note=format_note(event="evt_1", label="dev/refactor", reasons=["low confidence"]))

    [read] = log.entries()
    assert read.to_line() == written.to_line()
    assert read.sequence_no == written.sequence_no
    assert read.fields == {"event": "evt_1", "label": "dev/refactor", "reasons": "low confidence"}


def test_sequence_resumes_after_restart(tmp_path):
    path = tmp_path / "run_log.md"
    first = AuditLog(path)
    first.append(AuditLevel.INFO, agent="A", action="one")
    first.append(AuditLevel.INFO, agent="A", action="two")

    second = AuditLog(path)
    entry = second.append(AuditLevel.INFO, agent="A", action="three")

    assert entry.sequence_no == 3
    assert [e.sequence_no for e in second.entries()] == [1, 2, 3]


def test_concurrent_appends_are_gap_free(log):
    def writer(n):
        for i in range(50):
            log.append(AuditLevel.INFO, agent=f"worker{n}", action="write", note=f"i={i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    entries = log.entries()
    assert len(entries) == 400
    assert [e.sequence_no for e in entries] == list(range(1, 401))
    assert log.last_sequence == 400


def test_failed_write_raises_and_consumes_no_sequence(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x", encoding="utf-8")
    log = AuditLog(blocker / "run_log.md")

    with pytest.raises(AuditWriteError):
        log.append(AuditLevel.BLOCK, agent="Warden", action="submit")

    assert log.last_sequence == 0


def test_malformed_line_is_skipped_but_keeps_its_ordinal(log):
    log.append(AuditLevel.INFO, agent="A", action="one")
    with open(log.path, "a", encoding="utf-8") as f:
        f.write("garbage that is not an audit line\n")

    fresh = AuditLog(log.path)
    entry = fresh.append(AuditLevel.INFO, agent="A", action="three")

    assert entry.sequence_no == 3
    assert [e.sequence_no for e in fresh.entries()] == [1, 3]


def test_fields_with_pipes_and_spaces_are_normalised(log):
    entry = log.append(AuditLevel.WARN, agent="Rate Limiter", action="admit|x", outcome="rate limited")

    assert entry.agent == "Rate_Limiter"
    assert entry.action == "admit_x"
    assert parse_line(entry.to_line(), 1).to_line() == entry.to_line()


def test_secrets_are_redacted_from_notes(log):
    entry = log.append(AuditLevel.ERROR, agent="Provider", action="call",
                       note="failed with api_key=sk-abcdefghijklmnop123")

    assert "sk-abcdefghijklmnop123" not in entry.note
    assert "[REDACTED]" in log.path.read_text(encoding="utf-8")


def test_parse_note_handles_quoted_values():
    note = format_note(id="APR-0001", text='ban @user "now"', dangerous=True, skipped=None)

    assert "skipped" not in note
    assert parse_note(note) == {"id": "APR-0001", "text": 'ban @user "now"', "dangerous": "true"}


def test_query_filters_by_agent_and_level(log):
    log.append(AuditLevel.INFO, agent="Switchboard", action="route")
    log.append(AuditLevel.BLOCK, agent="Warden", action="submit")
    log.append(AuditLevel.APPROVE, agent="Warden", action="resolve")

    assert [e.action for e in log.query(agent="Warden")] == ["submit", "resolve"]
    assert [e.action for e in log.query(level=AuditLevel.APPROVE)] == ["resolve"]
    assert [e.action for e in log.tail(1)] == ["resolve"]
