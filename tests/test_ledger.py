"""
Tests for the Ledger Store — append-only, hash-chained coordination log.

Validates:
- Append / get / list semantics and insertion order
- Idempotence (re-appending an id is rejected)
- Status changes through the state machine
- Snapshot reads as of a ledger sequence
- SHA-256 hash chain integrity and tamper detection
- Concurrent appends
- Retry of transient backend failures
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy.exc import OperationalError

from agent_ledger.ledger.models import LedgerEventDB
from agent_ledger.ledger.service import GENESIS_HASH, LedgerStore
from agent_ledger.protocol.errors import (
    EntryNotFound,
    InvalidTransition,
    StoreUnavailable,
    UnknownRole,
)
from agent_ledger.protocol.schema import (
    AuditSeverity,
    Contribution,
    Entry,
    EntryKind,
    EntryStatus,
    NextStep,
    Resolution,
)


def _entry(title: str = "Pick a queue", **kwargs) -> Entry:
    return Entry(kind=kwargs.pop("kind", EntryKind.PENDING), title=title, **kwargs)


class TestAppend:
    def test_append_and_get(self, store):
        entry = _entry(context="cto should weigh in")
        entry_id = store.append(entry)
        assert entry_id == entry.id

        stored = store.get(entry_id)
        assert stored.title == "Pick a queue"
        assert stored.status == EntryStatus.AWAITING_INPUT
        assert store.exists(entry_id)

    def test_get_missing_raises(self, store):
        with pytest.raises(EntryNotFound):
            store.get("E-missing")
        assert not store.exists("E-missing")

    def test_reappend_is_rejected(self, store):
        entry = _entry()
        store.append(entry)
        with pytest.raises(InvalidTransition, match="already appended"):
            store.append(entry)
        assert len(store.list()) == 1

    def test_append_must_start_awaiting_input(self, store):
        entry = _entry(status=EntryStatus.BLOCKED)
        with pytest.raises(InvalidTransition):
            store.append(entry)

    def test_unknown_owner_role_rejected(self, store):
        with pytest.raises(UnknownRole):
            store.append(_entry(owner_role="intern"))

    def test_list_in_insertion_order_with_filters(self, store):
        first = store.append(_entry("first", owner_role="cto"))
        second = store.append(_entry("second", kind=EntryKind.BLOCKED))
        third = store.append(_entry("third", owner_role="cto"))

        assert [e.id for e in store.list()] == [first, second, third]
        assert [e.id for e in store.list(role="cto")] == [first, third]
        assert [e.id for e in store.list(kind=EntryKind.BLOCKED)] == [second]
        assert store.list(status=EntryStatus.DECIDED) == []

    def test_append_records_audit_with_cycle(self, store):
        store.cycle_sequence = 7
        entry_id = store.append(_entry())
        trail = store.audit_trail(entry_id)
        assert [r.action for r in trail] == ["append"]
        assert trail[0].cycle_sequence == 7

    def test_created_in_cycle(self, store):
        store.cycle_sequence = 4
        entry_id = store.append(_entry())
        assert store.get(entry_id).created_in_cycle == 4


class TestInputsAndStatus:
    def test_inputs_only_grow(self, store):
        entry_id = store.append(_entry())
        store.add_input(entry_id, Contribution(role="engineer", statement="Kafka is heavy"))
        store.add_input(
            entry_id,
            Contribution(role="cto", statement="Use SQS", recommendation="sqs"),
        )
        entry = store.get(entry_id)
        assert [c.role for c in entry.inputs] == ["engineer", "cto"]
        assert entry.positions[0].recommendation == "sqs"

    def test_input_from_unknown_role_rejected(self, store):
        entry_id = store.append(_entry())
        with pytest.raises(UnknownRole):
            store.add_input(entry_id, Contribution(role="intern", statement="hi"))

    def test_decided_entry_rejects_inputs(self, store):
        entry_id = store.append(_entry())
        store.update_status(
            entry_id, EntryStatus.DECIDED, Resolution(decision="sqs", decided_by="pm")
        )
        with pytest.raises(InvalidTransition, match="already decided"):
            store.add_input(entry_id, Contribution(role="cto", statement="late"))

    def test_update_status_follows_state_machine(self, store, clock):
        entry_id = store.append(_entry())
        store.update_status(entry_id, EntryStatus.READY)
        decided = store.update_status(
            entry_id, EntryStatus.DECIDED, Resolution(decision="sqs", decided_by="pm")
        )
        assert decided.decided_at == clock.now
        assert store.get(entry_id).resolution.decision == "sqs"

        with pytest.raises(InvalidTransition) as exc_info:
            store.update_status(entry_id, EntryStatus.BLOCKED)
        assert "Valid transitions: resolved" in str(exc_info.value)
        assert store.get(entry_id).status == EntryStatus.DECIDED

    def test_update_status_records_transition_in_audit(self, store):
        entry_id = store.append(_entry())
        store.update_status(entry_id, EntryStatus.ESCALATED, reason="deadline exceeded",
                            owner_role="ceo")
        record = store.audit_trail(entry_id)[-1]
        assert record.action == "update_status"
        assert record.detail["transition"] == "awaiting_input -> escalated"
        assert record.detail["reason"] == "deadline exceeded"

    def test_decided_in_cycle(self, store):
        entry_id = store.append(_entry())
        store.cycle_sequence = 3
        store.update_status(
            entry_id, EntryStatus.DECIDED, Resolution(decision="go", decided_by="pm")
        )
        assert store.get(entry_id).decided_in_cycle == 3

    def test_acknowledge_then_resolve(self, store):
        entry_id = store.append(_entry())
        store.update_status(
            entry_id,
            EntryStatus.DECIDED,
            Resolution(
                decision="ship",
                decided_by="pm",
                next_steps=[
                    NextStep(assignee_role="engineer", action="deploy"),
                    NextStep(assignee_role="qa", action="smoke test"),
                ],
            ),
        )
        with pytest.raises(InvalidTransition):
            store.update_status(entry_id, EntryStatus.RESOLVED)

        store.acknowledge(entry_id, "engineer")
        with pytest.raises(InvalidTransition, match="no next step"):
            store.acknowledge(entry_id, "designer")
        store.acknowledge(entry_id, "qa")

        resolved = store.update_status(entry_id, EntryStatus.RESOLVED)
        assert resolved.status == EntryStatus.RESOLVED
        assert resolved.resolution.all_acknowledged

    def test_assign_owner(self, store):
        entry_id = store.append(_entry())
        assert store.assign_owner(entry_id, "pm").owner_role == "pm"
        with pytest.raises(UnknownRole):
            store.assign_owner(entry_id, "intern")


class TestSnapshots:
    def test_list_as_of_hides_later_events(self, store):
        early = store.append(_entry("early"))
        head = store.head()
        late = store.append(_entry("late"))
        store.add_input(early, Contribution(role="pm", statement="after snapshot"))

        snapshot = store.list(as_of=head)
        assert [e.id for e in snapshot] == [early]
        assert snapshot[0].inputs == []
        assert store.get(early, as_of=head).inputs == []
        assert {e.id for e in store.list()} == {early, late}

    def test_snapshot_pairs_head_and_entries(self, store):
        store.append(_entry())
        head, entries = store.snapshot()
        assert head == store.head()
        assert len(entries) == 1

    def test_import_preserves_state(self, store):
        decided = Entry(
            kind=EntryKind.APPROVED,
            title="imported",
            status=EntryStatus.DECIDED,
            resolution=Resolution(decision="go", decided_by="ceo"),
        )
        store.import_entries([decided])
        assert store.get(decided.id) == decided
        with pytest.raises(InvalidTransition):
            store.import_entries([decided])


class TestHashChain:
    def test_genesis(self, store):
        events = store.events()
        assert events[-1].sequence_number == 0
        assert events[-1].previous_hash == GENESIS_HASH
        assert store.head() == 0

    def test_initialize_is_idempotent(self, store):
        store.initialize()
        assert store.head() == 0

    def test_chain_verifies_after_mixed_operations(self, store):
        entry_id = store.append(_entry())
        store.add_input(entry_id, Contribution(role="cto", statement="x", recommendation="a"))
        store.assign_owner(entry_id, "cto")
        store.update_status(entry_id, EntryStatus.READY)
        store.update_status(
            entry_id, EntryStatus.DECIDED, Resolution(decision="a", decided_by="cto")
        )
        is_valid, verified, message = store.verify_chain()
        assert is_valid, message
        assert verified == store.head() + 1

    def test_events_link_to_predecessor(self, store):
        store.append(_entry())
        store.append(_entry())
        events = list(reversed(store.events()))
        for prev, event in zip(events, events[1:]):
            assert event.previous_hash == prev.event_hash
            assert len(event.event_hash) == 64

    def test_tamper_detection(self, store):
        entry_id = store.append(_entry("honest title"))
        store.append(_entry("another"))

        with store.SessionLocal() as session:
            event = session.get(LedgerEventDB, 1)
            payload = dict(event.payload)
            payload["entry"] = {**payload["entry"], "title": "forged title"}
            event.payload = payload
            session.commit()

        assert store.get(entry_id).title == "forged title"
        is_valid, failed_at, message = store.verify_chain()
        assert not is_valid
        assert failed_at == 1
        assert "Hash mismatch" in message


class TestConcurrency:
    def test_concurrent_appends_all_survive(self, tmp_path, registry):
        store = LedgerStore(
            f"sqlite:///{tmp_path / 'ledger.db'}",
            roles=registry.names,
            retry_backoff_seconds=0,
        )
        store.initialize()
        errors: list[Exception] = []

        def worker(n: int) -> None:
            try:
                for i in range(10):
                    store.append(_entry(f"worker {n} entry {i}"))
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entries = store.list()
        assert len(entries) == 80
        assert len({e.id for e in entries}) == 80
        assert store.head() == 80
        assert store.verify_chain()[0]


class TestStoreUnavailable:
    def _flaky(self, store, failures: int) -> dict[str, int]:
        real = store.SessionLocal
        calls = {"n": 0}

        def session_factory():
            calls["n"] += 1
            if calls["n"] <= failures:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return real()

        store.SessionLocal = session_factory
        return calls

    def test_transient_failure_is_retried(self, store):
        entry_id = store.append(_entry())
        calls = self._flaky(store, failures=2)
        assert store.get(entry_id).id == entry_id
        assert calls["n"] == 3

    def test_persistent_failure_surfaces(self, store):
        entry_id = store.append(_entry())
        calls = self._flaky(store, failures=10)
        with pytest.raises(StoreUnavailable):
            store.get(entry_id)
        assert calls["n"] == store.retry_attempts

    def test_warning_audit_records(self, store):
        store.record_audit("route_to_apex", "E-1", {"reason": "x"}, AuditSeverity.WARNING)
        store.record_audit("note", None, {})
        warnings = store.audit_trail(severity=AuditSeverity.WARNING)
        assert [w.action for w in warnings] == ["route_to_apex"]
