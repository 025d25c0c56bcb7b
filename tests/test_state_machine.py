"""
Tests for the entry state machine.

Validates:
- The transition table
- Resolution requirements on decide / resolve
- Rejection messages naming the valid transitions
- The resolution invariant over random transition sequences
"""

from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest

from agent_ledger.protocol.errors import InvalidTransition
from agent_ledger.protocol.schema import (
    Entry,
    EntryKind,
    EntryStatus,
    NextStep,
    RESOLVED_STATUSES,
    Resolution,
)
from agent_ledger.protocol.state_machine import (
    INITIAL_STATUS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    apply_transition,
    check_transition,
    valid_transitions,
)


def _resolution(*steps: NextStep) -> Resolution:
    return Resolution(decision="ship it", decided_by="pm", next_steps=list(steps))


class TestTransitionTable:
    def test_initial_and_terminal(self):
        assert INITIAL_STATUS == EntryStatus.AWAITING_INPUT
        assert TERMINAL_STATUSES == {EntryStatus.RESOLVED}

    def test_every_status_has_a_row(self):
        assert set(TRANSITIONS) == set(EntryStatus)

    def test_blocked_only_returns_to_awaiting_input(self):
        assert valid_transitions(EntryStatus.BLOCKED) == ["awaiting_input"]

    def test_escalated_can_escalate_again(self):
        assert EntryStatus.ESCALATED in TRANSITIONS[EntryStatus.ESCALATED]


class TestApplyTransition:
    def setup_method(self):
        self.entry = Entry(kind=EntryKind.PENDING, title="Pick a queue")

    def test_decide_sets_resolution_and_time(self):
        at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        decided = apply_transition(self.entry, EntryStatus.DECIDED, _resolution(), at=at)
        assert decided.status == EntryStatus.DECIDED
        assert decided.resolution.decision == "ship it"
        assert decided.decided_at == at
        assert self.entry.status == EntryStatus.AWAITING_INPUT

    def test_decide_without_resolution_rejected(self):
        with pytest.raises(InvalidTransition, match="requires a resolution"):
            apply_transition(self.entry, EntryStatus.DECIDED)

    def test_resolution_with_open_status_rejected(self):
        with pytest.raises(InvalidTransition):
            apply_transition(self.entry, EntryStatus.READY, _resolution())

    def test_escalation_records_reason_owner_and_deadline(self):
        escalated = apply_transition(
            self.entry, EntryStatus.ESCALATED, owner_role="ceo", reason="deadline exceeded"
        )
        assert escalated.owner_role == "ceo"
        assert escalated.escalation_reason == "deadline exceeded"

    def test_resolve_requires_acknowledged_steps(self):
        decided = apply_transition(
            self.entry, EntryStatus.DECIDED,
            _resolution(NextStep(assignee_role="engineer", action="build")),
        )
        with pytest.raises(InvalidTransition, match="not all acknowledged"):
            apply_transition(decided, EntryStatus.RESOLVED)

        decided.resolution.next_steps[0].acknowledged = True
        resolved = apply_transition(decided, EntryStatus.RESOLVED)
        assert resolved.status == EntryStatus.RESOLVED
        assert resolved.resolution is not None

    def test_rejection_lists_valid_transitions(self):
        with pytest.raises(InvalidTransition) as exc_info:
            apply_transition(self.entry, EntryStatus.RESOLVED, _resolution())
        error = exc_info.value
        assert error.entry_id == self.entry.id
        assert error.attempted == "awaiting_input -> resolved"
        assert error.valid == ["blocked", "decided", "escalated", "ready"]
        assert self.entry.id in str(error)
        assert "blocked, decided, escalated, ready" in str(error)

    def test_resolved_is_terminal(self):
        decided = apply_transition(self.entry, EntryStatus.DECIDED, _resolution())
        resolved = apply_transition(decided, EntryStatus.RESOLVED)
        for target in EntryStatus:
            with pytest.raises(InvalidTransition):
                check_transition(resolved, target, _resolution())


class TestRandomSequences:
    """Random transition sequences never break the resolution invariant."""

    @pytest.mark.parametrize("seed", range(25))
    def test_invariant_holds(self, seed):
        rng = random.Random(seed)
        entry = Entry(kind=EntryKind.PENDING, title=f"entry {seed}")

        for _ in range(40):
            target = rng.choice(list(EntryStatus))
            resolution = _resolution() if rng.random() < 0.6 else None
            allowed = (
                target in TRANSITIONS[entry.status]
                and (target != EntryStatus.DECIDED or resolution is not None)
                and (target in RESOLVED_STATUSES or resolution is None)
            )
            if allowed:
                entry = apply_transition(entry, target, resolution)
                assert entry.status == target
            else:
                before = entry.status
                with pytest.raises(InvalidTransition):
                    apply_transition(entry, target, resolution)
                assert entry.status == before

            assert (entry.resolution is not None) == (entry.status in RESOLVED_STATUSES)
            if entry.status == EntryStatus.RESOLVED:
                break
