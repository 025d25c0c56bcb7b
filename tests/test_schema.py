"""
Tests for the Coordination Schema — verifies the Pydantic models.

Validates:
- Enum completeness
- Entry invariants (resolution present iff decided/resolved)
- Position helpers and conflict detection
- Default roles and kind routes
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from agent_ledger.protocol.schema import (
    DEFAULT_KIND_ROUTES,
    DEFAULT_ROLES,
    PHASE_ORDER,
    Contribution,
    Cycle,
    CyclePhase,
    Entry,
    EntryKind,
    EntryStatus,
    NextStep,
    PhaseDurations,
    Resolution,
    RiskLevel,
    Role,
)


class TestEnums:
    """Verify the coordination enums are properly defined."""

    def test_entry_kinds(self):
        kinds = {k.value for k in EntryKind}
        assert kinds == {"pending", "approved", "escalated", "conflict", "blocked", "input"}

    def test_entry_statuses(self):
        statuses = {s.value for s in EntryStatus}
        assert statuses == {
            "awaiting_input", "ready", "decided", "escalated", "blocked", "resolved"
        }

    def test_phase_order(self):
        assert [p.value for p in PHASE_ORDER] == ["reading", "working", "deciding", "publishing"]

    def test_risk_rank_ordering(self):
        assert RiskLevel.LOW.rank < RiskLevel.MEDIUM.rank < RiskLevel.HIGH.rank


class TestEntry:
    """Test the Entry model and its invariants."""

    def test_defaults(self):
        entry = Entry(kind=EntryKind.PENDING, title="Pick a message queue")
        assert entry.id.startswith("E-")
        assert entry.status == EntryStatus.AWAITING_INPUT
        assert entry.owner_role is None
        assert entry.inputs == []
        assert entry.resolution is None
        assert entry.is_open

    def test_ids_are_unique(self):
        ids = {Entry(kind=EntryKind.INPUT, title="x").id for _ in range(50)}
        assert len(ids) == 50

    def test_decided_requires_resolution(self):
        with pytest.raises(ValidationError):
            Entry(kind=EntryKind.PENDING, title="x", status=EntryStatus.DECIDED)

    def test_open_status_rejects_resolution(self):
        with pytest.raises(ValidationError):
            Entry(
                kind=EntryKind.PENDING,
                title="x",
                status=EntryStatus.READY,
                resolution=Resolution(decision="yes", decided_by="pm"),
            )

    def test_resolved_with_resolution_is_valid(self):
        entry = Entry(
            kind=EntryKind.PENDING,
            title="x",
            status=EntryStatus.RESOLVED,
            resolution=Resolution(decision="yes", decided_by="pm"),
        )
        assert not entry.is_open

    def test_positions_and_conflict(self):
        entry = Entry(
            kind=EntryKind.CONFLICT,
            title="Queue",
            inputs=[
                Contribution(role="engineer", statement="Kafka has the throughput"),
                Contribution(role="cto", statement="A", recommendation="kafka"),
                Contribution(role="pm", statement="B", recommendation="sqs"),
                Contribution(role="qa", statement="C", recommendation="kafka"),
            ],
        )
        assert len(entry.positions) == 3
        assert entry.recommendations == ["kafka", "sqs"]
        assert entry.has_conflict

    def test_single_recommendation_is_not_a_conflict(self):
        entry = Entry(
            kind=EntryKind.PENDING,
            title="Queue",
            inputs=[
                Contribution(role="cto", statement="A", recommendation="kafka"),
                Contribution(role="pm", statement="agree", recommendation="kafka"),
            ],
        )
        assert not entry.has_conflict

    def test_is_overdue(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        entry = Entry(kind=EntryKind.PENDING, title="x", deadline=now - timedelta(minutes=1))
        assert entry.is_overdue(now)
        assert not entry.is_overdue(now - timedelta(minutes=2))
        assert not Entry(kind=EntryKind.PENDING, title="x").is_overdue(now)

    def test_decided_entry_is_never_overdue(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        entry = Entry(
            kind=EntryKind.PENDING,
            title="x",
            deadline=now - timedelta(hours=1),
            status=EntryStatus.DECIDED,
            resolution=Resolution(decision="go", decided_by="pm"),
        )
        assert not entry.is_overdue(now)

    def test_contribution_strength(self):
        position = Contribution(
            role="cto", statement="A", recommendation="a", criteria={"risk": 0.4}
        )
        assert position.is_position
        assert position.strength("risk") == 0.4
        assert position.strength("cost") == 0.0


class TestResolution:
    def test_all_acknowledged(self):
        resolution = Resolution(
            decision="ship",
            decided_by="pm",
            next_steps=[
                NextStep(assignee_role="engineer", action="deploy"),
                NextStep(assignee_role="qa", action="verify", acknowledged=True),
            ],
        )
        assert not resolution.all_acknowledged
        resolution.next_steps[0].acknowledged = True
        assert resolution.all_acknowledged

    def test_no_next_steps_counts_as_acknowledged(self):
        assert Resolution(decision="ship", decided_by="pm").all_acknowledged


class TestRoles:
    """Test the predefined roles."""

    def test_single_apex(self):
        apexes = [r for r in DEFAULT_ROLES.values() if r.is_apex]
        assert [r.name for r in apexes] == ["ceo"]

    def test_roles_are_frozen(self):
        with pytest.raises(ValidationError):
            DEFAULT_ROLES["cto"].escalates_to = None

    def test_escalation_targets_exist(self):
        for role in DEFAULT_ROLES.values():
            assert role.escalates_to is None or role.escalates_to in DEFAULT_ROLES

    def test_apex_ranks_user_value_above_maintainability(self):
        ceo = DEFAULT_ROLES["ceo"]
        assert ceo.criterion_rank("user_value") < ceo.criterion_rank("maintainability")
        assert ceo.criterion_rank("morale") is None

    def test_exceeds_authority(self):
        engineer = Role(
            name="engineer",
            priority_order=("velocity",),
            escalates_to="cto",
            authority_limits=("schema_change", "new_dependency"),
        )
        assert engineer.exceeds_authority(["schema_change", "ui"]) == ["schema_change"]
        assert engineer.exceeds_authority(["ui"]) == []

    def test_kind_routes_name_known_roles(self):
        for kind, role in DEFAULT_KIND_ROUTES.items():
            assert isinstance(kind, EntryKind)
            assert role in DEFAULT_ROLES


class TestCycle:
    def test_is_complete(self):
        cycle = Cycle(sequence_number=1)
        assert cycle.phase == CyclePhase.READING
        assert not cycle.is_complete
        done = cycle.model_copy(update={"completed_at": datetime.now(timezone.utc)})
        assert done.is_complete

    def test_round_trips_through_json(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cycle = Cycle(
            sequence_number=3,
            phase=CyclePhase.WORKING,
            phase_deadlines={CyclePhase.WORKING: now},
        )
        restored = Cycle.model_validate(cycle.model_dump(mode="json"))
        assert restored.deadline_for(CyclePhase.WORKING) == now
        assert restored.deadline_for(CyclePhase.DECIDING) is None

    def test_phase_durations(self):
        durations = PhaseDurations(working=5)
        assert durations.for_phase(CyclePhase.WORKING) == 5
        assert durations.for_phase(CyclePhase.DECIDING) == 30
