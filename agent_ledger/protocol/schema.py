"""
Coordination Schema — Pydantic models for every record in the coordination log.

These models are the canonical data structures shared by the ledger store,
the cycle scheduler, the role router, the escalation resolver and the
conflict arbitrator. They also define the persisted export layout, so any
field added here shows up in the ledger dump.

Records:
    Entry      — one decision, request, escalation, blocker or input
    Role       — a named decision-authority profile
    Cycle      — one four-phase iteration of the coordination loop
    AuditRecord — one line of the audit trail
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    return f"E-{uuid4().hex[:8]}"


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class EntryKind(str, enum.Enum):
    """What an entry records. Drives owner inference in the role router."""

    PENDING = "pending"
    APPROVED = "approved"
    ESCALATED = "escalated"
    CONFLICT = "conflict"
    BLOCKED = "blocked"
    INPUT = "input"


class EntryStatus(str, enum.Enum):
    """Lifecycle status of an entry."""

    AWAITING_INPUT = "awaiting_input"
    READY = "ready"
    DECIDED = "decided"
    ESCALATED = "escalated"
    BLOCKED = "blocked"
    RESOLVED = "resolved"


RESOLVED_STATUSES = frozenset({EntryStatus.DECIDED, EntryStatus.RESOLVED})
OPEN_STATUSES = frozenset(
    {EntryStatus.AWAITING_INPUT, EntryStatus.READY, EntryStatus.ESCALATED}
)


class CyclePhase(str, enum.Enum):
    """Phases of a coordination cycle, in execution order."""

    READING = "reading"
    WORKING = "working"
    DECIDING = "deciding"
    PUBLISHING = "publishing"


PHASE_ORDER: tuple[CyclePhase, ...] = (
    CyclePhase.READING,
    CyclePhase.WORKING,
    CyclePhase.DECIDING,
    CyclePhase.PUBLISHING,
)


class RiskLevel(str, enum.Enum):
    """Risk attached to a recommended option."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class DeadlockPolicy(str, enum.Enum):
    """What the arbitrator does when the apex priority order is exhausted."""

    MANUAL_REVIEW = "manual_review"
    LOWEST_RISK = "lowest_risk"
    APEX_POSITION = "apex_position"


class AuditSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"


# ════════════════════════════════════════════════════════════════
# Roles
# ════════════════════════════════════════════════════════════════


class Role(BaseModel):
    """
    A named decision-authority profile.

    Roles are defined once at configuration time and are immutable for the
    lifetime of a run. The prose persona guidance that accompanies a role
    (tone, communication style) is deliberately not modelled.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique role identifier (e.g. 'ceo', 'cto', 'pm')")
    title: str = Field(default="", description="Human-readable title")
    priority_order: tuple[str, ...] = Field(
        default=(),
        description="Criteria used for tiebreaking, most preferred first",
    )
    escalates_to: str | None = Field(
        default=None,
        description="Role to forward to when this role cannot decide (None for the apex)",
    )
    authority_limits: tuple[str, ...] = Field(
        default=(),
        description="Topic tags this role may not decide (its red flags)",
    )

    @property
    def is_apex(self) -> bool:
        return self.escalates_to is None

    def criterion_rank(self, criterion: str) -> int | None:
        """Position of a criterion in this role's priority order, or None."""
        try:
            return self.priority_order.index(criterion)
        except ValueError:
            return None

    def exceeds_authority(self, tags: list[str]) -> list[str]:
        """Return the entry tags that fall outside this role's authority."""
        return [t for t in tags if t in self.authority_limits]


# ════════════════════════════════════════════════════════════════
# Entries
# ════════════════════════════════════════════════════════════════


class Contribution(BaseModel):
    """
    One (role, statement) contribution to an entry.

    A contribution that carries a recommendation is a *position*: it may cite
    criteria (criterion → strength) and a risk level, which the conflict
    arbitrator uses to order competing positions.
    """

    role: str
    statement: str
    recommendation: str | None = None
    criteria: dict[str, float] = Field(default_factory=dict)
    risk: RiskLevel | None = None
    posted_at: datetime = Field(default_factory=utcnow)

    @property
    def is_position(self) -> bool:
        return self.recommendation is not None

    def strength(self, criterion: str) -> float:
        return self.criteria.get(criterion, 0.0)


class NextStep(BaseModel):
    """A follow-up assignment attached to a resolution."""

    assignee_role: str
    action: str
    acknowledged: bool = False


class Resolution(BaseModel):
    """The outcome of a decided entry."""

    decision: str = Field(description="What was decided")
    reasoning: str = Field(default="", description="Why it was decided")
    decided_by: str = Field(description="Role that wrote the resolution")
    next_steps: list[NextStep] = Field(default_factory=list)
    dissent: list[Contribution] = Field(
        default_factory=list,
        description="Positions that did not prevail, recorded verbatim",
    )
    deciding_criterion: str | None = None
    manual_review: bool = Field(
        default=False, description="Flagged for human review (forced or deadlocked)"
    )

    @property
    def all_acknowledged(self) -> bool:
        return all(step.acknowledged for step in self.next_steps)


class Entry(BaseModel):
    """
    The atomic unit of the ledger.

    `inputs` only ever grows, and `resolution` is present exactly when the
    entry is decided or resolved. Both are enforced on every construction, so
    a state produced by folding ledger events is validated as it is built.
    """

    id: str = Field(default_factory=new_entry_id)
    kind: EntryKind
    title: str
    context: str = ""
    owner_role: str | None = None
    inputs: list[Contribution] = Field(default_factory=list)
    deadline: datetime | None = None
    depends_on: str | None = Field(
        default=None, description="Entry this one is blocked on or contributes to"
    )
    tags: list[str] = Field(default_factory=list)
    status: EntryStatus = EntryStatus.AWAITING_INPUT
    resolution: Resolution | None = None
    escalation_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: datetime | None = None
    created_in_cycle: int | None = None
    decided_in_cycle: int | None = None

    @model_validator(mode="after")
    def _resolution_matches_status(self) -> Entry:
        has_resolution = self.resolution is not None
        if has_resolution != (self.status in RESOLVED_STATUSES):
            raise ValueError(
                f"Entry {self.id}: resolution must be set if and only if "
                f"status is decided or resolved (status={self.status.value})"
            )
        return self

    @property
    def positions(self) -> list[Contribution]:
        return [c for c in self.inputs if c.is_position]

    @property
    def recommendations(self) -> list[str]:
        """Distinct recommendations, in the order they were first posted."""
        seen: list[str] = []
        for position in self.positions:
            if position.recommendation not in seen:
                seen.append(position.recommendation)
        return seen

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def has_conflict(self) -> bool:
        return len(self.recommendations) > 1

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.deadline is not None
            and now > self.deadline
            and self.status not in RESOLVED_STATUSES
        )


# ════════════════════════════════════════════════════════════════
# Cycles
# ════════════════════════════════════════════════════════════════


class PhaseDurations(BaseModel):
    """Maximum duration of each phase, in seconds."""

    reading: float = 5.0
    working: float = 60.0
    deciding: float = 30.0
    publishing: float = 5.0

    def for_phase(self, phase: CyclePhase) -> float:
        return getattr(self, phase.value)


class Cycle(BaseModel):
    """One iteration of the coordination loop."""

    sequence_number: int = Field(description="Monotonically increasing cycle number")
    phase: CyclePhase = CyclePhase.READING
    started_at: datetime = Field(default_factory=utcnow)
    phase_started_at: datetime = Field(default_factory=utcnow)
    phase_deadlines: dict[CyclePhase, datetime] = Field(default_factory=dict)
    snapshot_sequence: int = Field(
        default=0, description="Ledger sequence captured at the reading phase"
    )
    completed_at: datetime | None = None
    failed: bool = False
    failure_reason: str | None = None

    @computed_field
    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def deadline_for(self, phase: CyclePhase) -> datetime | None:
        return self.phase_deadlines.get(phase)


# ════════════════════════════════════════════════════════════════
# Audit
# ════════════════════════════════════════════════════════════════


class AuditRecord(BaseModel):
    """One record of the audit trail."""

    sequence: int
    cycle_sequence: int | None = None
    entry_id: str | None = None
    action: str
    severity: AuditSeverity = AuditSeverity.INFO
    detail: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)


# ════════════════════════════════════════════════════════════════
# Default Roles
# ════════════════════════════════════════════════════════════════

DEFAULT_ROLES: dict[str, Role] = {
    "ceo": Role(
        name="ceo",
        title="Chief Executive",
        priority_order=("user_value", "risk", "cost", "maintainability", "velocity"),
        escalates_to=None,
    ),
    "cto": Role(
        name="cto",
        title="Chief Technology Officer",
        priority_order=("maintainability", "risk", "velocity", "cost", "user_value"),
        escalates_to="ceo",
        authority_limits=("budget", "hiring", "strategy"),
    ),
    "pm": Role(
        name="pm",
        title="Product Manager",
        priority_order=("user_value", "velocity", "cost", "risk", "maintainability"),
        escalates_to="ceo",
        authority_limits=("architecture_rewrite", "security", "budget"),
    ),
    "engineer": Role(
        name="engineer",
        title="Engineer",
        priority_order=("maintainability", "velocity", "risk"),
        escalates_to="cto",
        authority_limits=("architecture_rewrite", "new_dependency", "schema_change"),
    ),
    "designer": Role(
        name="designer",
        title="Designer",
        priority_order=("user_value", "velocity"),
        escalates_to="pm",
        authority_limits=("scope_change",),
    ),
    "qa": Role(
        name="qa",
        title="Quality Assurance",
        priority_order=("risk", "maintainability"),
        escalates_to="cto",
        authority_limits=("release_override",),
    ),
}

DEFAULT_KIND_ROUTES: dict[EntryKind, str] = {
    EntryKind.PENDING: "pm",
    EntryKind.APPROVED: "pm",
    EntryKind.ESCALATED: "ceo",
    EntryKind.CONFLICT: "ceo",
}
