"""
Escalation Resolver — forwarding unresolved entries up the role hierarchy.

Triggers:
- DEADLINE:  the entry deadline passed without a decision
- AUTHORITY: the owning role signals the decision is beyond it, or the
             entry carries a tag inside the role's authority limits
- FORCED:    a caller escalates explicitly (deciding phase timeout, CLI)

On a trigger the entry is forwarded to the owner's `escalates_to` role with a
fresh deadline. The apex role has nowhere to forward to; there the entry is
force-resolved with the lowest-risk policy and flagged for manual review, and
the NoEscalationTarget is recorded as a warning in the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from agent_ledger.governance.arbitration import lowest_risk_resolution
from agent_ledger.protocol.errors import NoEscalationTarget
from agent_ledger.protocol.schema import (
    AuditSeverity,
    Entry,
    EntryStatus,
    Role,
    utcnow,
)

logger = logging.getLogger(__name__)

DEADLINE_REASON = "deadline exceeded"
AUTHORITY_REASON = "exceeds role authority"
PHASE_TIMEOUT_REASON = "deciding phase timeout"
DEFAULT_ESCALATION_WINDOW = timedelta(minutes=30)


class EscalationAction(str, Enum):
    """Outcome of an escalation check."""

    NONE = "none"
    FORWARD = "forward"
    FORCED_RESOLUTION = "forced_resolution"


@dataclass
class EscalationOutcome:
    """Result of checking (and possibly applying) an escalation."""

    action: EscalationAction
    entry_id: str
    from_role: str
    next_role: str | None = None
    reason: str = ""
    entry: Entry | None = None

    @classmethod
    def none(cls, entry: Entry, role: Role) -> EscalationOutcome:
        return cls(EscalationAction.NONE, entry.id, role.name)

    @classmethod
    def forward(cls, entry: Entry, role: Role, reason: str) -> EscalationOutcome:
        return cls(EscalationAction.FORWARD, entry.id, role.name, role.escalates_to, reason)

    @property
    def should_forward(self) -> bool:
        return self.action == EscalationAction.FORWARD


class EscalationResolver:
    """
    Detects entries that must leave their owner's hands and moves them up.

    Args:
        store: Ledger store the outcome is written to.
        router: Role router, used to find the owner when none is given.
        escalation_window: Deadline granted to the receiving role.
        clock: Source of the current time.
    """

    def __init__(
        self,
        store,
        router,
        escalation_window: timedelta = DEFAULT_ESCALATION_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.router = router
        self.escalation_window = escalation_window
        self.clock = clock

    def triggers(
        self,
        entry: Entry,
        role: Role,
        exceeds_authority: bool = False,
        now: datetime | None = None,
    ) -> list[str]:
        """Reasons this entry should leave `role`, empty when it should stay."""
        if not entry.is_open:
            return []
        reasons: list[str] = []
        if entry.is_overdue(now or self.clock()):
            reasons.append(DEADLINE_REASON)
        flagged = role.exceeds_authority(entry.tags)
        if flagged:
            reasons.append(f"{AUTHORITY_REASON}: {', '.join(flagged)}")
        elif exceeds_authority:
            reasons.append(AUTHORITY_REASON)
        return reasons

    def check(
        self,
        entry: Entry,
        role: Role,
        exceeds_authority: bool = False,
        now: datetime | None = None,
        forced_reason: str | None = None,
    ) -> EscalationOutcome:
        """
        Decide whether `entry` must be forwarded from `role`.

        Raises:
            NoEscalationTarget: If a trigger fired and `role` is the apex.
        """
        reasons = self.triggers(entry, role, exceeds_authority, now)
        if forced_reason and entry.is_open:
            reasons.insert(0, forced_reason)
        if not reasons:
            return EscalationOutcome.none(entry, role)

        reason = "; ".join(reasons)
        if role.escalates_to is None:
            raise NoEscalationTarget(role.name, entry.id, reason)
        return EscalationOutcome.forward(entry, role, reason)

    def escalate(
        self,
        entry: Entry,
        role: Role | None = None,
        reason: str | None = None,
        exceeds_authority: bool = False,
        now: datetime | None = None,
    ) -> EscalationOutcome:
        """
        Check an entry and apply the outcome to the ledger.

        Returns:
            The outcome; `outcome.entry` holds the updated entry when the
            ledger changed.
        """
        role = role or self.router.owner_for(entry)
        try:
            outcome = self.check(entry, role, exceeds_authority, now, forced_reason=reason)
        except NoEscalationTarget as exc:
            return self.force_resolve(entry, role, exc)

        if outcome.should_forward:
            outcome.entry = self.forward(entry, outcome, now)
        return outcome

    def forward(
        self,
        entry: Entry,
        outcome: EscalationOutcome,
        now: datetime | None = None,
    ) -> Entry:
        """Move the entry to the next role with a fresh deadline."""
        now = now or self.clock()
        updated = self.store.update_status(
            entry.id,
            EntryStatus.ESCALATED,
            reason=outcome.reason,
            owner_role=outcome.next_role,
            deadline=now + self.escalation_window,
            author_role=outcome.from_role,
        )
        logger.info(
            "Escalated %s: %s -> %s (%s)",
            entry.id, outcome.from_role, outcome.next_role, outcome.reason,
        )
        return updated

    def force_resolve(
        self,
        entry: Entry,
        role: Role,
        error: NoEscalationTarget,
    ) -> EscalationOutcome:
        """Resolve an apex-level deadlock with the lowest-risk policy."""
        self.store.record_audit(
            "no_escalation_target",
            entry.id,
            {"role": role.name, "reason": error.reason, "policy": "lowest_risk"},
            severity=AuditSeverity.WARNING,
        )
        resolution = lowest_risk_resolution(
            entry.positions, role.name, f"forced at apex role: {error.reason}"
        )
        updated = self.store.update_status(
            entry.id,
            EntryStatus.DECIDED,
            resolution,
            reason=error.reason,
            owner_role=role.name,
            author_role=role.name,
        )
        logger.warning(
            "Force-resolved %s at apex role %s: decision=%r (manual review)",
            entry.id, role.name, resolution.decision,
        )
        return EscalationOutcome(
            EscalationAction.FORCED_RESOLUTION,
            entry.id,
            role.name,
            reason=error.reason,
            entry=updated,
        )
