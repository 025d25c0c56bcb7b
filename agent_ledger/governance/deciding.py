"""
Decision Desk — the work done during a cycle's deciding phase.

A deciding pass runs in two steps:

1. SETTLE   — decided entries from earlier cycles whose next steps are all
              acknowledged become resolved; blocked entries whose dependency
              has been resolved return to awaiting_input.
2. PROCESS  — every open entry, in insertion order:
              owner assigned → escalation checked → inputs in (ready) →
              conflicts arbitrated, or the owner's registered decider asked.

If the pass runs past its deadline, every entry still undecided is
escalated with reason "deciding phase timeout".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from agent_ledger.governance.arbitration import ConflictArbitrator
from agent_ledger.governance.escalation import (
    AUTHORITY_REASON,
    PHASE_TIMEOUT_REASON,
    EscalationAction,
    EscalationResolver,
)
from agent_ledger.governance.roles import RoleRegistry, RoleRouter
from agent_ledger.protocol.errors import EntryNotFound, InvalidTransition
from agent_ledger.protocol.schema import (
    Entry,
    EntryStatus,
    Resolution,
    Role,
    utcnow,
)
from agent_ledger.protocol.state_machine import describe, valid_transitions

logger = logging.getLogger(__name__)

RoleDecider = Callable[[Entry, Role], "Resolution | None"]


@dataclass
class DecidingReport:
    """What one deciding pass did, by entry id."""

    processed: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    unblocked: list[str] = field(default_factory=list)
    readied: list[str] = field(default_factory=list)
    decided: list[str] = field(default_factory=list)
    arbitrated: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    forced: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {name: len(ids) for name, ids in self.__dict__.items()}


class DecisionDesk:
    """
    Owns every status change made during the deciding phase.

    Args:
        store: The ledger store.
        registry: Configured roles.
        router: Owner resolution; built from the registry when omitted.
        escalation: Escalation resolver; built with defaults when omitted.
        arbitrator: Conflict arbitrator; built with defaults when omitted.
        deciders: Role name → callable returning a resolution (or None to pass).
        clock: Source of the current time.
    """

    def __init__(
        self,
        store,
        registry: RoleRegistry,
        router: RoleRouter | None = None,
        escalation: EscalationResolver | None = None,
        arbitrator: ConflictArbitrator | None = None,
        deciders: dict[str, RoleDecider] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.router = router or RoleRouter(registry, store)
        self.escalation = escalation or EscalationResolver(store, self.router, clock=clock)
        self.arbitrator = arbitrator or ConflictArbitrator(registry, self.router)
        self.deciders: dict[str, RoleDecider] = {}
        for role_name, decider in (deciders or {}).items():
            self.register_decider(role_name, decider)

    def register_decider(self, role_name: str, decider: RoleDecider) -> None:
        self.registry.get(role_name)
        self.deciders[role_name] = decider

    # ── Explicit actions ────────────────────────────────────────

    def decide(
        self,
        entry_id: str,
        acting_role: str,
        resolution: Resolution | str,
    ) -> Entry:
        """
        Record a decision made by the owning role.

        Raises:
            InvalidTransition: If `acting_role` is not the owner, or the entry
                cannot be decided from its current status.
            UnknownRole: If the acting role or a next-step assignee is unknown.
        """
        entry = self.store.get(entry_id)
        owner = self.router.authorize(entry, acting_role)
        if isinstance(resolution, str):
            resolution = Resolution(decision=resolution, decided_by=owner.name)
        for step in resolution.next_steps:
            self.registry.get(step.assignee_role)
        resolution = resolution.model_copy(update={"decided_by": owner.name})

        updated = self.store.update_status(
            entry_id, EntryStatus.DECIDED, resolution,
            owner_role=owner.name, author_role=acting_role,
        )
        logger.info("Entry %s decided by %s: %r", entry_id, owner.name, resolution.decision)
        return updated

    def escalate(
        self,
        entry_id: str,
        reason: str | None = None,
        acting_role: str | None = None,
    ) -> Entry:
        """
        Escalate an open entry on request.

        Only the owning role may ask; the entry always moves to the owner's
        escalation target. At the apex role this force-resolves the entry.

        Raises:
            InvalidTransition: If the entry is not open, or `acting_role`
                is not the owner.
            UnknownRole: If the acting role is unknown.
        """
        entry = self.store.get(entry_id)
        if not entry.is_open:
            raise InvalidTransition(
                entry_id, describe(entry.status, EntryStatus.ESCALATED),
                valid_transitions(entry.status),
                reason=f"entry is {entry.status.value}",
            )
        if acting_role:
            role = self.router.authorize(entry, acting_role, EntryStatus.ESCALATED)
        else:
            role = self.router.owner_for(entry)
        outcome = self.escalation.escalate(entry, role, reason=reason or AUTHORITY_REASON)
        return outcome.entry or entry

    def block(self, entry_id: str, acting_role: str, reason: str) -> Entry:
        """
        Mark an entry unresolvable by its owner.

        Raises:
            InvalidTransition: If `acting_role` is not the owner, or the
                entry cannot be blocked from its current status.
        """
        entry = self.store.get(entry_id)
        owner = self.router.authorize(entry, acting_role, EntryStatus.BLOCKED)
        return self.store.update_status(
            entry_id, EntryStatus.BLOCKED,
            reason=reason, owner_role=owner.name, author_role=acting_role,
        )

    # ── Deciding pass ───────────────────────────────────────────

    def run(self, deadline: datetime | None = None) -> DecidingReport:
        """Run one deciding pass, stopping work at `deadline`."""
        report = DecidingReport()
        self.settle(report)

        pending = [e for e in self.store.list() if e.is_open]
        for entry in pending:
            if self._expired(deadline):
                break
            self._process(entry, report)
            report.processed.append(entry.id)

        if self._expired(deadline):
            handled = set(report.escalated) | set(report.forced) | set(report.decided)
            self._time_out([e.id for e in pending if e.id not in handled], report)

        logger.info("Deciding pass complete: %s", report.summary)
        return report

    def settle(self, report: DecidingReport | None = None) -> DecidingReport:
        """Resolve acknowledged decisions and release unblocked entries."""
        report = report or DecidingReport()
        current = self.store.cycle_sequence
        for entry in self.store.list():
            if entry.status == EntryStatus.DECIDED:
                decided_earlier = current is None or entry.decided_in_cycle != current
                if decided_earlier and entry.resolution.all_acknowledged:
                    self.store.update_status(
                        entry.id, EntryStatus.RESOLVED,
                        reason="next steps acknowledged",
                        author_role=entry.owner_role,
                    )
                    report.resolved.append(entry.id)
            elif entry.status == EntryStatus.BLOCKED and self._dependency_settled(entry):
                self.store.update_status(
                    entry.id, EntryStatus.AWAITING_INPUT,
                    reason=f"dependency {entry.depends_on} resolved",
                )
                report.unblocked.append(entry.id)
        return report

    def _dependency_settled(self, entry: Entry) -> bool:
        if not entry.depends_on:
            return False
        try:
            return self.store.get(entry.depends_on).status == EntryStatus.RESOLVED
        except EntryNotFound:
            logger.warning(
                "Entry %s depends on missing entry %s", entry.id, entry.depends_on
            )
            return False

    def _process(self, entry: Entry, report: DecidingReport) -> None:
        owner = self.router.owner_for(entry)
        if entry.owner_role != owner.name:
            entry = self.store.assign_owner(entry.id, owner.name)

        outcome = self.escalation.escalate(entry, owner, now=self.clock())
        if outcome.action == EscalationAction.FORWARD:
            report.escalated.append(entry.id)
            return
        if outcome.action == EscalationAction.FORCED_RESOLUTION:
            report.forced.append(entry.id)
            return

        if entry.status == EntryStatus.AWAITING_INPUT and entry.positions:
            entry = self.store.update_status(
                entry.id, EntryStatus.READY, reason="positions posted"
            )
            report.readied.append(entry.id)

        if entry.has_conflict:
            resolution = self.arbitrator.resolve(entry, role=owner)
            self.store.update_status(
                entry.id, EntryStatus.DECIDED, resolution,
                reason="conflict arbitrated", author_role=resolution.decided_by,
            )
            report.arbitrated.append(entry.id)
            report.decided.append(entry.id)
            return

        decider = self.deciders.get(owner.name)
        if decider is None:
            return
        resolution = decider(entry, owner)
        if resolution is None:
            return
        self.decide(entry.id, owner.name, resolution)
        report.decided.append(entry.id)

    def _expired(self, deadline: datetime | None) -> bool:
        return deadline is not None and self.clock() > deadline

    def _time_out(self, entry_ids: list[str], report: DecidingReport) -> None:
        """Escalate every entry in `entry_ids` that is still undecided."""
        remaining = [e for e in (self.store.get(i) for i in entry_ids) if e.is_open]
        logger.warning(
            "Deciding phase budget exhausted with %d entries undecided", len(remaining)
        )
        for entry in remaining:
            outcome = self.escalation.escalate(
                entry, reason=PHASE_TIMEOUT_REASON, now=self.clock()
            )
            report.timed_out.append(entry.id)
            if outcome.action == EscalationAction.FORCED_RESOLUTION:
                report.forced.append(entry.id)
            elif outcome.action == EscalationAction.FORWARD:
                report.escalated.append(entry.id)
