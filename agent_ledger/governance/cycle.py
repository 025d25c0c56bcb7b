"""
Cycle Scheduler — the four-phase coordination loop.

Every cycle runs the same four phases, strictly in order:
1. READING     — the ledger sequence is captured; agents read as of it
2. WORKING     — agents run concurrently and post entries, inputs, positions
3. DECIDING    — owners assigned, escalations applied, conflicts arbitrated
4. PUBLISHING  — the cycle is summarized, the ledger exported, the cycle closed

No phase is skipped and no cycle starts before the previous one has finished
publishing (or failed). Each action is only accepted in its own phase; an
action outside it raises PhaseViolation. The working phase closes at its
deadline: work still running is abandoned, appends already made are kept.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator

from agent_ledger.governance.deciding import DecidingReport, DecisionDesk
from agent_ledger.ledger.codec import write_ledger
from agent_ledger.protocol.errors import PhaseViolation, StoreUnavailable
from agent_ledger.protocol.schema import (
    PHASE_ORDER,
    Contribution,
    Cycle,
    CyclePhase,
    Entry,
    EntryKind,
    PhaseDurations,
    Resolution,
    RiskLevel,
    utcnow,
)

logger = logging.getLogger(__name__)

# Actions and the single phase each is permitted in.
PHASE_ACTIONS: dict[str, CyclePhase] = {
    "post_entry": CyclePhase.WORKING,
    "add_input": CyclePhase.WORKING,
    "acknowledge": CyclePhase.WORKING,
    "decide": CyclePhase.DECIDING,
    "escalate": CyclePhase.DECIDING,
    "block": CyclePhase.DECIDING,
}


# ════════════════════════════════════════════════════════════════
# Agents
# ════════════════════════════════════════════════════════════════


class Agent(ABC):
    """
    A worker that acts under one role during the working phase.

    What an agent does is its own business; it talks to the ledger only
    through the AgentContext it is handed.
    """

    def __init__(self, name: str, role: str) -> None:
        self.name = name
        self.role = role

    @abstractmethod
    def work(self, context: AgentContext) -> None:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, role={self.role!r})"


class FunctionAgent(Agent):
    """Adapts a plain callable taking an AgentContext."""

    def __init__(self, name: str, role: str, func: Callable[[AgentContext], None]) -> None:
        super().__init__(name, role)
        self.func = func

    def work(self, context: AgentContext) -> None:
        self.func(context)


class AgentContext:
    """An agent's view of the ledger for one cycle."""

    def __init__(self, scheduler: CycleScheduler, agent: Agent, cycle: Cycle) -> None:
        self.scheduler = scheduler
        self.agent = agent
        self.cycle = cycle
        self._entries: list[Entry] | None = None

    @property
    def role(self) -> str:
        return self.agent.role

    @property
    def entries(self) -> list[Entry]:
        """Entries as they were when the cycle started reading."""
        if self._entries is None:
            self._entries = self.scheduler.store.list(as_of=self.cycle.snapshot_sequence)
        return self._entries

    def get(self, entry_id: str) -> Entry:
        return self.scheduler.store.get(entry_id, as_of=self.cycle.snapshot_sequence)

    def post_entry(
        self,
        kind: EntryKind,
        title: str,
        context: str = "",
        *,
        owner_role: str | None = None,
        deadline: datetime | None = None,
        depends_on: str | None = None,
        tags: Iterable[str] = (),
        entry_id: str | None = None,
    ) -> str:
        fields = dict(
            kind=EntryKind(kind), title=title, context=context,
            owner_role=owner_role, deadline=deadline, depends_on=depends_on,
            tags=list(tags),
        )
        if entry_id is not None:
            fields["id"] = entry_id
        return self.scheduler.post_entry(Entry(**fields), author_role=self.role)

    def add_input(self, entry_id: str, statement: str) -> Entry:
        return self.scheduler.add_input(
            entry_id, Contribution(role=self.role, statement=statement)
        )

    def post_position(
        self,
        entry_id: str,
        recommendation: str,
        statement: str = "",
        criteria: dict[str, float] | None = None,
        risk: RiskLevel | None = None,
    ) -> Entry:
        """Post a recommendation, citing criteria by strength."""
        return self.scheduler.add_input(
            entry_id,
            Contribution(
                role=self.role,
                statement=statement or recommendation,
                recommendation=recommendation,
                criteria=criteria or {},
                risk=risk,
            ),
        )

    def acknowledge(self, entry_id: str) -> Entry:
        return self.scheduler.acknowledge(entry_id, self.role)


# ════════════════════════════════════════════════════════════════
# Scheduler
# ════════════════════════════════════════════════════════════════


class CycleScheduler:
    """
    Drives cycles through their phases and gates every ledger action.

    The current cycle is persisted on each phase change, so a scheduler built
    over an existing store resumes wherever the last one left off.

    Usage:
        scheduler = CycleScheduler(store, registry, agents=[...])
        scheduler.run(cycles=3)

        # or step by step
        scheduler.start_cycle()
        scheduler.advance()   # → working
        scheduler.post_entry(Entry(kind=EntryKind.PENDING, title="..."))
        scheduler.advance()   # → deciding (runs the decision desk)
        scheduler.advance()   # → publishing (cycle completes)
    """

    def __init__(
        self,
        store,
        registry,
        desk: DecisionDesk | None = None,
        agents: Iterable[Agent] = (),
        phase_durations: PhaseDurations | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        export_path: str | Path | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.sleep = sleep
        self.desk = desk or DecisionDesk(store, registry, clock=clock)
        self.agents: list[Agent] = list(agents)
        self.phase_durations = phase_durations or PhaseDurations()
        self.export_path = Path(export_path) if export_path else None
        self.max_workers = max_workers
        self.last_report: DecidingReport | None = None

        self._lock = threading.RLock()
        self.cycle: Cycle | None = store.current_cycle()
        if self.cycle is not None:
            store.cycle_sequence = self.cycle.sequence_number

    def add_agent(self, agent: Agent) -> None:
        self.registry.get(agent.role)
        self.agents.append(agent)

    # ── Phase control ───────────────────────────────────────────

    def start_cycle(self) -> Cycle:
        """
        Open the next cycle in the reading phase.

        Raises:
            PhaseViolation: If the current cycle has not finished publishing.
        """
        with self._lock:
            previous = self.cycle
            if previous is not None and not (previous.is_complete or previous.failed):
                raise PhaseViolation(
                    "start_cycle", previous.phase.value, CyclePhase.PUBLISHING.value,
                    reason=f"cycle {previous.sequence_number} has not completed publishing",
                )

            sequence = previous.sequence_number + 1 if previous else 1
            now = self.clock()
            snapshot = self.store.head()
            cycle = Cycle(
                sequence_number=sequence,
                phase=CyclePhase.READING,
                started_at=now,
                phase_started_at=now,
                phase_deadlines={CyclePhase.READING: self._deadline(CyclePhase.READING, now)},
                snapshot_sequence=snapshot,
            )
            self.store.cycle_sequence = sequence
            self.store.save_cycle(cycle)
            self.store.record_audit(
                "cycle_started", detail={"cycle": sequence, "snapshot_sequence": snapshot}
            )
            self.cycle = cycle
            self.last_report = None

        logger.info("Cycle #%d started: snapshot at sequence %d", sequence, snapshot)
        return cycle

    def advance(self) -> Cycle:
        """
        Move the current cycle to its next phase.

        Entering deciding runs the decision desk; entering publishing
        publishes and completes the cycle.

        Raises:
            PhaseViolation: If there is no open cycle to advance.
            StoreUnavailable: If the ledger fails; the cycle is marked failed.
        """
        with self._lock:
            cycle = self._open_cycle("advance")
            position = PHASE_ORDER.index(cycle.phase)
            if position == len(PHASE_ORDER) - 1:
                raise PhaseViolation(
                    "advance", cycle.phase.value, CyclePhase.READING.value,
                    reason=f"cycle {cycle.sequence_number} is publishing",
                )
            phase = PHASE_ORDER[position + 1]
            try:
                self._enter(phase)
                if phase == CyclePhase.DECIDING:
                    self.last_report = self.desk.run(self.cycle.deadline_for(phase))
                    self.store.record_audit(
                        "deciding_complete", detail=self.last_report.summary
                    )
                elif phase == CyclePhase.PUBLISHING:
                    self.publish()
            except StoreUnavailable as exc:
                self._fail(str(exc))
                raise
            return self.cycle

    def require_phase(
        self,
        phase: CyclePhase,
        action: str,
        entry_id: str | None = None,
        check_deadline: bool = True,
    ) -> Cycle:
        """
        Check that `action` may run now.

        Raises:
            PhaseViolation: If no cycle is in `phase`, or the working phase
                has passed its deadline and `check_deadline` is set.
        """
        with self._lock:
            cycle = self.cycle
            if cycle is None or cycle.phase != phase or cycle.is_complete or cycle.failed:
                raise PhaseViolation(
                    action, cycle.phase.value if cycle else None, phase.value, entry_id,
                    reason="cycle is closed" if cycle and (cycle.is_complete or cycle.failed) else "",
                )
            deadline = cycle.deadline_for(phase)
            if (
                check_deadline
                and phase == CyclePhase.WORKING
                and deadline is not None
                and self.clock() > deadline
            ):
                raise PhaseViolation(
                    action, phase.value, phase.value, entry_id,
                    reason=f"working phase closed at {deadline.isoformat()}",
                )
            return cycle

    def snapshot(self) -> list[Entry]:
        """Entries as of the current cycle's reading phase."""
        cycle = self._current("snapshot")
        return self.store.list(as_of=cycle.snapshot_sequence)

    # ── Gated ledger actions ────────────────────────────────────

    def post_entry(self, entry: Entry, author_role: str | None = None) -> str:
        with self._gate("post_entry", entry.id):
            return self.store.append(entry, author_role=author_role)

    def add_input(self, entry_id: str, contribution: Contribution) -> Entry:
        with self._gate("add_input", entry_id):
            return self.store.add_input(entry_id, contribution)

    def acknowledge(self, entry_id: str, role: str) -> Entry:
        with self._gate("acknowledge", entry_id):
            return self.store.acknowledge(entry_id, role)

    def decide(self, entry_id: str, acting_role: str, resolution: Resolution | str) -> Entry:
        with self._gate("decide", entry_id):
            return self.desk.decide(entry_id, acting_role, resolution)

    def escalate(
        self,
        entry_id: str,
        reason: str | None = None,
        acting_role: str | None = None,
    ) -> Entry:
        with self._gate("escalate", entry_id):
            return self.desk.escalate(entry_id, reason, acting_role)

    def block(self, entry_id: str, acting_role: str, reason: str) -> Entry:
        with self._gate("block", entry_id):
            return self.desk.block(entry_id, acting_role, reason)

    # ── Running ─────────────────────────────────────────────────

    def run(
        self,
        cycles: int | None = None,
        phase_durations: PhaseDurations | None = None,
    ) -> list[Cycle]:
        """Run `cycles` full cycles, or forever when None."""
        if phase_durations is not None:
            self.phase_durations = phase_durations
        finished: list[Cycle] = []
        while cycles is None or len(finished) < cycles:
            finished.append(self.run_cycle())
        return finished

    def run_cycle(self) -> Cycle:
        """
        Run one full cycle.

        A StoreUnavailable that survives retries fails the cycle; it is
        returned marked failed and the next cycle starts fresh.
        """
        cycle = self.start_cycle()
        try:
            self.advance()
            self.run_working()
            self.advance()
            self.advance()
        except StoreUnavailable as exc:
            logger.error("Cycle #%d failed: %s", cycle.sequence_number, exc)
            if not self.cycle.failed:
                self._fail(str(exc))
        return self.cycle

    def run_working(self) -> None:
        """
        Run every agent concurrently until they finish or the phase closes.

        A working budget already spent means a zero wait; the cycle still
        moves on to deciding.
        """
        cycle = self.require_phase(CyclePhase.WORKING, "run_working", check_deadline=False)
        remaining = (cycle.deadline_for(CyclePhase.WORKING) - self.clock()).total_seconds()
        timeout = max(0.0, remaining)

        if not self.agents:
            self.sleep(timeout)
            return

        pool = ThreadPoolExecutor(
            max_workers=self.max_workers or len(self.agents),
            thread_name_prefix="agent",
        )
        futures = {
            pool.submit(agent.work, AgentContext(self, agent, cycle)): agent
            for agent in self.agents
        }
        done, not_done = wait(futures, timeout=timeout)
        pool.shutdown(wait=False, cancel_futures=True)

        for future in done:
            error = future.exception()
            if error is not None:
                agent = futures[future]
                logger.warning("Agent %s failed during working: %s", agent.name, error)
                self.store.record_audit(
                    "agent_failed",
                    detail={"agent": agent.name, "role": agent.role, "error": str(error)},
                )
        for future in not_done:
            agent = futures[future]
            logger.warning(
                "Agent %s still running when working phase of cycle #%d closed",
                agent.name, cycle.sequence_number,
            )
            self.store.record_audit(
                "agent_timeout", detail={"agent": agent.name, "role": agent.role}
            )

    def publish(self) -> Cycle:
        """Export the ledger, summarize the cycle and mark it complete."""
        cycle = self._current("publish")
        entries = self.store.list()
        if self.export_path is not None:
            write_ledger(self.export_path, entries)
            logger.info("Ledger exported to %s (%d entries)", self.export_path, len(entries))

        counts: dict[str, int] = {}
        for entry in entries:
            counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
        self.store.record_audit(
            "cycle_published", detail={"cycle": cycle.sequence_number, "statuses": counts}
        )

        self.cycle = cycle.model_copy(update={"completed_at": self.clock()})
        self.store.save_cycle(self.cycle)
        logger.info("Cycle #%d published: %s", cycle.sequence_number, counts)
        return self.cycle

    # ── Internal ────────────────────────────────────────────────

    @contextmanager
    def _gate(self, action: str, entry_id: str | None) -> Iterator[Cycle]:
        """Hold the phase fixed from the check until the gated call returns."""
        with self._lock:
            yield self.require_phase(PHASE_ACTIONS[action], action, entry_id)

    def _deadline(self, phase: CyclePhase, start: datetime) -> datetime:
        return start + timedelta(seconds=self.phase_durations.for_phase(phase))

    def _enter(self, phase: CyclePhase) -> None:
        now = self.clock()
        deadlines = dict(self.cycle.phase_deadlines)
        deadlines[phase] = self._deadline(phase, now)
        self.cycle = self.cycle.model_copy(
            update={"phase": phase, "phase_started_at": now, "phase_deadlines": deadlines}
        )
        self.store.save_cycle(self.cycle)
        self.store.record_audit(
            "phase_started",
            detail={"cycle": self.cycle.sequence_number, "phase": phase.value},
        )
        logger.info("Cycle #%d entered %s", self.cycle.sequence_number, phase.value)

    def _current(self, action: str) -> Cycle:
        if self.cycle is None:
            raise PhaseViolation(action, None, CyclePhase.READING.value, reason="no cycle started")
        return self.cycle

    def _open_cycle(self, action: str) -> Cycle:
        cycle = self._current(action)
        if cycle.is_complete or cycle.failed:
            raise PhaseViolation(
                action, cycle.phase.value, CyclePhase.READING.value,
                reason=f"cycle {cycle.sequence_number} is closed; start a new cycle",
            )
        return cycle

    def _fail(self, reason: str) -> None:
        self.cycle = self.cycle.model_copy(update={"failed": True, "failure_reason": reason})
        try:
            self.store.save_cycle(self.cycle)
        except StoreUnavailable as exc:
            logger.error(
                "Could not persist failure of cycle #%d: %s", self.cycle.sequence_number, exc
            )
