"""
Ledger Store — Append-only, hash-chained coordination log.

This service provides the core operations of the coordination ledger:
- Append entries, inputs, owner assignments and status changes as events
- Fold events into consistent entry snapshots (optionally as of a sequence)
- Record the audit trail, tagged with the current cycle sequence number
- Persist cycles for audit
- Verify the integrity of the full hash chain

Writers are serialized only around sequence allocation; readers fold whatever
events were committed when their SELECT ran, so a reader never observes a
half-written entry.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_ledger.ledger.models import (
    AuditRecordDB,
    Base,
    CycleDB,
    LedgerEventDB,
    LedgerEventType,
)
from agent_ledger.protocol.errors import (
    EntryNotFound,
    InvalidTransition,
    StoreUnavailable,
    UnknownRole,
)
from agent_ledger.protocol.schema import (
    AuditRecord,
    AuditSeverity,
    Contribution,
    Cycle,
    Entry,
    EntryKind,
    EntryStatus,
    Resolution,
    RESOLVED_STATUSES,
    utcnow,
)
from agent_ledger.protocol.state_machine import (
    INITIAL_STATUS,
    apply_transition,
    describe,
    valid_transitions,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════
# Genesis Constants
# ════════════════════════════════════════════════════════════════

GENESIS_HASH = "0" * 64  # The "previous hash" for the first event in the chain


class LedgerIntegrityError(Exception):
    """Raised when the hash chain integrity check fails."""
    pass


class LedgerStore:
    """
    Coordination Ledger Store — the single shared record of all agents.

    Every component receives the store by construction; there is no module
    level ledger. The store is phase-agnostic: phase rules are enforced by the
    cycle scheduler before it calls in.

    Usage:
        store = LedgerStore("sqlite:///agent_ledger.db")
        store.initialize()  # Create tables, seed genesis event

        entry_id = store.append(Entry(kind=EntryKind.PENDING, title="Pick a queue"))
        store.add_input(entry_id, Contribution(role="cto", statement="..."))
    """

    def __init__(
        self,
        database_url: str,
        roles: Iterable[str] | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the ledger store.

        Args:
            database_url: SQLAlchemy connection string (SQLite or PostgreSQL).
            roles: Valid role names; owner and contributor roles are checked
                against it when given.
            retry_attempts: Attempts for an operation hitting StoreUnavailable.
            retry_backoff_seconds: Base of the exponential backoff.
            clock: Source of timestamps.
        """
        engine_kwargs: dict[str, Any] = {"echo": False}
        shared_connection = False
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
                shared_connection = True

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.roles = frozenset(roles) if roles is not None else None
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.clock = clock
        self.cycle_sequence: int | None = None

        self._write_lock = threading.Lock()
        # A single in-memory connection cannot serve concurrent readers.
        self._read_guard = self._write_lock if shared_connection else contextlib.nullcontext()

    def initialize(self) -> None:
        """Create the schema and seed the genesis event if missing."""

        def _init() -> None:
            Base.metadata.create_all(self.engine)
            with self._write_lock, self.SessionLocal() as session:
                existing = session.execute(
                    select(LedgerEventDB).where(LedgerEventDB.sequence_number == 0)
                ).scalar_one_or_none()
                if existing is None:
                    payload = {"message": "Genesis of the coordination ledger"}
                    event_hash = self._compute_hash(
                        0, None, LedgerEventType.GENESIS.value, payload,
                        None, None, GENESIS_HASH,
                    )
                    session.add(LedgerEventDB(
                        sequence_number=0,
                        entry_id=None,
                        event_type=LedgerEventType.GENESIS.value,
                        payload=payload,
                        timestamp=self.clock(),
                        previous_hash=GENESIS_HASH,
                        event_hash=event_hash,
                    ))
                    session.commit()
                    logger.info("Genesis event created: hash=%s", event_hash[:16])

        self._execute(_init)

    # ── Entries ─────────────────────────────────────────────────

    def append(self, entry: Entry, author_role: str | None = None) -> str:
        """
        Append a new entry to the ledger.

        Returns:
            The entry id.

        Raises:
            InvalidTransition: If the id is already present, or the entry is
                not in the initial status.
            UnknownRole: If the owner role is not a configured role.
        """
        if entry.status != INITIAL_STATUS:
            raise InvalidTransition(
                entry.id, f"append as {entry.status.value}",
                [INITIAL_STATUS.value],
                reason="new entries start awaiting_input",
            )
        self._check_role(entry.owner_role, entry.id)
        for contribution in entry.inputs:
            self._check_role(contribution.role, entry.id)

        def _append() -> str:
            with self._write_lock, self.SessionLocal() as session:
                self._reject_duplicate(session, entry.id)
                data = entry.model_dump(mode="json")
                if data["created_in_cycle"] is None:
                    data["created_in_cycle"] = self.cycle_sequence
                self._write_event(
                    session, entry.id, LedgerEventType.ENTRY_CREATED,
                    {"entry": data}, author_role,
                )
                self._write_audit(
                    session, "append", entry.id,
                    {"kind": entry.kind.value, "title": entry.title},
                )
                session.commit()
            return entry.id

        return self._execute(_append)

    def import_entries(self, entries: Iterable[Entry]) -> list[str]:
        """
        Re-create entries from an exported ledger, preserving their state.

        Raises:
            InvalidTransition: If any id is already present.
        """
        imported: list[str] = []
        for entry in entries:

            def _import(entry: Entry = entry) -> str:
                with self._write_lock, self.SessionLocal() as session:
                    self._reject_duplicate(session, entry.id)
                    self._write_event(
                        session, entry.id, LedgerEventType.ENTRY_IMPORTED,
                        {"entry": entry.model_dump(mode="json")}, None,
                    )
                    self._write_audit(
                        session, "import", entry.id, {"status": entry.status.value}
                    )
                    session.commit()
                return entry.id

            imported.append(self._execute(_import))
        return imported

    def get(self, entry_id: str, as_of: int | None = None) -> Entry:
        """
        Retrieve the current state of one entry.

        Raises:
            EntryNotFound: If no entry has this id.
        """

        def _get() -> Entry:
            with self._read_guard, self.SessionLocal() as session:
                entry = self._load_entry(session, entry_id, as_of)
            if entry is None:
                raise EntryNotFound(entry_id)
            return entry

        return self._execute(_get)

    def exists(self, entry_id: str) -> bool:
        try:
            self.get(entry_id)
        except EntryNotFound:
            return False
        return True

    def list(
        self,
        status: EntryStatus | None = None,
        role: str | None = None,
        kind: EntryKind | None = None,
        as_of: int | None = None,
    ) -> list[Entry]:
        """
        List entries in insertion order, optionally filtered.

        Args:
            status: Only entries currently in this status.
            role: Only entries owned by this role.
            kind: Only entries of this kind.
            as_of: Read the ledger as it was at this sequence number.
        """

        def _list() -> list[Entry]:
            with self._read_guard, self.SessionLocal() as session:
                stmt = select(LedgerEventDB).where(LedgerEventDB.entry_id.is_not(None))
                if as_of is not None:
                    stmt = stmt.where(LedgerEventDB.sequence_number <= as_of)
                events = session.execute(
                    stmt.order_by(LedgerEventDB.sequence_number.asc())
                ).scalars().all()
            return list(self._fold(events).values())

        entries = self._execute(_list)
        return [
            e for e in entries
            if (status is None or e.status == status)
            and (role is None or e.owner_role == role)
            and (kind is None or e.kind == kind)
        ]

    def snapshot(self) -> tuple[int, list[Entry]]:
        """Return (head sequence, entries) read at the same point in the log."""
        head = self.head()
        return head, self.list(as_of=head)

    def add_input(
        self,
        entry_id: str,
        contribution: Contribution,
        author_role: str | None = None,
    ) -> Entry:
        """
        Append a contribution to an entry's inputs.

        Raises:
            InvalidTransition: If the entry is already decided or resolved.
        """
        self._check_role(contribution.role, entry_id)

        def _mutate(entry: Entry) -> tuple[LedgerEventType, dict[str, Any], Entry]:
            if entry.status in RESOLVED_STATUSES:
                raise InvalidTransition(
                    entry.id, "add_input", valid_transitions(entry.status),
                    reason=f"entry is already {entry.status.value}",
                )
            payload = {"contribution": contribution.model_dump(mode="json")}
            return LedgerEventType.INPUT_ADDED, payload, self._apply_event(
                entry, LedgerEventType.INPUT_ADDED.value, payload
            )

        return self._mutate(entry_id, _mutate, "add_input", author_role or contribution.role)

    def assign_owner(self, entry_id: str, role: str, author_role: str | None = None) -> Entry:
        """Record the owning role of an entry."""
        self._check_role(role, entry_id)

        def _mutate(entry: Entry) -> tuple[LedgerEventType, dict[str, Any], Entry]:
            payload = {"changes": {"owner_role": role}}
            return LedgerEventType.OWNER_ASSIGNED, payload, self._apply_event(
                entry, LedgerEventType.OWNER_ASSIGNED.value, payload
            )

        return self._mutate(entry_id, _mutate, "assign_owner", author_role)

    def update_status(
        self,
        entry_id: str,
        new_status: EntryStatus,
        resolution: Resolution | None = None,
        *,
        reason: str | None = None,
        owner_role: str | None = None,
        deadline: datetime | None = None,
        author_role: str | None = None,
    ) -> Entry:
        """
        Move an entry along the state machine.

        Raises:
            InvalidTransition: If the state machine does not permit the change.
            UnknownRole: If owner_role is not a configured role.
        """
        self._check_role(owner_role, entry_id)

        def _mutate(entry: Entry) -> tuple[LedgerEventType, dict[str, Any], Entry]:
            updated = apply_transition(
                entry, new_status, resolution,
                at=self.clock(), owner_role=owner_role,
                reason=reason, deadline=deadline,
            )
            if new_status == EntryStatus.DECIDED:
                updated = updated.model_copy(
                    update={"decided_in_cycle": self.cycle_sequence}
                )
            changes = updated.model_dump(
                mode="json",
                include={
                    "status", "resolution", "decided_at", "owner_role",
                    "escalation_reason", "deadline", "decided_in_cycle",
                },
            )
            payload = {"changes": changes, "reason": reason}
            return LedgerEventType.STATUS_CHANGED, payload, updated

        return self._mutate(
            entry_id, _mutate, "update_status", author_role,
            detail={"status": new_status.value, "reason": reason},
        )

    def acknowledge(self, entry_id: str, role: str) -> Entry:
        """
        Acknowledge every next step assigned to `role` on a decided entry.

        Raises:
            InvalidTransition: If the entry is not decided or has no next step
                for this role.
        """
        self._check_role(role, entry_id)

        def _mutate(entry: Entry) -> tuple[LedgerEventType, dict[str, Any], Entry]:
            if entry.status != EntryStatus.DECIDED or entry.resolution is None:
                raise InvalidTransition(
                    entry.id, "acknowledge", valid_transitions(entry.status),
                    reason="only decided entries carry next steps",
                )
            steps = [s for s in entry.resolution.next_steps if s.assignee_role == role]
            if not steps:
                raise InvalidTransition(
                    entry.id, "acknowledge", valid_transitions(entry.status),
                    reason=f"no next step is assigned to {role}",
                )
            resolution = entry.resolution.model_copy(deep=True)
            for step in resolution.next_steps:
                if step.assignee_role == role:
                    step.acknowledged = True
            payload = {"changes": {"resolution": resolution.model_dump(mode="json")}}
            return LedgerEventType.STEP_ACKNOWLEDGED, payload, self._apply_event(
                entry, LedgerEventType.STEP_ACKNOWLEDGED.value, payload
            )

        return self._mutate(entry_id, _mutate, "acknowledge", role)

    def head(self) -> int:
        """Return the sequence number of the latest event."""

        def _head() -> int:
            with self._read_guard, self.SessionLocal() as session:
                return session.execute(
                    select(func.max(LedgerEventDB.sequence_number))
                ).scalar() or 0

        return self._execute(_head)

    def events(self, limit: int | None = None) -> list[LedgerEventDB]:
        """Raw ledger events, newest first."""

        def _events() -> list[LedgerEventDB]:
            with self._read_guard, self.SessionLocal() as session:
                stmt = select(LedgerEventDB).order_by(LedgerEventDB.sequence_number.desc())
                if limit is not None:
                    stmt = stmt.limit(limit)
                return list(session.execute(stmt).scalars().all())

        return self._execute(_events)

    # ── Audit trail ─────────────────────────────────────────────

    def record_audit(
        self,
        action: str,
        entry_id: str | None = None,
        detail: dict[str, Any] | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        """Record an audit record outside of any entry mutation."""

        def _record() -> None:
            with self._write_lock, self.SessionLocal() as session:
                self._write_audit(session, action, entry_id, detail or {}, severity)
                session.commit()

        self._execute(_record)
        if severity == AuditSeverity.WARNING:
            logger.warning("Audit warning: action=%s entry=%s detail=%s", action, entry_id, detail)

    def audit_trail(
        self,
        entry_id: str | None = None,
        severity: AuditSeverity | None = None,
    ) -> list[AuditRecord]:
        """Return audit records in recording order."""

        def _trail() -> list[AuditRecord]:
            with self._read_guard, self.SessionLocal() as session:
                stmt = select(AuditRecordDB)
                if entry_id is not None:
                    stmt = stmt.where(AuditRecordDB.entry_id == entry_id)
                if severity is not None:
                    stmt = stmt.where(AuditRecordDB.severity == severity.value)
                rows = session.execute(
                    stmt.order_by(AuditRecordDB.sequence.asc())
                ).scalars().all()
            return [
                AuditRecord(
                    sequence=row.sequence,
                    cycle_sequence=row.cycle_sequence,
                    entry_id=row.entry_id,
                    action=row.action,
                    severity=AuditSeverity(row.severity),
                    detail=row.detail or {},
                    recorded_at=row.recorded_at,
                )
                for row in rows
            ]

        return self._execute(_trail)

    # ── Cycles ──────────────────────────────────────────────────

    def save_cycle(self, cycle: Cycle) -> None:
        """Insert or update a cycle row."""

        def _save() -> None:
            with self._write_lock, self.SessionLocal() as session:
                session.merge(CycleDB(
                    sequence_number=cycle.sequence_number,
                    phase=cycle.phase.value,
                    failed=cycle.failed,
                    completed=cycle.is_complete,
                    state=cycle.model_dump(mode="json"),
                    failure_reason=cycle.failure_reason,
                ))
                session.commit()

        self._execute(_save)

    def current_cycle(self) -> Cycle | None:
        """Return the most recent cycle, if any."""

        def _current() -> Cycle | None:
            with self._read_guard, self.SessionLocal() as session:
                row = session.execute(
                    select(CycleDB).order_by(CycleDB.sequence_number.desc()).limit(1)
                ).scalar_one_or_none()
            return Cycle.model_validate(row.state) if row else None

        return self._execute(_current)

    def list_cycles(self) -> list[Cycle]:
        def _cycles() -> list[Cycle]:
            with self._read_guard, self.SessionLocal() as session:
                rows = session.execute(
                    select(CycleDB).order_by(CycleDB.sequence_number.asc())
                ).scalars().all()
            return [Cycle.model_validate(row.state) for row in rows]

        return self._execute(_cycles)

    # ── Integrity ───────────────────────────────────────────────

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Verify the integrity of the entire hash chain.

        Returns:
            Tuple of (is_valid, events_verified, message).
        """

        def _events() -> list[LedgerEventDB]:
            with self._read_guard, self.SessionLocal() as session:
                return list(session.execute(
                    select(LedgerEventDB).order_by(LedgerEventDB.sequence_number.asc())
                ).scalars().all())

        events = self._execute(_events)
        if not events:
            return False, 0, "No events found in ledger"

        first = events[0]
        if first.sequence_number != 0 or first.previous_hash != GENESIS_HASH:
            return False, 0, "Genesis event is missing or has incorrect previous_hash"

        for i, event in enumerate(events):
            expected_hash = self._compute_hash(
                event.sequence_number, event.entry_id, event.event_type,
                event.payload, event.author_role, event.cycle_sequence,
                event.previous_hash,
            )
            if event.event_hash != expected_hash:
                return (
                    False, i,
                    f"Hash mismatch at sequence {event.sequence_number}: "
                    f"stored={event.event_hash[:16]}... "
                    f"computed={expected_hash[:16]}..."
                )
            if i > 0 and event.previous_hash != events[i - 1].event_hash:
                return (
                    False, i,
                    f"Chain break at sequence {event.sequence_number}: "
                    f"previous_hash does not match prior event's hash"
                )
            if i > 0 and event.sequence_number != events[i - 1].sequence_number + 1:
                return False, i, f"Sequence gap before {event.sequence_number}"

        return True, len(events), f"Chain verified: {len(events)} events, integrity intact"

    # ── Internal ────────────────────────────────────────────────

    def _execute(self, operation: Callable[[], T]) -> T:
        """Run an operation, retrying with backoff while the store is unavailable."""
        retrying = Retrying(
            retry=retry_if_exception_type(StoreUnavailable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=10),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._guarded, operation)

    @staticmethod
    def _guarded(operation: Callable[[], T]) -> T:
        try:
            return operation()
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"Ledger backend unavailable: {exc}") from exc

    def _mutate(
        self,
        entry_id: str,
        mutation: Callable[[Entry], tuple[LedgerEventType, dict[str, Any], Entry]],
        action: str,
        author_role: str | None,
        detail: dict[str, Any] | None = None,
    ) -> Entry:
        def _run() -> Entry:
            with self._write_lock, self.SessionLocal() as session:
                entry = self._load_entry(session, entry_id, None)
                if entry is None:
                    raise EntryNotFound(entry_id)
                event_type, payload, updated = mutation(entry)
                self._write_event(session, entry_id, event_type, payload, author_role)
                audit_detail = dict(detail or {})
                if updated.status != entry.status:
                    audit_detail["transition"] = describe(entry.status, updated.status)
                self._write_audit(session, action, entry_id, audit_detail)
                session.commit()
            return updated

        return self._execute(_run)

    def _write_event(
        self,
        session: Session,
        entry_id: str,
        event_type: LedgerEventType,
        payload: dict[str, Any],
        author_role: str | None,
    ) -> LedgerEventDB:
        last_entry = session.execute(
            select(LedgerEventDB)
            .order_by(LedgerEventDB.sequence_number.desc())
            .limit(1)
        ).scalar_one_or_none()
        if last_entry is None:
            raise LedgerIntegrityError(
                "Cannot append: no genesis event found. Call initialize() first."
            )

        new_seq = last_entry.sequence_number + 1
        payload = {**payload, "at": self.clock().isoformat()}
        event_hash = self._compute_hash(
            new_seq, entry_id, event_type.value, payload,
            author_role, self.cycle_sequence, last_entry.event_hash,
        )
        event = LedgerEventDB(
            sequence_number=new_seq,
            entry_id=entry_id,
            event_type=event_type.value,
            payload=payload,
            author_role=author_role,
            cycle_sequence=self.cycle_sequence,
            timestamp=self.clock(),
            previous_hash=last_entry.event_hash,
            event_hash=event_hash,
        )
        session.add(event)
        logger.debug(
            "Ledger event appended: seq=%d type=%s entry=%s hash=%s",
            new_seq, event_type.value, entry_id, event_hash[:16],
        )
        return event

    def _write_audit(
        self,
        session: Session,
        action: str,
        entry_id: str | None,
        detail: dict[str, Any],
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        session.add(AuditRecordDB(
            cycle_sequence=self.cycle_sequence,
            entry_id=entry_id,
            action=action,
            severity=severity.value,
            detail=json.loads(json.dumps(detail, default=str)),
            recorded_at=self.clock(),
        ))

    def _reject_duplicate(self, session: Session, entry_id: str) -> None:
        existing = self._load_entry(session, entry_id, None)
        if existing is not None:
            raise InvalidTransition(
                entry_id, "append", valid_transitions(existing.status),
                reason="entry id already appended",
            )

    def _load_entry(self, session: Session, entry_id: str, as_of: int | None) -> Entry | None:
        stmt = select(LedgerEventDB).where(LedgerEventDB.entry_id == entry_id)
        if as_of is not None:
            stmt = stmt.where(LedgerEventDB.sequence_number <= as_of)
        events = session.execute(
            stmt.order_by(LedgerEventDB.sequence_number.asc())
        ).scalars().all()
        return self._fold(events).get(entry_id)

    def _check_role(self, role: str | None, entry_id: str | None) -> None:
        if role is not None and self.roles is not None and role not in self.roles:
            raise UnknownRole(role, entry_id)

    @classmethod
    def _fold(cls, events: Iterable[LedgerEventDB]) -> dict[str, Entry]:
        """Replay events in order into the current state of each entry."""
        entries: dict[str, Entry] = {}
        for event in events:
            if event.entry_id is None:
                continue
            if event.event_type in (
                LedgerEventType.ENTRY_CREATED.value,
                LedgerEventType.ENTRY_IMPORTED.value,
            ):
                entries[event.entry_id] = Entry.model_validate(event.payload["entry"])
            elif event.entry_id in entries:
                entries[event.entry_id] = cls._apply_event(
                    entries[event.entry_id], event.event_type, event.payload
                )
        return entries

    @staticmethod
    def _apply_event(entry: Entry, event_type: str, payload: dict[str, Any]) -> Entry:
        data = entry.model_dump(mode="json")
        if event_type == LedgerEventType.INPUT_ADDED.value:
            data["inputs"].append(payload["contribution"])
        else:
            data.update(payload.get("changes", {}))
        return Entry.model_validate(data)

    @staticmethod
    def _compute_hash(
        sequence_number: int,
        entry_id: str | None,
        event_type: str,
        payload: dict[str, Any],
        author_role: str | None,
        cycle_sequence: int | None,
        previous_hash: str,
    ) -> str:
        """
        Compute the SHA-256 hash for a ledger event.

        Hash = SHA-256(previous_hash || canonical_json(event_fields))
        """
        hashable = {
            "sequence_number": sequence_number,
            "entry_id": entry_id,
            "event_type": event_type,
            "payload": payload,
            "author_role": author_role,
            "cycle_sequence": cycle_sequence,
            "previous_hash": previous_hash,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()
