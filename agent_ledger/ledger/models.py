"""
Coordination Ledger — SQLAlchemy models for the persisted log.

The ledger is an append-only event log. Entries are never stored as mutable
rows; every change to an entry (creation, an input, a status change, an owner
assignment, an acknowledgement) is a new event, and the current state of an
entry is the fold of its events in sequence order.

Integrity:
1. Append-Only — only INSERT on ledger_events; corrections are new events
2. Ordered     — a monotonic sequence number is the sole mutation point
3. Verifiable  — each event stores the SHA-256 hash of its predecessor

Cycles are retained in their own table for audit; only the current cycle row
is ever updated.
"""

from __future__ import annotations

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class LedgerEventType(str, enum.Enum):
    """Kinds of event in the ledger log."""

    GENESIS = "genesis"
    ENTRY_CREATED = "entry_created"
    ENTRY_IMPORTED = "entry_imported"
    INPUT_ADDED = "input_added"
    STATUS_CHANGED = "status_changed"
    OWNER_ASSIGNED = "owner_assigned"
    STEP_ACKNOWLEDGED = "step_acknowledged"


class LedgerEventDB(Base):
    """
    A single event in the coordination log.

    This table is APPEND-ONLY. No rows may be updated or deleted.

    The hash chain: each event stores the SHA-256 hash of
    (previous_hash || canonical_json(event fields)), so a retroactive
    alteration is detectable by walking the chain.
    """

    __tablename__ = "ledger_events"

    sequence_number = Column(
        Integer, primary_key=True, autoincrement=False,
        comment="Monotonically increasing sequence number",
    )
    entry_id = Column(
        String(64), nullable=True, index=True,
        comment="Entry this event belongs to (null for genesis)",
    )
    event_type = Column(String(32), nullable=False)
    payload = Column(JSONType, nullable=False, comment="Event body, JSON-mode dump")
    author_role = Column(String(64), nullable=True)
    cycle_sequence = Column(Integer, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())

    previous_hash = Column(String(64), nullable=False)
    event_hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_ledger_event_entry_seq", "entry_id", "sequence_number"),
        Index("ix_ledger_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEvent seq={self.sequence_number} "
            f"type={self.event_type} entry={self.entry_id}>"
        )


class AuditRecordDB(Base):
    """Audit trail — one row per accepted mutation or recovered warning."""

    __tablename__ = "audit_records"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    cycle_sequence = Column(Integer, nullable=True, index=True)
    entry_id = Column(String(64), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False, default="info")
    detail = Column(JSONType, nullable=False, default=dict)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (Index("ix_audit_severity", "severity"),)


class CycleDB(Base):
    """Coordination cycles, retained for audit."""

    __tablename__ = "cycles"

    sequence_number = Column(Integer, primary_key=True, autoincrement=False)
    phase = Column(String(20), nullable=False, default="reading")
    failed = Column(Boolean, nullable=False, default=False)
    completed = Column(Boolean, nullable=False, default=False)
    state = Column(JSONType, nullable=False, comment="Full Cycle model, JSON-mode dump")
    failure_reason = Column(Text, nullable=True)
