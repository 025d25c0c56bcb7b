"""
Entry state machine.

    awaiting_input ──decide──────────▶ decided ──acknowledged──▶ resolved
          │  │  └──inputs in──▶ ready ──decide──▶ decided
          │  └──deadline / authority──▶ escalated ──parent decides──▶ decided
          │                               └──parent exceeds──▶ escalated
          └──unresolvable──▶ blocked ──dependency resolved──▶ awaiting_input

Initial state is awaiting_input; resolved is the only terminal state.
blocked and escalated are recoverable.
"""

from __future__ import annotations

from datetime import datetime

from agent_ledger.protocol.errors import InvalidTransition
from agent_ledger.protocol.schema import (
    Entry,
    EntryStatus,
    Resolution,
    RESOLVED_STATUSES,
)

TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.AWAITING_INPUT: frozenset(
        {EntryStatus.READY, EntryStatus.DECIDED, EntryStatus.ESCALATED, EntryStatus.BLOCKED}
    ),
    EntryStatus.READY: frozenset(
        {EntryStatus.DECIDED, EntryStatus.ESCALATED, EntryStatus.BLOCKED}
    ),
    EntryStatus.ESCALATED: frozenset({EntryStatus.DECIDED, EntryStatus.ESCALATED}),
    EntryStatus.DECIDED: frozenset({EntryStatus.RESOLVED}),
    EntryStatus.BLOCKED: frozenset({EntryStatus.AWAITING_INPUT}),
    EntryStatus.RESOLVED: frozenset(),
}

INITIAL_STATUS = EntryStatus.AWAITING_INPUT
TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def valid_transitions(status: EntryStatus) -> list[str]:
    """Names of the statuses reachable from `status` in one step."""
    return sorted(s.value for s in TRANSITIONS[status])


def describe(current: EntryStatus, target: EntryStatus) -> str:
    return f"{current.value} -> {target.value}"


def check_transition(
    entry: Entry,
    new_status: EntryStatus,
    resolution: Resolution | None = None,
) -> None:
    """
    Validate a status change without applying it.

    Raises:
        InvalidTransition: If the edge is not in the state machine, or the
            resolution argument would break the resolution/status invariant.
    """
    attempted = describe(entry.status, new_status)
    valid = valid_transitions(entry.status)

    if new_status not in TRANSITIONS[entry.status]:
        raise InvalidTransition(entry.id, attempted, valid, reason="not permitted")

    if new_status == EntryStatus.DECIDED and resolution is None:
        raise InvalidTransition(
            entry.id, attempted, valid, reason="a decision requires a resolution"
        )

    if new_status not in RESOLVED_STATUSES and resolution is not None:
        raise InvalidTransition(
            entry.id, attempted, valid,
            reason=f"a resolution cannot accompany {new_status.value}",
        )

    if new_status == EntryStatus.RESOLVED:
        if entry.resolution is None:
            raise InvalidTransition(entry.id, attempted, valid, reason="no resolution")
        if not entry.resolution.all_acknowledged:
            raise InvalidTransition(
                entry.id, attempted, valid,
                reason="next steps are not all acknowledged",
            )


def apply_transition(
    entry: Entry,
    new_status: EntryStatus,
    resolution: Resolution | None = None,
    at: datetime | None = None,
    owner_role: str | None = None,
    reason: str | None = None,
    deadline: datetime | None = None,
) -> Entry:
    """Return a new, validated entry with the transition applied."""
    check_transition(entry, new_status, resolution)

    data = entry.model_dump()
    data["status"] = new_status
    if new_status == EntryStatus.DECIDED:
        data["resolution"] = resolution.model_dump()
        data["decided_at"] = at
    elif new_status not in RESOLVED_STATUSES:
        data["resolution"] = None
    if new_status == EntryStatus.ESCALATED:
        data["escalation_reason"] = reason
    if owner_role is not None:
        data["owner_role"] = owner_role
    if deadline is not None:
        data["deadline"] = deadline
    return Entry.model_validate(data)
