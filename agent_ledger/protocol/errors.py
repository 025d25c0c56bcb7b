"""
Coordination errors — the failure taxonomy shared by every component.

- InvalidTransition   — status change not permitted by the entry state machine
- UnknownRole         — routing failure; recovered by routing to the apex role
- NoEscalationTarget  — apex-level deadlock; recovered by the default policy
- PhaseViolation      — action attempted outside its permitted cycle phase
- StoreUnavailable    — ledger read/write failure; the only retryable error

Rejections carry the entry id, the attempted transition and the transitions
that are currently valid, so the caller can retry in the right place.
"""

from __future__ import annotations

from typing import Iterable


class LedgerError(Exception):
    """Base class for all coordination log errors."""

    exit_code: int = 1


class InvalidTransition(LedgerError):
    """Raised when a status change is not permitted for an entry."""

    exit_code = 1

    def __init__(
        self,
        entry_id: str,
        attempted: str,
        valid: Iterable[str] = (),
        reason: str = "",
        required_owner: str | None = None,
    ) -> None:
        self.entry_id = entry_id
        self.attempted = attempted
        self.valid = sorted(valid)
        self.reason = reason
        self.required_owner = required_owner
        message = (
            f"Entry {entry_id}: transition {attempted} rejected"
            f"{' (' + reason + ')' if reason else ''}. "
            f"Valid transitions: {', '.join(self.valid) or 'none'}"
        )
        if required_owner:
            message += f". Required owner: {required_owner}"
        super().__init__(message)


class UnknownRole(LedgerError):
    """Raised when a role name does not resolve to a configured role."""

    exit_code = 2

    def __init__(self, role: str | None, entry_id: str | None = None) -> None:
        self.role = role
        self.entry_id = entry_id
        where = f" for entry {entry_id}" if entry_id else ""
        super().__init__(f"Unknown role {role!r}{where}")


class NoEscalationTarget(LedgerError):
    """Raised when the apex role would have to escalate further."""

    exit_code = 1

    def __init__(self, role: str, entry_id: str, reason: str = "") -> None:
        self.role = role
        self.entry_id = entry_id
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Entry {entry_id}: role '{role}' has no escalation target{detail}"
        )


class PhaseViolation(LedgerError):
    """Raised when an action is attempted outside its permitted phase."""

    exit_code = 3

    def __init__(
        self,
        action: str,
        current_phase: str | None,
        allowed_phase: str,
        entry_id: str | None = None,
        reason: str = "",
    ) -> None:
        self.action = action
        self.current_phase = current_phase
        self.allowed_phase = allowed_phase
        self.entry_id = entry_id
        subject = f"Entry {entry_id}: " if entry_id else ""
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"{subject}{action} is only permitted during {allowed_phase}, "
            f"current phase is {current_phase or 'none'}{detail}"
        )


class StoreUnavailable(LedgerError):
    """Raised when the ledger backend cannot be read or written."""

    exit_code = 4


class EntryNotFound(LedgerError, LookupError):
    """Raised when an entry id is not present in the ledger."""

    exit_code = 1

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Entry {entry_id} not found")


class RoleConfigurationError(LedgerError, ValueError):
    """Raised when a role set violates the escalation hierarchy rules."""

    exit_code = 2
