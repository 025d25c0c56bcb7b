from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agent_ledger.governance.roles import RoleRegistry, RoleRouter
from agent_ledger.ledger.service import LedgerStore


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> RoleRegistry:
    return RoleRegistry()


@pytest.fixture
def store(clock, registry) -> LedgerStore:
    ledger = LedgerStore(
        "sqlite://",
        roles=registry.names,
        retry_attempts=3,
        retry_backoff_seconds=0,
        clock=clock,
    )
    ledger.initialize()
    return ledger


@pytest.fixture
def router(registry, store) -> RoleRouter:
    return RoleRouter(registry, store)
