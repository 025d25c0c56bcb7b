"""
Agent Ledger — Coordination loop orchestrator.

Central entrypoint that:
1. Initializes the ledger store
2. Loads and validates the role hierarchy
3. Wires the router, escalation resolver, arbitrator and decision desk
4. Runs the cycle scheduler for the configured number of cycles

This is the entrypoint for a long-running coordinator process.
"""

from __future__ import annotations

import logging
import sys
from datetime import timedelta

import structlog

from agent_ledger.config import LedgerSettings, settings

logger = logging.getLogger(__name__)


def configure_logging(config: LedgerSettings = settings) -> None:
    """Configure structured logging."""
    level = logging.getLevelName(config.log_level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_scheduler(config: LedgerSettings = settings, agents=()):
    """Construct a fully wired CycleScheduler from settings."""
    from agent_ledger.governance.arbitration import ConflictArbitrator
    from agent_ledger.governance.cycle import CycleScheduler
    from agent_ledger.governance.deciding import DecisionDesk
    from agent_ledger.governance.escalation import EscalationResolver
    from agent_ledger.governance.roles import RoleRegistry, RoleRouter, load_roles
    from agent_ledger.ledger.service import LedgerStore

    registry = load_roles(config.roles_file) if config.roles_file else RoleRegistry()

    store = LedgerStore(
        config.database_url,
        roles=registry.names,
        retry_attempts=config.store_retry_attempts,
        retry_backoff_seconds=config.store_retry_backoff_seconds,
    )
    store.initialize()

    router = RoleRouter(registry, store)
    desk = DecisionDesk(
        store,
        registry,
        router=router,
        escalation=EscalationResolver(
            store, router,
            escalation_window=timedelta(minutes=config.escalation_window_minutes),
        ),
        arbitrator=ConflictArbitrator(registry, router, config.deadlock_policy),
    )
    return CycleScheduler(
        store,
        registry,
        desk=desk,
        agents=agents,
        phase_durations=config.phase_durations,
        export_path=config.ledger_export_path or None,
    )


def main() -> None:
    """Main orchestrator loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "agent_ledger.orchestrator.starting",
        database_url=settings.database_url,
        roles_file=settings.roles_file or "<defaults>",
        deadlock_policy=settings.deadlock_policy.value,
    )

    scheduler = build_scheduler(settings)
    log.info(
        "agent_ledger.orchestrator.ready",
        roles=scheduler.registry.names,
        apex=scheduler.registry.apex.name,
        resumed_cycle=scheduler.cycle.sequence_number if scheduler.cycle else None,
    )

    cycles = settings.cycle_count or None
    try:
        finished = scheduler.run(cycles=cycles)
        failed = [c.sequence_number for c in finished if c.failed]
        log.info(
            "agent_ledger.orchestrator.finished",
            cycles=len(finished),
            failed_cycles=failed,
        )
        is_valid, events, message = scheduler.store.verify_chain()
        if not is_valid:
            log.critical(
                "agent_ledger.orchestrator.integrity_failure",
                message=message,
                events=events,
            )
            sys.exit(1)
    except KeyboardInterrupt:
        log.info("agent_ledger.orchestrator.shutdown")
    except Exception as e:
        log.exception("agent_ledger.orchestrator.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
