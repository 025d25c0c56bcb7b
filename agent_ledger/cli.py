"""
agent-ledger — command line surface of the coordination log.

Usage:
    agent-ledger start-cycle
    agent-ledger advance
    agent-ledger post-entry pending '{"title": "Pick a queue", "context": "cto to decide"}'
    agent-ledger post-input E-1a2b3c4d "Kafka scales" --role cto --recommend kafka \\
        --criterion maintainability=0.8 --risk medium
    agent-ledger decide E-1a2b3c4d "Use Kafka" --role cto --next-step engineer:provision
    agent-ledger escalate E-1a2b3c4d --reason "needs budget"
    agent-ledger dump-ledger --status decided
    agent-ledger run --cycles 3
    agent-ledger verify -v

Exit codes:
    0  success
    1  invalid transition (or any other rejected request)
    2  unknown role
    3  phase violation
    4  store unavailable
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Callable

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from agent_ledger.config import LedgerSettings, settings
from agent_ledger.ledger.codec import dump_ledger, write_ledger
from agent_ledger.protocol.errors import LedgerError
from agent_ledger.protocol.schema import (
    Contribution,
    Entry,
    EntryKind,
    EntryStatus,
    NextStep,
    Resolution,
    RiskLevel,
)

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_REJECTED = 1


# ════════════════════════════════════════════════════════════════
# Commands
# ════════════════════════════════════════════════════════════════


def cmd_start_cycle(scheduler, args: argparse.Namespace) -> int:
    cycle = scheduler.start_cycle()
    console.print(
        f"Cycle [bold]#{cycle.sequence_number}[/bold] started "
        f"(snapshot at sequence {cycle.snapshot_sequence})"
    )
    return EXIT_OK


def cmd_advance(scheduler, args: argparse.Namespace) -> int:
    cycle = scheduler.advance()
    console.print(f"Cycle [bold]#{cycle.sequence_number}[/bold] → [cyan]{cycle.phase.value}[/cyan]")
    if scheduler.last_report is not None and cycle.phase.value == "deciding":
        _print_counts("Deciding pass", scheduler.last_report.summary)
    if cycle.is_complete:
        console.print("[green]Cycle published and complete[/green]")
    return EXIT_OK


def cmd_post_entry(scheduler, args: argparse.Namespace) -> int:
    payload = json.loads(args.payload)
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    payload.pop("kind", None)
    entry = Entry(kind=EntryKind(args.kind), **payload)
    entry_id = scheduler.post_entry(entry, author_role=args.role)
    console.print(entry_id)
    return EXIT_OK


def cmd_post_input(scheduler, args: argparse.Namespace) -> int:
    criteria: dict[str, float] = {}
    for item in args.criterion:
        name, _, strength = item.partition("=")
        criteria[name] = float(strength) if strength else 1.0
    contribution = Contribution(
        role=args.role,
        statement=args.statement,
        recommendation=args.recommend,
        criteria=criteria,
        risk=RiskLevel(args.risk) if args.risk else None,
    )
    entry = scheduler.add_input(args.entry_id, contribution)
    console.print(f"{entry.id}: {len(entry.inputs)} input(s), {len(entry.positions)} position(s)")
    return EXIT_OK


def cmd_acknowledge(scheduler, args: argparse.Namespace) -> int:
    entry = scheduler.acknowledge(args.entry_id, args.role)
    console.print(f"{entry.id}: next steps for {args.role} acknowledged")
    return EXIT_OK


def cmd_decide(scheduler, args: argparse.Namespace) -> int:
    next_steps = []
    for item in args.next_step:
        role, _, action = item.partition(":")
        next_steps.append(NextStep(assignee_role=role, action=action or role))
    resolution = Resolution(
        decision=args.resolution,
        reasoning=args.reasoning,
        decided_by=args.role,
        next_steps=next_steps,
    )
    entry = scheduler.decide(args.entry_id, args.role, resolution)
    console.print(f"{entry.id}: [green]{entry.status.value}[/green] by {entry.resolution.decided_by}")
    return EXIT_OK


def cmd_escalate(scheduler, args: argparse.Namespace) -> int:
    entry = scheduler.escalate(args.entry_id, args.reason, args.role)
    if entry.status == EntryStatus.ESCALATED:
        console.print(f"{entry.id}: escalated to [bold]{entry.owner_role}[/bold]")
    else:
        console.print(
            f"{entry.id}: [yellow]force-resolved at {entry.owner_role}[/yellow] "
            f"({entry.resolution.decision})"
        )
    return EXIT_OK


def cmd_dump_ledger(scheduler, args: argparse.Namespace) -> int:
    status = EntryStatus(args.status) if args.status else None
    entries = scheduler.store.list(status=status)
    if args.output:
        write_ledger(args.output, entries)
        err_console.print(f"{len(entries)} entries written to {args.output}")
    elif args.table:
        table = Table(title="Coordination Ledger")
        table.add_column("Entry", style="cyan")
        table.add_column("Kind")
        table.add_column("Status", style="green")
        table.add_column("Owner", style="yellow")
        table.add_column("Title")
        table.add_column("Inputs", justify="right")
        for entry in entries:
            table.add_row(
                entry.id, entry.kind.value, entry.status.value,
                entry.owner_role or "—", entry.title, str(len(entry.inputs)),
            )
        console.print(table)
    else:
        sys.stdout.write(dump_ledger(entries))
    return EXIT_OK


def cmd_run(scheduler, args: argparse.Namespace) -> int:
    finished = scheduler.run(cycles=args.cycles)
    failed = [c for c in finished if c.failed]
    _print_counts("Run complete", {"cycles": len(finished), "failed": len(failed)})
    return EXIT_OK if not failed else 4


def cmd_verify(scheduler, args: argparse.Namespace) -> int:
    from agent_ledger.ledger.audit import run_audit

    is_valid = run_audit(
        scheduler.store.engine.url.render_as_string(hide_password=False),
        verbose=args.verbose,
        out=console,
    )
    return EXIT_OK if is_valid else EXIT_REJECTED


def _print_counts(title: str, counts: dict[str, int]) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("", style="cyan")
    table.add_column("", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


# ════════════════════════════════════════════════════════════════
# Parser
# ════════════════════════════════════════════════════════════════


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-ledger",
        description="Shared decision ledger for agents working in four-phase cycles",
    )
    parser.add_argument("--database-url", default=None, help="Ledger connection string")
    parser.add_argument("--roles-file", default=None, help="Role configuration JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("start-cycle", help="Open the next cycle").set_defaults(func=cmd_start_cycle)
    sub.add_parser("advance", help="Move the cycle to its next phase").set_defaults(func=cmd_advance)

    post = sub.add_parser("post-entry", help="Post a new entry (working phase)")
    post.add_argument("kind", choices=[k.value for k in EntryKind])
    post.add_argument("payload", help="Entry fields as a JSON object")
    post.add_argument("--role", default=None, help="Posting role")
    post.set_defaults(func=cmd_post_entry)

    post_input = sub.add_parser("post-input", help="Add an input or position (working phase)")
    post_input.add_argument("entry_id")
    post_input.add_argument("statement")
    post_input.add_argument("--role", required=True)
    post_input.add_argument("--recommend", default=None, help="Recommended option")
    post_input.add_argument(
        "--criterion", action="append", default=[], metavar="NAME=STRENGTH",
        help="Cited criterion (repeatable)",
    )
    post_input.add_argument("--risk", choices=[r.value for r in RiskLevel], default=None)
    post_input.set_defaults(func=cmd_post_input)

    ack = sub.add_parser("acknowledge", help="Acknowledge next steps (working phase)")
    ack.add_argument("entry_id")
    ack.add_argument("--role", required=True)
    ack.set_defaults(func=cmd_acknowledge)

    decide = sub.add_parser("decide", help="Decide an entry (deciding phase)")
    decide.add_argument("entry_id")
    decide.add_argument("resolution", help="Decision text")
    decide.add_argument("--role", required=True, help="Acting role")
    decide.add_argument("--reasoning", default="")
    decide.add_argument(
        "--next-step", action="append", default=[], metavar="ROLE:ACTION",
        help="Follow-up assignment (repeatable)",
    )
    decide.set_defaults(func=cmd_decide)

    escalate = sub.add_parser("escalate", help="Escalate an entry (deciding phase)")
    escalate.add_argument("entry_id")
    escalate.add_argument("--reason", default=None)
    escalate.add_argument("--role", default=None, help="Escalating role (defaults to owner)")
    escalate.set_defaults(func=cmd_escalate)

    dump = sub.add_parser("dump-ledger", help="Print the ledger in export format")
    dump.add_argument("--status", choices=[s.value for s in EntryStatus], default=None)
    dump.add_argument("--output", default=None, help="Write to a file instead")
    dump.add_argument("--table", action="store_true", help="Print a summary table")
    dump.set_defaults(func=cmd_dump_ledger)

    run = sub.add_parser("run", help="Run full cycles")
    run.add_argument("--cycles", type=int, default=None, help="Number of cycles (default: forever)")
    run.set_defaults(func=cmd_run)

    verify = sub.add_parser("verify", help="Verify the ledger hash chain")
    verify.add_argument("--verbose", "-v", action="store_true")
    verify.set_defaults(func=cmd_verify)

    return parser


def main(argv: list[str] | None = None) -> int:
    from agent_ledger.orchestrator import build_scheduler

    args = build_parser().parse_args(argv)
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.roles_file:
        overrides["roles_file"] = args.roles_file
    config: LedgerSettings = settings.model_copy(update=overrides)

    handler: Callable[..., int] = args.func
    try:
        scheduler = build_scheduler(config)
        return handler(scheduler, args)
    except LedgerError as exc:
        err_console.print(f"[red]error:[/red] {exc}", highlight=False)
        return exc.exit_code
    except (ValidationError, ValueError) as exc:
        err_console.print(f"[red]invalid request:[/red] {exc}", highlight=False)
        return EXIT_REJECTED


if __name__ == "__main__":
    sys.exit(main())
