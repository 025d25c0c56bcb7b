"""
Ledger Audit Tool — Independent chain integrity verification.

Connects directly to the ledger database and recomputes every hash in the
chain, verifying that no event has been altered after it was written.
Optionally lists the events and the warning-level audit records (routing
fallbacks, forced resolutions) that need a human look.

Usage:
    python -m agent_ledger.ledger.audit
    python -m agent_ledger.ledger.audit --database-url sqlite:///other.db
    python -m agent_ledger.ledger.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from agent_ledger.config import settings
from agent_ledger.ledger.service import LedgerStore
from agent_ledger.protocol.schema import AuditSeverity

console = Console()


def run_audit(
    database_url: str,
    verbose: bool = False,
    out: Console | None = None,
) -> bool:
    """
    Run a full hash chain integrity audit.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print the event listing and audit warnings if True.
        out: Console to print to.

    Returns:
        True if the chain is valid, False otherwise.
    """
    out = out or console
    out.print("\n[bold blue]═══ Coordination Ledger Integrity Audit ═══[/bold blue]\n")

    store = LedgerStore(database_url)
    store.initialize()

    head = store.head()
    out.print(f"  Events in ledger: [bold]{head + 1}[/bold] (including genesis)")

    out.print("  Verifying hash chain...", end=" ")
    start_time = time.time()
    is_valid, events_verified, message = store.verify_chain()
    elapsed = time.time() - start_time

    if is_valid:
        out.print("[bold green]✓ VALID[/bold green]")
        out.print(f"  Events verified: [bold]{events_verified}[/bold]")
        out.print(f"  Verification time: {elapsed:.3f}s")
    else:
        out.print("[bold red]✗ INVALID[/bold red]")
        out.print(f"  Failure at event: {events_verified}")
        out.print(f"  Reason: {message}")

    warnings = store.audit_trail(severity=AuditSeverity.WARNING)
    if warnings:
        out.print(f"  [yellow]⚠ {len(warnings)} audit warning(s) need review[/yellow]")

    if verbose:
        out.print("\n[bold]Event Listing:[/bold]")
        table = Table(show_lines=True)
        table.add_column("Seq", style="cyan", width=6)
        table.add_column("Type", style="green", width=18)
        table.add_column("Entry", width=12)
        table.add_column("Author", style="yellow", width=10)
        table.add_column("Cycle", width=6)
        table.add_column("Hash (first 16)", style="dim", width=18)
        for event in reversed(store.events()):
            table.add_row(
                str(event.sequence_number),
                event.event_type,
                event.entry_id or "—",
                event.author_role or "—",
                str(event.cycle_sequence) if event.cycle_sequence is not None else "—",
                event.event_hash[:16] + "...",
            )
        out.print(table)

        if warnings:
            out.print("\n[bold]Audit Warnings:[/bold]")
            warning_table = Table(show_lines=True)
            warning_table.add_column("Cycle", width=6)
            warning_table.add_column("Entry", width=12)
            warning_table.add_column("Action", style="yellow", width=22)
            warning_table.add_column("Detail")
            for record in warnings:
                warning_table.add_row(
                    str(record.cycle_sequence) if record.cycle_sequence is not None else "—",
                    record.entry_id or "—",
                    record.action,
                    ", ".join(f"{k}={v}" for k, v in record.detail.items()),
                )
            out.print(warning_table)

    out.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main() -> None:
    parser = argparse.ArgumentParser(description="Agent Ledger Integrity Auditor")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Ledger connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the event listing and audit warnings",
    )
    args = parser.parse_args()

    is_valid = run_audit(args.database_url or settings.database_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
