"""
Ledger export format — the persisted representation agents read.

One delimited block per entry, in ledger order. The body of each block is the
entry as indented, key-sorted JSON, so the file diffs cleanly and stays
readable by people as well as by the loader:

    === ENTRY E-1a2b3c4d ===
    {
      "context": "...",
      ...
    }
    === END ENTRY ===
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Iterable

from agent_ledger.protocol.schema import Entry

BLOCK_START = "=== ENTRY {id} ==="
BLOCK_END = "=== END ENTRY ==="

_START_RE = re.compile(r"^=== ENTRY (?P<id>\S+) ===$")


class LedgerFormatError(ValueError):
    """Raised when an exported ledger cannot be parsed."""

    def __init__(self, line_number: int, message: str) -> None:
        self.line_number = line_number
        super().__init__(f"line {line_number}: {message}")


def dump_entry(entry: Entry) -> str:
    body = json.dumps(entry.model_dump(mode="json"), indent=2, sort_keys=True)
    return f"{BLOCK_START.format(id=entry.id)}\n{body}\n{BLOCK_END}\n"


def dump_ledger(entries: Iterable[Entry]) -> str:
    """Serialize entries, in the given order, to the export format."""
    return "\n".join(dump_entry(entry) for entry in entries)


def load_ledger(text: str) -> list[Entry]:
    """
    Parse an exported ledger back into entries, preserving order.

    Raises:
        LedgerFormatError: On unterminated blocks, stray content, header/body
            id mismatches or invalid entry bodies.
    """
    entries: list[Entry] = []
    current_id: str | None = None
    start_line = 0
    body: list[str] = []

    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.rstrip()
        if current_id is None:
            if not line:
                continue
            match = _START_RE.match(line)
            if match is None:
                raise LedgerFormatError(number, f"expected entry header, got {line[:40]!r}")
            current_id, start_line, body = match.group("id"), number, []
        elif line == BLOCK_END:
            entries.append(_parse_block(current_id, start_line, body))
            current_id = None
        else:
            body.append(raw)

    if current_id is not None:
        raise LedgerFormatError(start_line, f"entry {current_id} is not terminated")
    return entries


def write_ledger(path: str | Path, entries: Iterable[Entry]) -> Path:
    """Write the export atomically (temp file, then rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(dump_ledger(entries), encoding="utf-8")
    tmp.replace(target)
    return target


def read_ledger(path: str | Path) -> list[Entry]:
    return load_ledger(Path(path).read_text(encoding="utf-8"))


def _parse_block(entry_id: str, start_line: int, body: list[str]) -> Entry:
    try:
        data = json.loads("\n".join(body))
        entry = Entry.model_validate(data)
    except ValueError as exc:
        raise LedgerFormatError(start_line, f"invalid entry {entry_id}: {exc}") from exc
    if entry.id != entry_id:
        raise LedgerFormatError(
            start_line, f"header id {entry_id} does not match body id {entry.id}"
        )
    return entry
