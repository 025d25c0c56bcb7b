"""
Tests for the agent-ledger command line.

Each invocation builds a fresh scheduler over the same database, so these
also cover resuming a persisted cycle between processes.
"""

from __future__ import annotations

import json

import pytest

from agent_ledger import cli
from agent_ledger.config import LedgerSettings

ENTRY_ID = "E-c1100001"


@pytest.fixture
def run(tmp_path, monkeypatch):
    monkeypatch.setattr(
        cli, "settings",
        LedgerSettings(
            database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
            store_retry_backoff_seconds=0,
            reading_seconds=0,
            working_seconds=60,
            deciding_seconds=5,
            publishing_seconds=0,
        ),
    )

    def invoke(*argv: str) -> int:
        return cli.main(list(argv))

    return invoke


def _payload(**fields) -> str:
    return json.dumps({"title": "Pick a queue", **fields})


class TestCommands:
    def test_full_cycle(self, run, capsys):
        assert run("post-entry", "pending", _payload()) == 3
        assert run("start-cycle") == 0
        assert run("advance") == 0

        assert run("post-entry", "pending", _payload(id=ENTRY_ID, owner_role="cto")) == 0
        assert ENTRY_ID in capsys.readouterr().out
        assert run("post-entry", "pending", _payload(id=ENTRY_ID, owner_role="cto")) == 1
        assert run("post-entry", "pending", _payload(owner_role="intern")) == 2

        assert run(
            "post-input", ENTRY_ID, "Kafka scales", "--role", "cto",
            "--recommend", "kafka", "--criterion", "maintainability=0.8", "--risk", "medium",
        ) == 0
        assert run("decide", ENTRY_ID, "Use Kafka", "--role", "cto") == 3

        assert run("advance") == 0
        assert run("decide", ENTRY_ID, "Use SQS", "--role", "engineer") == 1
        assert run("decide", ENTRY_ID, "Use SQS", "--role", "intern") == 2
        assert run(
            "decide", ENTRY_ID, "Use Kafka", "--role", "cto",
            "--next-step", "engineer:provision",
        ) == 0

        assert run("advance") == 0
        assert run("advance") == 3

        capsys.readouterr()
        assert run("dump-ledger") == 0
        out = capsys.readouterr().out
        assert f"=== ENTRY {ENTRY_ID} ===" in out
        assert '"decision": "Use Kafka"' in out

        assert run("dump-ledger", "--status", "awaiting_input") == 0
        assert "=== ENTRY" not in capsys.readouterr().out

        assert run("verify") == 0

    def test_invalid_payload(self, run):
        run("start-cycle")
        run("advance")
        assert run("post-entry", "pending", "[1, 2]") == 1
        assert run("post-entry", "pending", json.dumps({"context": "no title"})) == 1

    def test_escalate(self, run, capsys):
        run("start-cycle")
        run("advance")
        run("post-entry", "pending", _payload(id=ENTRY_ID, owner_role="engineer"))
        assert run("escalate", ENTRY_ID, "--reason", "needs budget") == 3
        run("advance")

        capsys.readouterr()
        assert run("escalate", ENTRY_ID, "--reason", "needs budget") == 0
        assert "escalated to cto" in capsys.readouterr().out

    def test_dump_to_file(self, run, tmp_path):
        run("start-cycle")
        run("advance")
        run("post-entry", "approved", _payload(id=ENTRY_ID))
        output = tmp_path / "export.txt"
        assert run("dump-ledger", "--output", str(output)) == 0
        assert output.read_text(encoding="utf-8").startswith(f"=== ENTRY {ENTRY_ID} ===")

    def test_run_cycles(self, run, monkeypatch):
        monkeypatch.setattr(cli.settings, "working_seconds", 0)
        assert run("run", "--cycles", "2") == 0
        assert run("start-cycle") == 0

    def test_store_unavailable(self, run):
        assert run("--database-url", "sqlite:////nonexistent/dir/ledger.db", "start-cycle") == 4
