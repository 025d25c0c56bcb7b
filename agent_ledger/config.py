"""Agent Ledger — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from agent_ledger.protocol.schema import DeadlockPolicy, PhaseDurations


class LedgerSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Ledger Store ───────────────────────────────────────────
    database_url: str = "sqlite:///agent_ledger.db"
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.5
    ledger_export_path: str = ""

    # ── Roles ──────────────────────────────────────────────────
    roles_file: str = ""
    deadlock_policy: DeadlockPolicy = DeadlockPolicy.MANUAL_REVIEW
    escalation_window_minutes: int = 30

    # ── Cycle timing (seconds per phase) ───────────────────────
    reading_seconds: float = 5.0
    working_seconds: float = 60.0
    deciding_seconds: float = 30.0
    publishing_seconds: float = 5.0
    cycle_count: int = 0  # 0 runs indefinitely

    @property
    def phase_durations(self) -> PhaseDurations:
        return PhaseDurations(
            reading=self.reading_seconds,
            working=self.working_seconds,
            deciding=self.deciding_seconds,
            publishing=self.publishing_seconds,
        )

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"


settings = LedgerSettings()
