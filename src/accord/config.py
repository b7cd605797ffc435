"""Runtime configuration with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_DATA_DIR = Path.home() / ".accord"
DEFAULT_MAX_ROUNDS = 10
DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60
DEFAULT_HIGH_RISK_BUDGET_MULTIPLE = 2.0
DEFAULT_MAX_LEDGER_ENTRIES = 1000
DEFAULT_HOLD_TTL_SECONDS = 60 * 60


@dataclass
class AccordConfig:
    """Configuration shared by the negotiation and policy components."""

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    default_max_rounds: int = DEFAULT_MAX_ROUNDS
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    high_risk_budget_multiple: float = DEFAULT_HIGH_RISK_BUDGET_MULTIPLE
    max_ledger_entries: int = DEFAULT_MAX_LEDGER_ENTRIES
    amount_decimals: int = 0
    hold_ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS

    def __post_init__(self) -> None:
        if self.default_max_rounds < 1:
            raise ValueError("default_max_rounds must be at least 1")
        if self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be positive")
        if self.high_risk_budget_multiple < 1:
            raise ValueError("high_risk_budget_multiple must be >= 1")
        if self.hold_ttl_seconds <= 0:
            raise ValueError("hold_ttl_seconds must be positive")
        if self.amount_decimals < 0:
            raise ValueError("amount_decimals must be non-negative")

    @property
    def budget_dir(self) -> Path:
        return self.data_dir / "budgets"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.data_dir.parent / ".accord-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls) -> AccordConfig:
        kwargs: dict = {}
        home = os.getenv("ACCORD_HOME")
        if home:
            kwargs["data_dir"] = Path(home).expanduser()
        max_rounds = os.getenv("ACCORD_MAX_ROUNDS")
        if max_rounds:
            kwargs["default_max_rounds"] = int(max_rounds)
        ttl = os.getenv("ACCORD_SESSION_TTL")
        if ttl:
            kwargs["session_ttl_seconds"] = int(ttl)
        multiple = os.getenv("ACCORD_HIGH_RISK_MULTIPLE")
        if multiple:
            kwargs["high_risk_budget_multiple"] = float(multiple)
        hold_ttl = os.getenv("ACCORD_HOLD_TTL")
        if hold_ttl:
            kwargs["hold_ttl_seconds"] = int(hold_ttl)
        return cls(**kwargs)
