"""Tests for configuration, amount conversion and private storage."""

from decimal import Decimal
from pathlib import Path

import pytest

from accord.budget import BudgetStore
from accord.config import AccordConfig, DEFAULT_MAX_ROUNDS
from accord.money import amount_to_base_units, limit_to_base_units
from accord.policy import PolicyConditions
from accord.storage import harden_sqlite_files, load_or_create_secret


def test_defaults():
    config = AccordConfig()
    assert config.default_max_rounds == DEFAULT_MAX_ROUNDS
    assert config.budget_dir == config.data_dir / "budgets"
    assert config.audit_path.name == "audit.jsonl"


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("ACCORD_HOME", str(tmp_path / "accord"))
    monkeypatch.setenv("ACCORD_MAX_ROUNDS", "4")
    monkeypatch.setenv("ACCORD_SESSION_TTL", "600")
    monkeypatch.setenv("ACCORD_HIGH_RISK_MULTIPLE", "3")
    monkeypatch.setenv("ACCORD_HOLD_TTL", "120")

    config = AccordConfig.from_env()
    assert config.data_dir == Path(tmp_path / "accord")
    assert config.default_max_rounds == 4
    assert config.session_ttl_seconds == 600
    assert config.high_risk_budget_multiple == 3.0
    assert config.hold_ttl_seconds == 120
    assert BudgetStore.from_config(config).hold_ttl.total_seconds() == 120
    assert config.audit_key_path == tmp_path / ".accord-secrets" / "audit_hmac.key"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"default_max_rounds": 0},
        {"session_ttl_seconds": 0},
        {"high_risk_budget_multiple": 0.5},
        {"amount_decimals": -1},
        {"hold_ttl_seconds": 0},
    ],
)
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValueError):
        AccordConfig(**kwargs)


class TestBaseUnits:
    def test_spend_rounds_up_and_limit_rounds_down(self):
        assert amount_to_base_units("0.0000001", 6) == 1
        assert limit_to_base_units("0.0000019", 6) == 1
        assert amount_to_base_units(Decimal("12.5"), 2) == 1250

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_invalid_amounts(self, value):
        with pytest.raises(ValueError):
            amount_to_base_units(value)

    def test_conditions_from_decimal_amounts(self):
        conditions = PolicyConditions.from_amounts(
            "1.999", "10", "50.5", "100", decimals=2, min_balance_after="0.001"
        )
        assert conditions.max_amount_per_tx == 199
        assert conditions.max_amount_per_week == 5050
        assert conditions.min_balance_after == 1


class TestPrivateStorage:
    def test_secret_created_once_with_private_mode(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ACCORD_TEST_SECRET", raising=False)
        path = tmp_path / "secrets" / "key"
        first = load_or_create_secret(path, "ACCORD_TEST_SECRET")
        assert load_or_create_secret(path, "ACCORD_TEST_SECRET") == first
        assert len(first) == 64
        assert path.stat().st_mode & 0o777 == 0o600
        assert path.parent.stat().st_mode & 0o777 == 0o700

    def test_env_secret_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ACCORD_TEST_SECRET", "override")
        assert load_or_create_secret(tmp_path / "key", "ACCORD_TEST_SECRET") == b"override"
        assert not (tmp_path / "key").exists()

    def test_budget_database_is_private(self, tmp_path):
        store = BudgetStore(tmp_path / "budgets")
        assert store.db_path.stat().st_mode & 0o777 == 0o600
        harden_sqlite_files(tmp_path / "missing.sqlite3")
