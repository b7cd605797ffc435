"""Tests for budget tracking and window resets."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from accord.budget import (
    AgentBudgetTracker,
    BudgetHold,
    BudgetStore,
    BudgetTransaction,
    day_start,
    month_start,
    week_start,
)


# Wednesday
NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


def make_tx(request_id, amount, policy_id="p-1", agent_id="agent-1", when=NOW):
    return BudgetTransaction(
        request_id=request_id,
        agent_id=agent_id,
        policy_id=policy_id,
        amount=amount,
        timestamp=when,
    )


class TestWindowBoundaries:
    def test_day_start_is_utc_midnight(self):
        local = datetime(2026, 3, 11, 1, 30, tzinfo=timezone(timedelta(hours=5)))
        assert day_start(local) == datetime(2026, 3, 10, tzinfo=timezone.utc)

    def test_week_start_is_monday(self):
        assert week_start(NOW) == datetime(2026, 3, 9, tzinfo=timezone.utc)
        sunday = datetime(2026, 3, 15, 23, 59, tzinfo=timezone.utc)
        assert week_start(sunday) == datetime(2026, 3, 9, tzinfo=timezone.utc)

    def test_month_start(self):
        assert month_start(NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestResets:
    def _spent_tracker(self):
        tracker = AgentBudgetTracker.fresh("agent-1", NOW)
        tracker.daily_spent = 10
        tracker.weekly_spent = 20
        tracker.monthly_spent = 30
        return tracker

    def test_fresh_tracker_has_no_pending_reset(self):
        tracker = AgentBudgetTracker.fresh("agent-1", NOW)
        assert tracker.apply_resets(NOW) == []

    def test_next_day_resets_daily_only(self):
        tracker = self._spent_tracker()
        reset = tracker.apply_resets(NOW + timedelta(days=1))
        assert reset == ["daily"]
        assert (tracker.daily_spent, tracker.weekly_spent, tracker.monthly_spent) == (0, 20, 30)

    def test_next_monday_resets_day_and_week(self):
        tracker = self._spent_tracker()
        reset = tracker.apply_resets(datetime(2026, 3, 16, 0, 1, tzinfo=timezone.utc))
        assert reset == ["daily", "weekly"]
        assert tracker.monthly_spent == 30

    def test_new_month_resets_all_three(self):
        tracker = self._spent_tracker()
        reset = tracker.apply_resets(datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc))
        assert set(reset) == {"daily", "weekly", "monthly"}
        assert (tracker.daily_spent, tracker.weekly_spent, tracker.monthly_spent) == (0, 0, 0)

    def test_resets_are_idempotent(self):
        later = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)
        once = self._spent_tracker()
        once.apply_resets(later)
        twice = self._spent_tracker()
        twice.apply_resets(later)
        assert twice.apply_resets(later) == []
        assert (once.daily_spent, once.weekly_spent, once.monthly_spent) == (
            twice.daily_spent,
            twice.weekly_spent,
            twice.monthly_spent,
        )
        assert once.last_reset_daily == twice.last_reset_daily == day_start(later)
        assert once.last_reset_weekly == twice.last_reset_weekly
        assert once.last_reset_monthly == twice.last_reset_monthly

    def test_spend_must_be_positive(self):
        tracker = AgentBudgetTracker.fresh("agent-1", NOW)
        with pytest.raises(ValueError):
            tracker.record_spend(make_tx("r-0", 0), NOW)


class TestBudgetStore:
    def test_spend_persists(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.record_spend(make_tx("r-1", 25), NOW)

        reloaded = BudgetStore(tmp_path).get_tracker("agent-1", NOW)
        assert reloaded.daily_spent == 25
        assert reloaded.monthly_spent == 25
        assert [tx.request_id for tx in reloaded.transactions] == ["r-1"]
        assert reloaded.paid_policy_ids == {"p-1"}

    def test_failed_block_rolls_back(self, tmp_path):
        store = BudgetStore(tmp_path)
        with pytest.raises(RuntimeError):
            with store.transaction("agent-1", NOW) as txn:
                txn.tracker.record_spend(make_tx("r-1", 25), NOW)
                raise RuntimeError("boom")

        tracker = store.get_tracker("agent-1", NOW)
        assert tracker.daily_spent == 0
        assert store.recent_transactions("agent-1") == []

    def test_holds_persist_and_release(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.place_hold(BudgetHold("r-1", "agent-1", "p-1", 40, NOW))

        assert store.get_tracker("agent-1", NOW).held_amount == 40

        with store.transaction("agent-1", NOW) as txn:
            hold = txn.tracker.release_hold("r-1")
        assert hold.amount == 40
        assert store.get_tracker("agent-1", NOW).holds == {}

    def test_holds_lapse_after_ttl(self, tmp_path):
        store = BudgetStore(tmp_path, hold_ttl_seconds=60)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.place_hold(BudgetHold("r-1", "agent-1", "p-1", 40, NOW))
            txn.tracker.place_hold(BudgetHold("r-2", "agent-1", "p-1", 5, NOW + timedelta(seconds=90)))

        with store.transaction("agent-1", NOW + timedelta(minutes=2)) as txn:
            assert [h.request_id for h in txn.expired_holds] == ["r-1"]
            assert set(txn.tracker.holds) == {"r-2"}
        assert store.get_tracker("agent-1", NOW + timedelta(minutes=2)).held_amount == 5

    def test_hold_ttl_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            BudgetStore(tmp_path, hold_ttl_seconds=0)

    def test_agent_for_request(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.place_hold(BudgetHold("r-1", "agent-1", "p-1", 40, NOW))
        with store.transaction("agent-2", NOW) as txn:
            txn.mark_recorded("r-2", "p-2", NOW)

        assert store.agent_for_request("r-1") == "agent-1"
        assert store.agent_for_request("r-2") == "agent-2"
        assert store.agent_for_request("r-3") is None

    def test_counters_reset_on_load(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.record_spend(make_tx("r-1", 25), NOW)

        tomorrow = store.get_tracker("agent-1", NOW + timedelta(days=1))
        assert tomorrow.daily_spent == 0
        assert tomorrow.weekly_spent == 25

    def test_recorded_executions(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            assert not txn.is_recorded("r-1")
            txn.mark_recorded("r-1", "p-1", NOW)
        with store.transaction("agent-1", NOW) as txn:
            assert txn.is_recorded("r-1")

    def test_ledger_window_is_bounded(self, tmp_path):
        store = BudgetStore(tmp_path, max_ledger_entries=3)
        for i in range(5):
            with store.transaction("agent-1", NOW) as txn:
                txn.tracker.record_spend(make_tx(f"r-{i}", 1, when=NOW + timedelta(seconds=i)), NOW)

        tracker = store.get_tracker("agent-1", NOW)
        assert [tx.request_id for tx in tracker.transactions] == ["r-2", "r-3", "r-4"]
        assert tracker.daily_spent == 5
        assert len(store.recent_transactions("agent-1", limit=10)) == 5

    def test_reset_zeroes_counters_and_holds(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.record_spend(make_tx("r-1", 25), NOW)
            txn.tracker.place_hold(BudgetHold("r-2", "agent-1", "p-1", 5, NOW))

        tracker = store.reset("agent-1", NOW)
        assert tracker.daily_spent == 0
        assert tracker.holds == {}
        assert len(store.recent_transactions("agent-1")) == 1

    def test_agents_are_independent(self, tmp_path):
        store = BudgetStore(tmp_path)
        with store.transaction("agent-1", NOW) as txn:
            txn.tracker.record_spend(make_tx("r-1", 25), NOW)
        assert store.get_tracker("agent-2", NOW).daily_spent == 0

    def test_concurrent_updates_are_serialized(self, tmp_path):
        store = BudgetStore(tmp_path)

        def spend(i):
            with store.transaction("agent-1", NOW) as txn:
                txn.tracker.record_spend(make_tx(f"r-{i}", 1), NOW)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(spend, range(40)))

        tracker = store.get_tracker("agent-1", NOW)
        assert tracker.daily_spent == 40
        assert len(store.recent_transactions("agent-1", limit=100)) == 40
