"""Tests for matching execution requests against policy conditions."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from accord.budget import AgentBudgetTracker, BudgetHold
from accord.policy import (
    ActionKind,
    AgentPolicy,
    ExecutionAction,
    ExecutionRequest,
    PolicyConditions,
    PolicyScope,
    TimeWindow,
)
from accord.policy_evaluator import PolicyEvaluator, within_time_window


NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


def make_policy(scope=PolicyScope.AUTO_PAYMENT, expires_at=None, **conditions):
    caps = dict(
        max_amount_per_tx=50,
        max_amount_per_day=100,
        max_amount_per_week=500,
        max_amount_per_month=1000,
    )
    caps.update(conditions)
    return AgentPolicy(
        id="p-1",
        agent_id="agent-1",
        scope=scope,
        conditions=PolicyConditions(**caps),
        created_at=NOW - timedelta(days=1),
        expires_at=expires_at,
    )


def make_request(amount=10, kind=ActionKind.TRANSFER, scope=PolicyScope.AUTO_PAYMENT, **action):
    return ExecutionRequest(
        request_id="r-1",
        agent_id="agent-1",
        scope=scope,
        action=ExecutionAction(kind=kind, amount=amount, **action),
    )


def tracker(daily=0, weekly=0, monthly=0):
    t = AgentBudgetTracker.fresh("agent-1", NOW)
    t.daily_spent, t.weekly_spent, t.monthly_spent = daily, weekly, monthly
    return t


@pytest.fixture
def evaluator():
    return PolicyEvaluator()


class TestCumulativeCaps:
    def test_daily_cap_denial_reports_remaining(self, evaluator):
        result = evaluator.evaluate(make_policy(), make_request(30), tracker(daily=80), NOW)
        assert not result.allowed
        assert result.violated_rule == "maxAmountPerDay"
        assert result.violated_limit == "100"
        assert result.remaining_daily == 20

    def test_allowed_reports_remaining_after_spend(self, evaluator):
        result = evaluator.evaluate(make_policy(), make_request(30), tracker(daily=40, weekly=40, monthly=40), NOW)
        assert result.allowed
        assert result.violated_rule is None
        assert result.remaining_daily == 30
        assert result.remaining_weekly == 430
        assert result.remaining_monthly == 930

    def test_weekly_and_monthly_caps(self, evaluator):
        weekly = evaluator.evaluate(make_policy(), make_request(10), tracker(weekly=495), NOW)
        assert weekly.violated_rule == "maxAmountPerWeek"
        monthly = evaluator.evaluate(make_policy(), make_request(10), tracker(monthly=995), NOW)
        assert monthly.violated_rule == "maxAmountPerMonth"

    def test_holds_count_against_caps(self, evaluator):
        t = tracker(daily=40)
        t.place_hold(BudgetHold("r-0", "agent-1", "p-1", 50, NOW))
        result = evaluator.evaluate(make_policy(), make_request(20), t, NOW)
        assert result.violated_rule == "maxAmountPerDay"
        assert result.remaining_daily == 10

    def test_pending_reset_applied_before_check(self, evaluator):
        t = tracker(daily=95)
        result = evaluator.evaluate(make_policy(), make_request(30), t, NOW + timedelta(days=1))
        assert result.allowed
        assert t.daily_spent == 0

    def test_per_tx_cap(self, evaluator):
        result = evaluator.evaluate(make_policy(), make_request(60), tracker(), NOW)
        assert result.violated_rule == "maxAmountPerTx"
        assert result.violated_actual == "60"


class TestAllowLists:
    def test_empty_lists_are_unrestricted(self, evaluator):
        request = make_request(to_address="0xAnyone", chain_id="8453", method="transfer")
        assert evaluator.evaluate(make_policy(), request, tracker(), NOW).allowed

    def test_address_not_listed(self, evaluator):
        policy = make_policy(allow_list_addresses=["0xAAA"])
        result = evaluator.evaluate(policy, make_request(to_address="0xBBB"), tracker(), NOW)
        assert result.violated_rule == "allowListAddresses"
        assert result.violated_actual == "0xBBB"

    def test_address_match_ignores_case(self, evaluator):
        policy = make_policy(allow_list_addresses=["0xAbC"])
        assert evaluator.evaluate(policy, make_request(to_address="0xabc"), tracker(), NOW).allowed

    def test_chain_not_listed(self, evaluator):
        policy = make_policy(allow_list_chains=["8453"])
        result = evaluator.evaluate(policy, make_request(chain_id="1"), tracker(), NOW)
        assert result.violated_rule == "allowListChains"

    def test_method_defaults_to_action_kind(self, evaluator):
        policy = make_policy(allow_list_methods=["transfer"])
        assert evaluator.evaluate(policy, make_request(), tracker(), NOW).allowed
        request = make_request(kind=ActionKind.SEND_TRANSACTION, method="approve")
        assert evaluator.evaluate(policy, request, tracker(), NOW).violated_rule == "allowListMethods"

    def test_allow_list_checked_before_per_tx_cap(self, evaluator):
        policy = make_policy(allow_list_addresses=["0xAAA"])
        result = evaluator.evaluate(policy, make_request(999, to_address="0xBBB"), tracker(), NOW)
        assert result.violated_rule == "allowListAddresses"


class TestTimeWindow:
    @pytest.mark.parametrize(
        "hour, minute, inside",
        [(23, 30, True), (5, 59, True), (6, 0, True), (12, 0, False), (21, 59, False)],
    )
    def test_window_spanning_midnight(self, hour, minute, inside):
        window = TimeWindow(start="22:00", end="06:00", tz="UTC")
        now = datetime(2026, 3, 11, hour, minute, tzinfo=timezone.utc)
        assert within_time_window(window, now) is inside

    def test_daytime_window(self):
        window = TimeWindow(start="09:00", end="17:00", tz="UTC")
        assert within_time_window(window, NOW)
        assert not within_time_window(window, NOW.replace(hour=18))

    def test_window_uses_its_timezone(self):
        window = TimeWindow(start="09:00", end="17:00", tz="America/New_York")
        # 12:00 UTC is 08:00 in New York in mid-March (EDT)
        assert not within_time_window(window, NOW)
        assert within_time_window(window, NOW.replace(hour=14))

    def test_denial_reports_time_in_window_zone(self, evaluator):
        window = TimeWindow(start="09:00", end="17:00", tz="America/New_York")
        result = evaluator.evaluate(make_policy(time_window=window), make_request(), tracker(), NOW)
        assert result.violated_rule == "timeWindow"
        assert result.violated_actual == "08:00"
        assert result.violated_limit == "09:00-17:00"

    @pytest.mark.parametrize(
        "window",
        [
            TimeWindow(start="25:00", end="06:00", tz="UTC"),
            TimeWindow(start="9am", end="5pm", tz="UTC"),
            TimeWindow(start="09:00", end="17:00", tz="Mars/Olympus_Mons"),
        ],
    )
    def test_malformed_window_denies(self, evaluator, window):
        policy = make_policy(time_window=window)
        result = evaluator.evaluate(policy, make_request(), tracker(), NOW)
        assert result.violated_rule == "timeWindow"


class TestOtherRules:
    def test_scope_mismatch(self, evaluator):
        request = make_request(scope=PolicyScope.COMMITMENT)
        result = evaluator.evaluate(make_policy(), request, tracker(), NOW)
        assert result.violated_rule == "scope"

    def test_full_scope_covers_everything(self, evaluator):
        policy = make_policy(scope=PolicyScope.FULL)
        for scope in PolicyScope:
            assert evaluator.evaluate(policy, make_request(scope=scope), tracker(), NOW).allowed

    def test_delegated_negotiation_covers_negotiation(self, evaluator):
        policy = make_policy(scope=PolicyScope.DELEGATED_NEGOTIATION)
        request = make_request(0, kind=ActionKind.SIGN_PERSONAL, scope=PolicyScope.NEGOTIATION)
        assert evaluator.evaluate(policy, request, tracker(), NOW).allowed

    def test_expired_policy(self, evaluator):
        policy = make_policy(expires_at=NOW - timedelta(seconds=1))
        assert evaluator.evaluate(policy, make_request(), tracker(), NOW).violated_rule == "expiresAt"

    def test_non_positive_payment_denied(self, evaluator):
        result = evaluator.evaluate(make_policy(), make_request(0), tracker(), NOW)
        assert result.violated_rule == "amount"

    def test_zero_amount_signature_allowed(self, evaluator):
        request = make_request(0, kind=ActionKind.SIGN_TYPED_DATA)
        assert evaluator.evaluate(make_policy(), request, tracker(), NOW).allowed

    def test_first_payment_needs_review(self, evaluator):
        policy = make_policy(require_review_before_first_pay=True)
        t = tracker()
        assert evaluator.evaluate(policy, make_request(), t, NOW).violated_rule == "requireReviewBeforeFirstPay"
        t.paid_policy_ids.add("p-1")
        assert evaluator.evaluate(policy, make_request(), t, NOW).allowed

    def test_min_balance_after(self, evaluator):
        policy = make_policy(min_balance_after=80)
        low = evaluator.evaluate(policy, make_request(30, balance_before=100), tracker(), NOW)
        assert low.violated_rule == "minBalanceAfter"
        assert low.violated_actual == "70"
        assert evaluator.evaluate(policy, make_request(30, balance_before=120), tracker(), NOW).allowed

    def test_min_balance_skipped_without_balance(self, evaluator):
        policy = make_policy(min_balance_after=80)
        assert evaluator.evaluate(policy, make_request(30), tracker(), NOW).allowed

    def test_conditions_from_decimal_amounts(self):
        conditions = PolicyConditions.from_amounts("1.999", "10.5", 50, 100, decimals=2, min_balance_after="0.001")
        assert conditions.max_amount_per_tx == 199
        assert conditions.max_amount_per_day == 1050
        assert conditions.min_balance_after == 1

    def test_negative_cap_rejected(self):
        with pytest.raises(ValueError):
            replace(make_policy().conditions, max_amount_per_day=-1)
