"""
Match one execution request against one policy's conditions.

Checks run in a fixed order and stop at the first violation. Violations
are returned as BudgetCheckResult values, never raised.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .budget import AgentBudgetTracker, BudgetCheckResult
from .policy import AgentPolicy, ExecutionRequest, TimeWindow, parse_hhmm, scope_covers


# Rule names reported in BudgetCheckResult.violated_rule
RULE_EXPIRES_AT = "expiresAt"
RULE_SCOPE = "scope"
RULE_AMOUNT = "amount"
RULE_TIME_WINDOW = "timeWindow"
RULE_ALLOW_ADDRESSES = "allowListAddresses"
RULE_ALLOW_CHAINS = "allowListChains"
RULE_ALLOW_METHODS = "allowListMethods"
RULE_FIRST_PAY_REVIEW = "requireReviewBeforeFirstPay"
RULE_MIN_BALANCE = "minBalanceAfter"
RULE_MAX_PER_TX = "maxAmountPerTx"
RULE_MAX_PER_DAY = "maxAmountPerDay"
RULE_MAX_PER_WEEK = "maxAmountPerWeek"
RULE_MAX_PER_MONTH = "maxAmountPerMonth"


def window_local_time(window: TimeWindow, now: datetime) -> Optional[datetime]:
    """`now` in the window's timezone (system local when unset); None if the zone is unknown."""
    if not window.tz:
        return now.astimezone()
    try:
        return now.astimezone(ZoneInfo(window.tz))
    except (ZoneInfoNotFoundError, ValueError):
        return None


def within_time_window(window: TimeWindow, now: datetime) -> bool:
    """
    True if `now` falls inside the window, bounds inclusive.

    The window is read in its own timezone, or the system local zone when
    it names none. A window whose start is after its end spans midnight.
    Malformed bounds or an unknown timezone never match.
    """
    start = parse_hhmm(window.start)
    end = parse_hhmm(window.end)
    local = window_local_time(window, now)
    if start is None or end is None or local is None:
        return False
    minutes = local.hour * 60 + local.minute
    if start <= end:
        return start <= minutes <= end
    return minutes >= start or minutes <= end


class PolicyEvaluator:
    """Stateless: all inputs are passed to evaluate()."""

    def evaluate(
        self,
        policy: AgentPolicy,
        request: ExecutionRequest,
        tracker: AgentBudgetTracker,
        now: datetime,
    ) -> BudgetCheckResult:
        """
        Evaluate `request` under `policy` against `tracker`'s counters.

        Pending window resets are applied to the tracker first. Cumulative
        caps count spent, held, and requested amounts together.
        """
        tracker.apply_resets(now)
        conditions = policy.conditions
        action = request.action
        amount = action.amount

        remaining = self._remaining(policy, tracker, 0)

        if policy.is_expired(now):
            return self._deny(remaining, RULE_EXPIRES_AT, now.isoformat(), policy.expires_at.isoformat())

        if not scope_covers(policy.scope, request.scope):
            return self._deny(remaining, RULE_SCOPE, request.scope.value, policy.scope.value)

        if action.is_payment and amount <= 0:
            return self._deny(remaining, RULE_AMOUNT, str(amount), "> 0")

        if conditions.time_window is not None and not within_time_window(conditions.time_window, now):
            window = conditions.time_window
            local = window_local_time(window, now)
            return self._deny(
                remaining,
                RULE_TIME_WINDOW,
                local.strftime("%H:%M") if local is not None else f"unknown timezone {window.tz}",
                f"{window.start}-{window.end}",
            )

        if conditions.allow_list_addresses and action.to_address:
            allowed = {a.lower() for a in conditions.allow_list_addresses}
            if action.to_address.lower() not in allowed:
                return self._deny(remaining, RULE_ALLOW_ADDRESSES, action.to_address, "not in allowlist")

        if conditions.allow_list_chains and action.chain_id:
            if action.chain_id not in conditions.allow_list_chains:
                return self._deny(remaining, RULE_ALLOW_CHAINS, action.chain_id, "not in allowlist")

        if conditions.allow_list_methods:
            method = action.effective_method
            if method not in conditions.allow_list_methods:
                return self._deny(remaining, RULE_ALLOW_METHODS, method, "not in allowlist")

        if (
            conditions.require_review_before_first_pay
            and action.is_payment
            and policy.id not in tracker.paid_policy_ids
        ):
            return self._deny(remaining, RULE_FIRST_PAY_REVIEW, "first_payment", "review_required")

        if conditions.min_balance_after > 0 and action.balance_before is not None:
            projected = action.balance_before - amount
            if projected < conditions.min_balance_after:
                return self._deny(
                    remaining, RULE_MIN_BALANCE, str(projected), str(conditions.min_balance_after)
                )

        if amount > conditions.max_amount_per_tx:
            return self._deny(remaining, RULE_MAX_PER_TX, str(amount), str(conditions.max_amount_per_tx))

        held = tracker.held_amount
        for rule, spent, limit in (
            (RULE_MAX_PER_DAY, tracker.daily_spent, conditions.max_amount_per_day),
            (RULE_MAX_PER_WEEK, tracker.weekly_spent, conditions.max_amount_per_week),
            (RULE_MAX_PER_MONTH, tracker.monthly_spent, conditions.max_amount_per_month),
        ):
            projected = spent + held + amount
            if projected > limit:
                return self._deny(remaining, rule, str(projected), str(limit))

        return BudgetCheckResult(allowed=True, **self._remaining(policy, tracker, amount))

    def _remaining(self, policy: AgentPolicy, tracker: AgentBudgetTracker, amount: int) -> dict[str, int]:
        conditions = policy.conditions
        used = tracker.held_amount + amount
        return {
            "remaining_daily": max(0, conditions.max_amount_per_day - tracker.daily_spent - used),
            "remaining_weekly": max(0, conditions.max_amount_per_week - tracker.weekly_spent - used),
            "remaining_monthly": max(0, conditions.max_amount_per_month - tracker.monthly_spent - used),
        }

    def _deny(
        self,
        remaining: dict[str, int],
        rule: str,
        actual: str,
        limit: Optional[str],
    ) -> BudgetCheckResult:
        return BudgetCheckResult(
            allowed=False,
            violated_rule=rule,
            violated_actual=actual,
            violated_limit=limit,
            **remaining,
        )
