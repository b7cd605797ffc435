"""Classify edits between two versions of a policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .config import DEFAULT_HIGH_RISK_BUDGET_MULTIPLE
from .policy import SCOPE_RANK, AgentPolicy


class CriticalPolicyChangeType(str, Enum):
    BUDGET_INCREASE = "budget_increase"
    MIN_BALANCE_LOWER = "min_balance_lower"
    ALLOWLIST_ADDRESS_ADD = "allowlist_address_add"
    ALLOWLIST_ADDRESS_REMOVE_ALL = "allowlist_address_remove_all"
    SCOPE_ESCALATION = "scope_escalation"
    TIME_WINDOW_REMOVE = "time_window_remove"
    FIRST_PAY_REVIEW_DISABLE = "first_pay_review_disable"
    EXPIRATION_EXTEND = "expiration_extend"


class PolicyApprovalLevel(str, Enum):
    AUTO = "auto"
    REVIEW = "review"
    BIOMETRIC = "biometric"


@dataclass(frozen=True)
class PolicyChangeClassification:
    requires_escalation: bool
    approval_level: PolicyApprovalLevel
    critical_changes: tuple[CriticalPolicyChangeType, ...] = ()
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "requires_escalation": self.requires_escalation,
            "approval_level": self.approval_level.value,
            "critical_changes": [c.value for c in self.critical_changes],
            "reasons": list(self.reasons),
        }


AUTO_CLASSIFICATION = PolicyChangeClassification(
    requires_escalation=False,
    approval_level=PolicyApprovalLevel.AUTO,
)


class PolicyChangeClassifier:
    """
    Pure diff of an old and a new policy version.

    A cap increase demands biometric approval only when the new cap goes
    beyond `high_risk_multiple` times the old one, or the old cap was zero.
    Scope escalation and clearing the address allow list always do.
    """

    def __init__(self, high_risk_multiple: float = DEFAULT_HIGH_RISK_BUDGET_MULTIPLE):
        if high_risk_multiple < 1:
            raise ValueError("high_risk_multiple must be >= 1")
        self.high_risk_multiple = high_risk_multiple

    def classify(self, old: AgentPolicy, new: AgentPolicy) -> PolicyChangeClassification:
        changes: list[CriticalPolicyChangeType] = []
        reasons: list[str] = []
        biometric = False
        old_c = old.conditions
        new_c = new.conditions

        new_caps = new_c.caps
        for name, old_cap in old_c.caps.items():
            new_cap = new_caps[name]
            if new_cap > old_cap:
                changes.append(CriticalPolicyChangeType.BUDGET_INCREASE)
                reasons.append(f"{name}: {old_cap} -> {new_cap}")
                if old_cap == 0 or new_cap > old_cap * self.high_risk_multiple:
                    biometric = True

        if new_c.min_balance_after < old_c.min_balance_after:
            changes.append(CriticalPolicyChangeType.MIN_BALANCE_LOWER)
            reasons.append(
                f"min_balance_after lowered: {old_c.min_balance_after} -> {new_c.min_balance_after}"
            )

        old_addresses = set(old_c.allow_list_addresses)
        if old_addresses and not new_c.allow_list_addresses:
            changes.append(CriticalPolicyChangeType.ALLOWLIST_ADDRESS_REMOVE_ALL)
            reasons.append("Address allowlist cleared (was restricted, now open to all)")
            biometric = True
        else:
            for address in new_c.allow_list_addresses:
                if address not in old_addresses:
                    changes.append(CriticalPolicyChangeType.ALLOWLIST_ADDRESS_ADD)
                    reasons.append(f"New address added to allowlist: {address}")

        if SCOPE_RANK.get(new.scope, 0) > SCOPE_RANK.get(old.scope, 0):
            changes.append(CriticalPolicyChangeType.SCOPE_ESCALATION)
            reasons.append(f"Scope broadened: {old.scope.value} -> {new.scope.value}")
            biometric = True

        if old_c.time_window is not None and new_c.time_window is None:
            changes.append(CriticalPolicyChangeType.TIME_WINDOW_REMOVE)
            reasons.append(
                f"Time window restriction removed (was {old_c.time_window.start}-{old_c.time_window.end})"
            )

        if old_c.require_review_before_first_pay and not new_c.require_review_before_first_pay:
            changes.append(CriticalPolicyChangeType.FIRST_PAY_REVIEW_DISABLE)
            reasons.append("First-payment human review disabled")

        if old.expires_at is not None:
            if new.expires_at is None:
                changes.append(CriticalPolicyChangeType.EXPIRATION_EXTEND)
                reasons.append(f"Expiration removed (was {old.expires_at.isoformat()})")
            elif new.expires_at > old.expires_at:
                changes.append(CriticalPolicyChangeType.EXPIRATION_EXTEND)
                reasons.append(
                    f"Expiration extended: {old.expires_at.isoformat()} -> {new.expires_at.isoformat()}"
                )

        unique = tuple(dict.fromkeys(changes))
        if not unique:
            return AUTO_CLASSIFICATION

        level = PolicyApprovalLevel.BIOMETRIC if biometric else PolicyApprovalLevel.REVIEW
        return PolicyChangeClassification(
            requires_escalation=True,
            approval_level=level,
            critical_changes=unique,
            reasons=tuple(reasons),
        )
