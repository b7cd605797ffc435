"""
Agent policies, execution requests, and policy signatures.

An AgentPolicy is immutable once signed: edits produce a new version,
which PolicyChangeClassifier compares against the old one.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .money import amount_to_base_units, limit_to_base_units
from .signing import Signer, canonical_json_bytes, verify_signature


_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class PolicyScope(str, Enum):
    AUTO_PAYMENT = "auto_payment"
    NEGOTIATION = "negotiation"
    DELEGATED_NEGOTIATION = "delegated_negotiation"
    COMMITMENT = "commitment"
    FULL = "full"


# Broadness: higher rank grants more. Equal ranks are not comparable as widening.
SCOPE_RANK: dict[PolicyScope, int] = {
    PolicyScope.AUTO_PAYMENT: 1,
    PolicyScope.NEGOTIATION: 2,
    PolicyScope.COMMITMENT: 3,
    PolicyScope.DELEGATED_NEGOTIATION: 3,
    PolicyScope.FULL: 10,
}


def scope_covers(policy_scope: PolicyScope, request_scope: PolicyScope) -> bool:
    """True if a policy of `policy_scope` governs requests of `request_scope`."""
    if policy_scope == PolicyScope.FULL or policy_scope == request_scope:
        return True
    return policy_scope == PolicyScope.DELEGATED_NEGOTIATION and request_scope == PolicyScope.NEGOTIATION


class EscalationAction(str, Enum):
    BLOCK = "block"
    ASK_PARENT_AGENT = "ask_parent_agent"
    ASK_HUMAN = "ask_human"


class ActionKind(str, Enum):
    TRANSFER = "transfer"
    SEND_TRANSACTION = "send_transaction"
    SIGN_PERSONAL = "sign_personal"
    SIGN_TYPED_DATA = "sign_typed_data"


PAYMENT_ACTIONS = frozenset({ActionKind.TRANSFER, ActionKind.SEND_TRANSACTION})


def parse_hhmm(value: str) -> Optional[int]:
    """Parse "HH:MM" to minutes since midnight; None if malformed."""
    match = _HHMM_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


@dataclass(frozen=True)
class TimeWindow:
    """Daily window in local HH:MM. start > end spans midnight."""

    start: str
    end: str
    tz: Optional[str] = None


@dataclass(frozen=True)
class PolicyConditions:
    max_amount_per_tx: int
    max_amount_per_day: int
    max_amount_per_week: int
    max_amount_per_month: int
    allow_list_addresses: tuple[str, ...] = ()
    allow_list_chains: tuple[str, ...] = ()
    allow_list_methods: tuple[str, ...] = ()
    min_balance_after: int = 0
    require_review_before_first_pay: bool = False
    time_window: Optional[TimeWindow] = None

    def __post_init__(self) -> None:
        for name in (
            "max_amount_per_tx",
            "max_amount_per_day",
            "max_amount_per_week",
            "max_amount_per_month",
            "min_balance_after",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")
        # Accept lists from callers; store tuples so the value object stays hashable.
        for name in ("allow_list_addresses", "allow_list_chains", "allow_list_methods"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @classmethod
    def from_amounts(
        cls,
        max_per_tx: Decimal | int | str,
        max_per_day: Decimal | int | str,
        max_per_week: Decimal | int | str,
        max_per_month: Decimal | int | str,
        decimals: int = 0,
        min_balance_after: Decimal | int | str = 0,
        **kwargs: Any,
    ) -> PolicyConditions:
        """Build conditions from decimal amounts; caps round down, the balance floor rounds up."""
        return cls(
            max_amount_per_tx=limit_to_base_units(max_per_tx, decimals),
            max_amount_per_day=limit_to_base_units(max_per_day, decimals),
            max_amount_per_week=limit_to_base_units(max_per_week, decimals),
            max_amount_per_month=limit_to_base_units(max_per_month, decimals),
            min_balance_after=amount_to_base_units(min_balance_after, decimals),
            **kwargs,
        )

    @property
    def caps(self) -> dict[str, int]:
        return {
            "max_amount_per_tx": self.max_amount_per_tx,
            "max_amount_per_day": self.max_amount_per_day,
            "max_amount_per_week": self.max_amount_per_week,
            "max_amount_per_month": self.max_amount_per_month,
        }


@dataclass(frozen=True)
class AgentPolicy:
    id: str
    agent_id: str
    scope: PolicyScope
    conditions: PolicyConditions
    created_at: datetime
    escalation: EscalationAction = EscalationAction.ASK_HUMAN
    agent_label: str = ""
    parent_agent_id: Optional[str] = None
    vendor_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    signature: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def signing_payload(self) -> dict[str, Any]:
        """Every field except the signature, JSON-ready."""
        conditions = asdict(self.conditions)
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "agent_label": self.agent_label,
            "scope": self.scope.value,
            "conditions": conditions,
            "escalation": self.escalation.value,
            "parent_agent_id": self.parent_agent_id,
            "vendor_id": self.vendor_id,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at) if self.expires_at else None,
        }

    def signing_message(self) -> str:
        return canonical_json_bytes(self.signing_payload()).decode("utf-8")


def sign_policy(policy: AgentPolicy, signer: Signer, key_ref: str) -> AgentPolicy:
    """Return a signed copy of `policy`."""
    return replace(policy, signature=signer.sign(key_ref, policy.signing_message()))


def verify_policy(policy: AgentPolicy, owner_address: str) -> tuple[bool, str]:
    if not policy.signature:
        return False, "Policy is unsigned"
    if not verify_signature(owner_address, policy.signing_message(), policy.signature):
        return False, f"Signer mismatch: expected {owner_address}"
    return True, "Valid policy"


@dataclass(frozen=True)
class PolicyContext:
    """What a provider may use to narrow the policies it returns."""

    agent_id: Optional[str] = None
    to_address: Optional[str] = None
    amount: Optional[int] = None
    chain_id: Optional[str] = None
    method: Optional[str] = None
    current_time: Optional[datetime] = None


@dataclass(frozen=True)
class ExecutionAction:
    kind: ActionKind
    amount: int = 0
    to_address: Optional[str] = None
    chain_id: Optional[str] = None
    method: Optional[str] = None
    token: str = "native"
    balance_before: Optional[int] = None

    @property
    def effective_method(self) -> str:
        """Contract method for send_transaction, otherwise the action kind itself."""
        return self.method or self.kind.value

    @property
    def is_payment(self) -> bool:
        return self.kind in PAYMENT_ACTIONS


@dataclass(frozen=True)
class ExecutionRequest:
    request_id: str
    agent_id: str
    scope: PolicyScope
    action: ExecutionAction
    policy_id: Optional[str] = None
    reason: Optional[str] = None

    def context(self, now: datetime) -> PolicyContext:
        return PolicyContext(
            agent_id=self.agent_id,
            to_address=self.action.to_address,
            amount=self.action.amount,
            chain_id=self.action.chain_id,
            method=self.action.effective_method,
            current_time=now,
        )


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    request_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tx_hash: Optional[str] = None
    signed_payload: Optional[str] = None
    error: Optional[str] = None
    amount: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "request_id": self.request_id,
            "timestamp": _iso(self.timestamp),
            "tx_hash": self.tx_hash,
            "signed_payload": self.signed_payload,
            "error": self.error,
            "amount": self.amount,
        }


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
