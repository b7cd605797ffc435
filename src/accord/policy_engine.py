"""
Policy engine: decides whether an agent may execute autonomously.

Policies come from registered providers (one per vendor id) and from
direct add_policy() calls. Evaluation and the resulting budget hold for
one agent happen inside a single BudgetStore transaction; provider
queries happen before it, outside any lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from .audit import AuditRecorder, EventType, ExecutionRecord, UsageSnapshot
from .budget import BudgetCheckResult, BudgetHold, BudgetStore, BudgetTransaction
from .config import AccordConfig
from .errors import DuplicateVendorError, PolicyNotFoundError, PolicySignatureError
from .policy import (
    SCOPE_RANK,
    AgentPolicy,
    EscalationAction,
    ExecutionRequest,
    ExecutionResult,
    PolicyContext,
    PolicyScope,
    scope_covers,
    verify_policy,
)
from .policy_change import PolicyChangeClassification, PolicyChangeClassifier, AUTO_CLASSIFICATION
from .policy_evaluator import PolicyEvaluator

logger = logging.getLogger(__name__)


class PolicyProvider(Protocol):
    """
    External source of policies for one vendor.

    Providers may also expose on_policies_changed(callback); the engine
    subscribes at registration and drops its cached copy when notified.
    """

    vendor_id: str

    def get_policies(self, scope: PolicyScope, context: Optional[PolicyContext] = None) -> list[AgentPolicy]: ...


@dataclass(frozen=True)
class PolicyCheck:
    policy_id: str
    result: BudgetCheckResult


@dataclass(frozen=True)
class ApprovalDecision:
    """Outcome of PolicyEngine.decide()."""

    request_id: str
    allowed: bool
    policy_id: Optional[str] = None
    escalation: Optional[EscalationAction] = None
    checks: tuple[PolicyCheck, ...] = ()

    @property
    def requires_escalation(self) -> bool:
        return not self.allowed


def priority_key(policy: AgentPolicy) -> tuple:
    """
    Stable evaluation order for applicable policies.

    Narrower scope first, then newest creation time, then vendor id and
    policy id lexically so equal policies never depend on registration order.
    """
    return (
        SCOPE_RANK.get(policy.scope, 0),
        -policy.created_at.timestamp(),
        policy.vendor_id or "",
        policy.id,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEngine:
    def __init__(
        self,
        budget_store: BudgetStore,
        audit: AuditRecorder,
        config: Optional[AccordConfig] = None,
        evaluator: Optional[PolicyEvaluator] = None,
        classifier: Optional[PolicyChangeClassifier] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or AccordConfig()
        self.budget_store = budget_store
        self.audit = audit
        self.evaluator = evaluator or PolicyEvaluator()
        self.classifier = classifier or PolicyChangeClassifier(self.config.high_risk_budget_multiple)
        self.clock = clock
        self._providers: dict[str, PolicyProvider] = {}
        self._provider_policies: dict[str, dict[str, AgentPolicy]] = {}
        self._policies: dict[str, AgentPolicy] = {}
        self._lock = threading.Lock()

    # Providers

    def register_provider(self, provider: PolicyProvider) -> None:
        vendor_id = provider.vendor_id
        with self._lock:
            if vendor_id in self._providers:
                raise DuplicateVendorError(vendor_id)
            self._providers[vendor_id] = provider
            self._provider_policies[vendor_id] = {}

        subscribe = getattr(provider, "on_policies_changed", None)
        if callable(subscribe):
            subscribe(lambda: self._invalidate_provider(vendor_id))

        logger.info("Policy provider registered: %s", vendor_id)
        self.audit.log(EventType.PROVIDER_REGISTERED, details={"vendor_id": vendor_id})

    def unregister_provider(self, vendor_id: str) -> None:
        with self._lock:
            removed = self._providers.pop(vendor_id, None)
            self._provider_policies.pop(vendor_id, None)
        if removed is not None:
            logger.info("Policy provider unregistered: %s", vendor_id)

    def _invalidate_provider(self, vendor_id: str) -> None:
        with self._lock:
            if vendor_id in self._provider_policies:
                self._provider_policies[vendor_id] = {}
        logger.info("Policies changed for provider %s; cache cleared", vendor_id)

    # Direct policies

    def add_policy(self, policy: AgentPolicy, owner_address: Optional[str] = None) -> None:
        """Add a policy; verifies its signature when `owner_address` is given."""
        if owner_address is not None:
            ok, reason = verify_policy(policy, owner_address)
            if not ok:
                raise PolicySignatureError(f"Policy {policy.id}: {reason}")
        with self._lock:
            self._policies[policy.id] = policy
        logger.info("Policy added: %s (agent: %s, scope: %s)", policy.id, policy.agent_id, policy.scope.value)
        self.audit.log(EventType.POLICY_ADDED, policy_id=policy.id, agent_id=policy.agent_id)

    def remove_policy(self, policy_id: str) -> None:
        with self._lock:
            if self._policies.pop(policy_id, None) is None:
                raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        logger.info("Policy removed: %s", policy_id)
        self.audit.log(EventType.POLICY_REMOVED, policy_id=policy_id)

    def get_policy(self, policy_id: str) -> AgentPolicy:
        policy = self._find_policy(policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        return policy

    def policies_for_agent(self, agent_id: str) -> list[AgentPolicy]:
        return sorted(
            (p for p in self._known_policies() if p.agent_id == agent_id),
            key=priority_key,
        )

    def _find_policy(self, policy_id: str) -> Optional[AgentPolicy]:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is not None:
                return policy
            for vendor_id in sorted(self._provider_policies):
                policy = self._provider_policies[vendor_id].get(policy_id)
                if policy is not None:
                    return policy
        return None

    def _known_policies(self) -> list[AgentPolicy]:
        with self._lock:
            known = list(self._policies.values())
            for cached in self._provider_policies.values():
                known.extend(cached.values())
        return known

    # Decisions

    def _query_providers(self, request: ExecutionRequest, now: datetime) -> list[AgentPolicy]:
        with self._lock:
            providers = list(self._providers.items())
        context = request.context(now)
        collected: list[AgentPolicy] = []
        for vendor_id, provider in providers:
            try:
                policies = list(provider.get_policies(request.scope, context))
            except Exception as exc:
                logger.warning("Policy provider %s failed: %s", vendor_id, exc)
                self.audit.log(
                    EventType.PROVIDER_FAILED,
                    request_id=request.request_id,
                    success=False,
                    reason=str(exc),
                    details={"vendor_id": vendor_id},
                )
                continue
            with self._lock:
                cache = self._provider_policies.get(vendor_id)
                if cache is not None:
                    cache.update((p.id, p) for p in policies)
            collected.extend(policies)
        return collected

    def applicable_policies(self, request: ExecutionRequest, now: Optional[datetime] = None) -> list[AgentPolicy]:
        """Policies that may govern `request`, in priority order."""
        now = now or self.clock()
        provided = self._query_providers(request, now)
        with self._lock:
            direct = list(self._policies.values())
        return self._filter(direct + provided, request, now)

    def _filter(self, policies: Iterable[AgentPolicy], request: ExecutionRequest, now: datetime) -> list[AgentPolicy]:
        seen: dict[tuple[str, str], AgentPolicy] = {}
        for policy in policies:
            if policy.agent_id != request.agent_id:
                continue
            if request.policy_id and policy.id != request.policy_id:
                continue
            if policy.is_expired(now):
                continue
            if not scope_covers(policy.scope, request.scope):
                continue
            seen.setdefault((policy.vendor_id or "", policy.id), policy)
        return sorted(seen.values(), key=priority_key)

    def decide(self, request: ExecutionRequest) -> ApprovalDecision:
        """
        Evaluate `request` against every applicable policy in priority order.

        The first allowing policy wins and a hold for the request amount is
        placed on the agent's tracker in the same transaction; the hold lapses
        after the store's hold TTL unless recorded or released first. With no
        allowing policy the decision carries the escalation action of the
        highest-priority candidate (ask_human when there is none).
        """
        now = self.clock()
        candidates = self.applicable_policies(request, now)
        checks: list[PolicyCheck] = []
        winner: Optional[AgentPolicy] = None

        with self.budget_store.transaction(request.agent_id, now) as txn:
            expired = txn.expired_holds
            tracker = txn.tracker
            tracker.release_hold(request.request_id)
            for policy in candidates:
                result = self.evaluator.evaluate(policy, request, tracker, now)
                checks.append(PolicyCheck(policy.id, result))
                if result.allowed:
                    winner = policy
                    if request.action.amount > 0:
                        tracker.place_hold(
                            BudgetHold(
                                request_id=request.request_id,
                                agent_id=request.agent_id,
                                policy_id=policy.id,
                                amount=request.action.amount,
                                created_at=now,
                            )
                        )
                    break

        self._log_expired(expired)

        if winner is not None:
            logger.info(
                "Request %s auto-approved under policy %s (agent: %s)",
                request.request_id,
                winner.id,
                request.agent_id,
            )
            self.audit.log(
                EventType.AUTO_APPROVED,
                request_id=request.request_id,
                policy_id=winner.id,
                agent_id=request.agent_id,
                amount=request.action.amount or None,
            )
            return ApprovalDecision(
                request_id=request.request_id,
                allowed=True,
                policy_id=winner.id,
                checks=tuple(checks),
            )

        escalation = candidates[0].escalation if candidates else EscalationAction.ASK_HUMAN
        violations = [f"{c.policy_id}:{c.result.violated_rule}" for c in checks]
        logger.info(
            "Request %s escalated (%s); violations: %s",
            request.request_id,
            escalation.value,
            ", ".join(violations) or "no applicable policy",
        )
        self.audit.log(
            EventType.ESCALATED,
            request_id=request.request_id,
            agent_id=request.agent_id,
            amount=request.action.amount or None,
            success=False,
            reason=escalation.value,
            details={"checks": [{"policy_id": c.policy_id, **c.result.to_dict()} for c in checks]},
        )
        return ApprovalDecision(
            request_id=request.request_id,
            allowed=False,
            escalation=escalation,
            checks=tuple(checks),
        )

    def _log_expired(self, holds: list[BudgetHold]) -> None:
        for hold in holds:
            logger.info("Reservation expired: %s (agent: %s, amount: %s)", hold.request_id, hold.agent_id, hold.amount)
            self.audit.log(
                EventType.RESERVATION_RELEASED,
                request_id=hold.request_id,
                policy_id=hold.policy_id,
                agent_id=hold.agent_id,
                amount=hold.amount,
                reason="expired",
            )

    def check_auto_approve(self, request: ExecutionRequest) -> Optional[str]:
        """
        Id of the policy that auto-approves `request`, or None to escalate.

        An approval reserves the amount like decide(); release it with
        release_reservation() if the request will not execute.
        """
        return self.decide(request).policy_id

    def release_reservation(self, agent_id: str, request_id: str) -> bool:
        """Drop the hold of an approved request that will not execute."""
        with self.budget_store.transaction(agent_id, self.clock()) as txn:
            expired = txn.expired_holds
            hold = txn.tracker.release_hold(request_id)
        self._log_expired(expired)
        if hold is None:
            return False
        logger.info("Reservation released: %s (agent: %s, amount: %s)", request_id, agent_id, hold.amount)
        self.audit.log(
            EventType.RESERVATION_RELEASED,
            request_id=request_id,
            policy_id=hold.policy_id,
            agent_id=agent_id,
            amount=hold.amount,
        )
        return True

    def record_execution(
        self,
        request_id: str,
        policy_id: str,
        result: ExecutionResult,
        request: Optional[ExecutionRequest] = None,
    ) -> bool:
        """
        Record the outcome of an approved request.

        Replays of a request id are no-ops and return False, even once the
        policy is gone. A successful result with an amount becomes a ledger
        entry; the request's hold is released either way. The agent comes
        from `request`, the policy, or the stored hold, in that order;
        PolicyNotFoundError is raised only when none of them is available.
        """
        policy = self._find_policy(policy_id)
        if request is not None:
            agent_id = request.agent_id
        elif policy is not None:
            agent_id = policy.agent_id
        else:
            agent_id = self.budget_store.agent_for_request(request_id)
            if agent_id is None:
                raise PolicyNotFoundError(f"Policy not found: {policy_id}")

        now = self.clock()
        amount = result.amount
        if amount is None and request is not None and request.action.amount > 0:
            amount = request.action.amount

        with self.budget_store.transaction(agent_id, now) as txn:
            expired = txn.expired_holds
            replay = txn.is_recorded(request_id)
            if not replay:
                hold = txn.tracker.release_hold(request_id)
                if amount is None and hold is not None:
                    amount = hold.amount
                if result.success and amount is not None and amount > 0:
                    action = request.action if request is not None else None
                    txn.tracker.record_spend(
                        BudgetTransaction(
                            request_id=request_id,
                            agent_id=agent_id,
                            policy_id=policy_id,
                            amount=amount,
                            timestamp=now,
                            tx_hash=result.tx_hash,
                            chain=action.chain_id if action else None,
                            method=action.effective_method if action else None,
                        ),
                        now,
                    )
                txn.mark_recorded(request_id, policy_id, now)

        self._log_expired(expired)
        if replay:
            logger.debug("Execution %s already recorded; ignoring replay", request_id)
            return False

        if request is not None:
            action_name = request.action.kind.value
            token = request.action.token
        else:
            action_name = "transfer" if result.tx_hash else "sign_personal"
            token = "native"
        vendor_id = policy.vendor_id if policy is not None and policy.vendor_id else agent_id
        self.audit.record_execution(
            ExecutionRecord(
                request_id=request_id,
                policy_id=policy_id,
                vendor_id=vendor_id,
                action=action_name,
                success=result.success,
                timestamp=now.timestamp(),
                amount=amount if amount else None,
                token=token,
                agent_id=agent_id,
                tx_hash=result.tx_hash,
                error=result.error,
            )
        )
        logger.info(
            "Execution recorded: %s (policy: %s, success: %s, amount: %s)",
            request_id,
            policy_id,
            result.success,
            amount,
        )
        return True

    # Audit reader

    def get_executions(self, policy_id: str, from_ts: float, to_ts: float) -> list[ExecutionRecord]:
        return self.audit.get_executions(policy_id, from_ts, to_ts)

    def get_usage_today(self, policy_id: str) -> UsageSnapshot:
        return self.audit.get_usage_today(policy_id, self.clock())

    # Policy changes

    def classify_policy_change(
        self,
        new_policy: AgentPolicy,
        existing_policy_id: Optional[str] = None,
    ) -> PolicyChangeClassification:
        """
        Classify `new_policy` against the stored policy it replaces.

        A policy with nothing to compare against is a new policy and
        classifies as auto.
        """
        existing = self._find_policy(existing_policy_id) if existing_policy_id else None
        if existing is None:
            return AUTO_CLASSIFICATION
        classification = self.classifier.classify(existing, new_policy)
        if classification.requires_escalation:
            logger.info(
                "Policy change %s -> %s requires %s approval: %s",
                existing.id,
                new_policy.id,
                classification.approval_level.value,
                "; ".join(classification.reasons),
            )
        self.audit.log(
            EventType.POLICY_CHANGE_CLASSIFIED,
            policy_id=existing.id,
            agent_id=existing.agent_id,
            details=classification.to_dict(),
        )
        return classification
