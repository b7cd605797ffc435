"""
Accord: negotiation and spending policy core for commerce agents.

Agents bargain through a table-driven state machine, and a commitment
only settles when a policy allows it:
Offer → Counter → Accept → Policy check → Commit, with a full audit trail.
"""

__version__ = "0.1.0"

from .negotiation import (
    Acceptance,
    Commitment,
    CommitmentProposal,
    CounterOffer,
    DisputeEvidence,
    MessageKind,
    NegotiationRound,
    NegotiationSession,
    NegotiationState,
    Offer,
    Rejection,
    StateTransition,
    agreement_hash,
)
from .state_machine import TRANSITIONS, NegotiationStateMachine
from .session_store import SessionStore
from .commitment import CommitmentTerms, build_commitment, sign_commitment
from .protocol import (
    CommitmentOutcome,
    DeliveryOutcome,
    InboundMessage,
    MessageSender,
    NegotiationProtocol,
    ProtocolResult,
)
from .policy import (
    ActionKind,
    AgentPolicy,
    EscalationAction,
    ExecutionAction,
    ExecutionRequest,
    ExecutionResult,
    PolicyConditions,
    PolicyContext,
    PolicyScope,
    TimeWindow,
    sign_policy,
    verify_policy,
)
from .budget import AgentBudgetTracker, BudgetCheckResult, BudgetStore, BudgetTransaction
from .policy_evaluator import PolicyEvaluator
from .policy_change import (
    CriticalPolicyChangeType,
    PolicyApprovalLevel,
    PolicyChangeClassification,
    PolicyChangeClassifier,
)
from .policy_engine import ApprovalDecision, PolicyEngine, PolicyProvider
from .audit import AuditTrail, EventType, ExecutionRecord, UsageSnapshot
from .signing import LocalKeySigner, Signer
from .config import AccordConfig

__all__ = [
    "NegotiationState", "MessageKind", "NegotiationSession", "NegotiationRound", "StateTransition",
    "Offer", "CounterOffer", "Acceptance", "Rejection", "Commitment", "CommitmentProposal",
    "DisputeEvidence", "agreement_hash",
    "TRANSITIONS", "NegotiationStateMachine", "SessionStore",
    "CommitmentTerms", "build_commitment", "sign_commitment",
    "NegotiationProtocol", "MessageSender", "DeliveryOutcome", "InboundMessage",
    "ProtocolResult", "CommitmentOutcome",
    "PolicyScope", "EscalationAction", "ActionKind", "TimeWindow", "PolicyConditions",
    "AgentPolicy", "PolicyContext", "ExecutionAction", "ExecutionRequest", "ExecutionResult",
    "sign_policy", "verify_policy",
    "AgentBudgetTracker", "BudgetTransaction", "BudgetCheckResult", "BudgetStore",
    "PolicyEvaluator", "PolicyChangeClassifier", "PolicyChangeClassification",
    "CriticalPolicyChangeType", "PolicyApprovalLevel",
    "PolicyEngine", "PolicyProvider", "ApprovalDecision",
    "AuditTrail", "EventType", "ExecutionRecord", "UsageSnapshot",
    "Signer", "LocalKeySigner", "AccordConfig",
]
