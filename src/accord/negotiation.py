"""
Negotiation data model: states, message kinds, round payloads, sessions.

Sessions, rounds and transitions are frozen; every change produces a new
session value, so a failed operation can never leave a half-applied session.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from .signing import canonical_json_bytes, canonical_json_hash


def _check_canonical(name: str, value: Any) -> None:
    """Free-form payload fields are signed as canonical JSON, so floats and
    non-JSON values are refused when the payload is built."""
    try:
        canonical_json_bytes(value)
    except ValueError as exc:
        raise ValueError(f"{name}: {exc}") from None


class NegotiationState(str, Enum):
    INITIAL = "initial"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    COUNTERING = "countering"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMMITTED = "committed"
    DISPUTED = "disputed"


class MessageKind(str, Enum):
    OFFER = "negotiation_offer"
    COUNTER = "negotiation_counter"
    ACCEPT = "negotiation_accept"
    REJECT = "negotiation_reject"
    COMMITMENT_PROPOSAL = "commitment_proposal"
    DISPUTE_EVIDENCE = "dispute_evidence"


@dataclass(frozen=True)
class Offer:
    item: str
    price: str
    currency: str
    terms: tuple[str, ...] = ()
    deadline: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self) -> None:
        _check_canonical("metadata", self.metadata)

    def normalized_terms(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "price": self.price,
            "currency": self.currency,
            "terms": list(self.terms),
            "deadline": self.deadline,
        }


@dataclass(frozen=True)
class CounterOffer:
    item: str
    counter_price: str
    currency: str
    counter_terms: tuple[str, ...] = ()
    reason: Optional[str] = None
    deadline: Optional[str] = None

    def normalized_terms(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "price": self.counter_price,
            "currency": self.currency,
            "terms": list(self.counter_terms),
            "deadline": self.deadline,
        }


@dataclass(frozen=True)
class Acceptance:
    agreement_hash: str
    accepted_price: str
    accepted_terms: tuple[str, ...] = ()


@dataclass(frozen=True)
class Rejection:
    reason: str
    final_offer: Optional[Offer] = None


@dataclass(frozen=True)
class Commitment:
    """EIP-712 commitment settled from an accepted negotiation."""

    domain: dict[str, Any]
    types: dict[str, list[dict[str, str]]]
    primary_type: str
    value: dict[str, Any]
    digest: str
    proposer: str
    proposer_signature: Optional[str] = None

    def __post_init__(self) -> None:
        _check_canonical("domain", self.domain)
        _check_canonical("value", self.value)


@dataclass(frozen=True)
class CommitmentProposal:
    commitment: Commitment


@dataclass(frozen=True)
class DisputeEvidence:
    reason: str
    evidence_hash: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    def __post_init__(self) -> None:
        _check_canonical("details", self.details)


RoundPayload = Union[
    Offer, CounterOffer, Acceptance, Rejection, CommitmentProposal, DisputeEvidence
]

PAYLOAD_KINDS: dict[MessageKind, type] = {
    MessageKind.OFFER: Offer,
    MessageKind.COUNTER: CounterOffer,
    MessageKind.ACCEPT: Acceptance,
    MessageKind.REJECT: Rejection,
    MessageKind.COMMITMENT_PROPOSAL: CommitmentProposal,
    MessageKind.DISPUTE_EVIDENCE: DisputeEvidence,
}


@dataclass(frozen=True)
class NegotiationRound:
    round_number: int
    sender: str
    kind: MessageKind
    payload: RoundPayload
    timestamp: datetime
    signature: Optional[str] = None


@dataclass(frozen=True)
class StateTransition:
    from_state: NegotiationState
    to_state: NegotiationState
    trigger: MessageKind
    timestamp: datetime


@dataclass(frozen=True)
class NegotiationSession:
    session_id: str
    local_agent_id: str
    counterparty_agent_id: str
    created_at: datetime
    updated_at: datetime
    max_rounds: int
    state: NegotiationState = NegotiationState.INITIAL
    rounds: tuple[NegotiationRound, ...] = ()
    transitions: tuple[StateTransition, ...] = ()
    commitment: Optional[Commitment] = None
    expires_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.state == NegotiationState.COMMITTED and self.commitment is None:
            raise ValueError("Committed session requires a commitment")

    @property
    def participants(self) -> tuple[str, str]:
        return (self.local_agent_id, self.counterparty_agent_id)

    @property
    def next_round_number(self) -> int:
        return len(self.rounds) + 1

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def other_party(self, agent_id: str) -> str:
        if agent_id == self.local_agent_id:
            return self.counterparty_agent_id
        return self.local_agent_id

    def latest_terms_round(self) -> Optional[NegotiationRound]:
        """Most recent offer or counter-offer round."""
        for rnd in reversed(self.rounds):
            if rnd.kind in (MessageKind.OFFER, MessageKind.COUNTER):
                return rnd
        return None

    def latest_round(self, kind: MessageKind) -> Optional[NegotiationRound]:
        for rnd in reversed(self.rounds):
            if rnd.kind == kind:
                return rnd
        return None

    def with_round(self, rnd: NegotiationRound) -> NegotiationSession:
        if rnd.round_number != self.next_round_number:
            raise ValueError(
                f"Round {rnd.round_number} does not follow round {len(self.rounds)}"
            )
        return replace(self, rounds=self.rounds + (rnd,), updated_at=rnd.timestamp)


def agreement_hash(payload: Union[Offer, CounterOffer]) -> str:
    """Hash of the normalized terms of an offer or counter-offer."""
    return canonical_json_hash(payload.normalized_terms())


def round_digest(
    session_id: str,
    round_number: int,
    sender: str,
    kind: MessageKind,
    payload: RoundPayload,
    timestamp: datetime,
) -> str:
    """Digest a sender signs over one round. Payload values must not be floats."""
    return canonical_json_hash(
        {
            "session_id": session_id,
            "round_number": round_number,
            "sender": sender,
            "kind": kind.value,
            "timestamp": timestamp.isoformat(),
            "payload": asdict(payload),
        }
    )
