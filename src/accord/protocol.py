"""
Negotiation protocol: turns domain operations into validated rounds.

Every operation runs inside SessionStore.mutate() for its session id and
builds the new session value before storing it, so a failing operation
leaves the stored session untouched. The message sender and the policy
engine are always called after the mutation scope is released; the local
round is committed whatever the delivery outcome.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Protocol

from .commitment import CommitmentTerms, build_commitment, sign_commitment, verify_commitment_digest
from .config import AccordConfig
from .errors import (
    AgreementHashMismatchError,
    DuplicateSessionError,
    InvalidTransitionError,
    RoundSequenceError,
    SessionExpiredError,
    UnauthorizedSenderError,
)
from .money import amount_to_base_units
from .negotiation import (
    PAYLOAD_KINDS,
    Acceptance,
    CommitmentProposal,
    CounterOffer,
    DisputeEvidence,
    MessageKind,
    NegotiationRound,
    NegotiationSession,
    NegotiationState,
    Offer,
    Rejection,
    RoundPayload,
    agreement_hash,
    round_digest,
)
from .policy import ActionKind, ExecutionAction, ExecutionRequest, PolicyScope
from .policy_engine import ApprovalDecision, PolicyEngine
from .session_store import ARCHIVE_STATES, SessionSlot, SessionStore
from .signing import Signer, verify_signature
from .state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)

S = NegotiationState
K = MessageKind

# Target state for each trigger; only an opening offer depends on direction.
LOCAL_TARGETS: dict[MessageKind, NegotiationState] = {
    K.OFFER: S.OFFER_SENT,
    K.COUNTER: S.COUNTERING,
    K.ACCEPT: S.ACCEPTED,
    K.REJECT: S.REJECTED,
    K.COMMITMENT_PROPOSAL: S.COMMITTED,
    K.DISPUTE_EVIDENCE: S.DISPUTED,
}
INBOUND_TARGETS: dict[MessageKind, NegotiationState] = {**LOCAL_TARGETS, K.OFFER: S.OFFER_RECEIVED}


@dataclass(frozen=True)
class DeliveryOutcome:
    delivered: bool
    error: Optional[str] = None


class MessageSender(Protocol):
    """Transport capability. Timeouts and retries belong to the caller."""

    def send(self, agent_id: str, rnd: NegotiationRound) -> DeliveryOutcome: ...


@dataclass(frozen=True)
class InboundMessage:
    """A counterparty's round as it arrives off the wire."""

    session_id: str
    sender: str
    round_number: int
    kind: MessageKind
    payload: RoundPayload
    timestamp: datetime
    signature: Optional[str] = None


@dataclass(frozen=True)
class ProtocolResult:
    session: NegotiationSession
    round: NegotiationRound
    delivery: Optional[DeliveryOutcome] = None
    duplicate: bool = False


@dataclass(frozen=True)
class CommitmentOutcome:
    """
    Result of propose_commitment().

    When the policy engine denies, `committed` is False, the session is
    still accepted, and `decision` says how to escalate.
    """

    session: NegotiationSession
    committed: bool
    decision: Optional[ApprovalDecision]
    request: ExecutionRequest
    round: Optional[NegotiationRound] = None
    delivery: Optional[DeliveryOutcome] = None

    @property
    def escalated(self) -> bool:
        return not self.committed

    @property
    def policy_id(self) -> Optional[str]:
        return self.decision.policy_id if self.decision else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NegotiationProtocol:
    """
    Drives negotiation sessions for one local agent.

    Without a policy engine, commitments are not gated. Without a signer,
    rounds and commitments go out unsigned. `peer_addresses` maps
    counterparty agent ids to signing addresses; inbound rounds from a
    listed peer must carry a valid signature.
    """

    def __init__(
        self,
        local_agent_id: str,
        sender: MessageSender,
        policy_engine: Optional[PolicyEngine] = None,
        signer: Optional[Signer] = None,
        key_ref: Optional[str] = None,
        store: Optional[SessionStore] = None,
        state_machine: Optional[NegotiationStateMachine] = None,
        config: Optional[AccordConfig] = None,
        peer_addresses: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if signer is not None and not key_ref:
            raise ValueError("key_ref is required when a signer is configured")
        self.local_agent_id = local_agent_id
        self.sender = sender
        self.policy_engine = policy_engine
        self.signer = signer
        self.key_ref = key_ref
        self.store = store or SessionStore()
        self.state_machine = state_machine or NegotiationStateMachine()
        self.config = config or AccordConfig()
        self.peer_addresses = dict(peer_addresses or {})
        self.clock = clock

    # Sessions

    def start_session(
        self,
        counterparty_agent_id: str,
        max_rounds: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> NegotiationSession:
        return self._create_session(
            session_id or str(uuid.uuid4()),
            counterparty_agent_id,
            max_rounds,
            ttl_seconds,
        )

    def _create_session(
        self,
        session_id: str,
        counterparty_agent_id: str,
        max_rounds: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ) -> NegotiationSession:
        if counterparty_agent_id == self.local_agent_id:
            raise ValueError("An agent cannot negotiate with itself")
        max_rounds = self.config.default_max_rounds if max_rounds is None else max_rounds
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        ttl = self.config.session_ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self.clock()
        session = NegotiationSession(
            session_id=session_id,
            local_agent_id=self.local_agent_id,
            counterparty_agent_id=counterparty_agent_id,
            created_at=now,
            updated_at=now,
            max_rounds=max_rounds,
            expires_at=now + timedelta(seconds=ttl),
        )
        return self.store.create(session)

    def get_session(self, session_id: str) -> NegotiationSession:
        return self.store.get(session_id)

    def active_sessions(self) -> list[NegotiationSession]:
        return self.store.active_sessions(self.clock())

    def archive_expired(self) -> int:
        """Archive every expired, unarchived session; returns how many."""
        now = self.clock()
        archived = 0
        for session in self.store.all_sessions():
            if session.is_archived or not session.is_expired(now):
                continue
            with self.store.mutate(session.session_id) as slot:
                if slot.session.is_expired(now) and not slot.session.is_archived:
                    slot.session = self.store.archive(slot.session, now)
                    archived += 1
        return archived

    def purge_archived(self) -> int:
        self.archive_expired()
        return self.store.purge_archived()

    # Local operations

    def propose_offer(self, session_id: str, offer: Offer) -> ProtocolResult:
        return self._apply_local(session_id, K.OFFER, offer)

    def counter(self, session_id: str, counter_offer: CounterOffer) -> ProtocolResult:
        return self._apply_local(session_id, K.COUNTER, counter_offer)

    def accept(self, session_id: str, agreement_hash_value: Optional[str] = None) -> ProtocolResult:
        """
        Accept the latest offer or counter-offer.

        A supplied hash must match the hash recomputed from those terms.
        """

        def build(session: NegotiationSession) -> Acceptance:
            terms_round = session.latest_terms_round()
            if terms_round is None:
                raise InvalidTransitionError(session.state.value, K.ACCEPT.value, S.ACCEPTED.value)
            expected = agreement_hash(terms_round.payload)
            if agreement_hash_value is not None and agreement_hash_value != expected:
                raise AgreementHashMismatchError(expected, agreement_hash_value)
            terms = terms_round.payload.normalized_terms()
            return Acceptance(
                agreement_hash=expected,
                accepted_price=terms["price"],
                accepted_terms=tuple(terms["terms"]),
            )

        return self._apply_local(session_id, K.ACCEPT, build)

    def reject(self, session_id: str, reason: str, final_offer: Optional[Offer] = None) -> ProtocolResult:
        return self._apply_local(session_id, K.REJECT, Rejection(reason=reason, final_offer=final_offer))

    def submit_dispute(
        self,
        session_id: str,
        reason: str,
        evidence_hash: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ProtocolResult:
        evidence = DisputeEvidence(reason=reason, evidence_hash=evidence_hash, details=details)
        return self._apply_local(session_id, K.DISPUTE_EVIDENCE, evidence)

    def propose_commitment(
        self,
        session_id: str,
        settlement: CommitmentTerms,
        payment: Optional[ExecutionAction] = None,
    ) -> CommitmentOutcome:
        """
        Commit to the accepted terms, subject to the policy engine.

        The commitment is built and signed under the session's mutation
        scope, the engine decides outside it, and the transition is applied
        in a second scope only if the session has not moved or expired in
        between. A denial is returned, not raised, and leaves the session
        accepted.
        """
        now = self.clock()
        with self.store.mutate(session_id) as slot:
            session = slot.session
            if self._expire_if_due(slot, now):
                snapshot = None
            else:
                self._check_local(session)
                if session.state != S.ACCEPTED:
                    # Raises the transition error for the current state.
                    self.state_machine.apply(session, K.COMMITMENT_PROPOSAL, S.COMMITTED, now)
                terms_round = session.latest_terms_round()
                acceptance_round = session.latest_round(K.ACCEPT)
                commitment = build_commitment(
                    terms_round.payload,
                    acceptance_round.payload,
                    settlement,
                    proposer=self.local_agent_id,
                )
                if self.signer is not None:
                    commitment = sign_commitment(commitment, self.signer, self.key_ref)
                self.state_machine.apply(
                    replace(session, commitment=commitment), K.COMMITMENT_PROPOSAL, S.COMMITTED, now
                )
                snapshot = session
        if snapshot is None:
            raise SessionExpiredError(f"Session {session_id} has expired")

        acceptance = acceptance_round.payload
        if payment is None:
            payment = ExecutionAction(
                kind=ActionKind.TRANSFER,
                amount=amount_to_base_units(acceptance.accepted_price, self.config.amount_decimals),
                chain_id=str(settlement.chain_id),
                token=terms_round.payload.currency,
            )
        request = ExecutionRequest(
            request_id=f"{session_id}:commitment:{commitment.value['nonce']}",
            agent_id=self.local_agent_id,
            scope=PolicyScope.COMMITMENT,
            action=payment,
            reason=f"Commitment for negotiation {session_id}",
        )

        decision = None
        if self.policy_engine is not None:
            decision = self.policy_engine.decide(request)
            if not decision.allowed:
                logger.info(
                    "Commitment for session %s escalated (%s)",
                    session_id,
                    decision.escalation.value if decision.escalation else "unknown",
                )
                return CommitmentOutcome(
                    session=self.store.get(session_id),
                    committed=False,
                    decision=decision,
                    request=request,
                )

        now = self.clock()
        late: Optional[Exception] = None
        with self.store.mutate(session_id) as slot:
            current = slot.session
            if self._expire_if_due(slot, now):
                late = SessionExpiredError(f"Session {session_id} expired while awaiting approval")
            elif current.state != snapshot.state or len(current.rounds) != len(snapshot.rounds):
                late = InvalidTransitionError(current.state.value, K.COMMITMENT_PROPOSAL.value, S.COMMITTED.value)
            else:
                staged = replace(current, commitment=commitment)
                moved = self.state_machine.apply(staged, K.COMMITMENT_PROPOSAL, S.COMMITTED, now)
                rnd = self._local_round(moved, K.COMMITMENT_PROPOSAL, CommitmentProposal(commitment), now)
                slot.session = moved.with_round(rnd)
        if late is not None:
            logger.info("Discarding late commitment decision for session %s: %s", session_id, late)
            if decision is not None and decision.allowed:
                self.policy_engine.release_reservation(self.local_agent_id, request.request_id)
            raise late

        logger.info("Session %s committed (digest: %s)", session_id, commitment.digest)
        delivery = self._deliver(slot.session.counterparty_agent_id, rnd)
        return CommitmentOutcome(
            session=slot.session,
            committed=True,
            decision=decision,
            request=request,
            round=rnd,
            delivery=delivery,
        )

    def redeliver(self, session_id: str, round_number: int) -> DeliveryOutcome:
        """Re-send a stored local round; receivers dedupe on (session id, round number)."""
        session = self.store.get(session_id)
        if not 1 <= round_number <= len(session.rounds):
            raise RoundSequenceError(session_id, len(session.rounds), round_number)
        rnd = session.rounds[round_number - 1]
        if rnd.sender != self.local_agent_id:
            raise UnauthorizedSenderError(f"Round {round_number} of {session_id} was not sent by this agent")
        return self._deliver(session.counterparty_agent_id, rnd)

    # Inbound

    def receive(self, message: InboundMessage) -> ProtocolResult:
        """
        Apply a counterparty's round.

        An opening offer creates the session if it does not exist yet. A
        replay of an already-applied round returns the stored round with
        duplicate=True; a round number past the next expected one raises
        RoundSequenceError.
        """
        expected_type = PAYLOAD_KINDS[message.kind]
        if not isinstance(message.payload, expected_type):
            raise ValueError(f"{message.kind.value} requires a {expected_type.__name__} payload")
        self._verify_inbound_signature(message)

        if message.kind == K.OFFER and self.store.find(message.session_id) is None:
            try:
                self._create_session(message.session_id, message.sender)
            except DuplicateSessionError:
                pass

        now = self.clock()
        with self.store.mutate(message.session_id) as slot:
            session = slot.session
            if message.sender != session.counterparty_agent_id:
                raise UnauthorizedSenderError(
                    f"{message.sender} is not the counterparty of session {session.session_id}"
                )
            if self._expire_if_due(slot, now):
                expired = True
            else:
                expired = False
                duplicate = self._replayed_round(session, message)
                if duplicate is None:
                    slot.session, rnd = self._apply_inbound(session, message, now)
        if expired:
            raise SessionExpiredError(f"Session {message.session_id} has expired")
        if duplicate is not None:
            logger.debug(
                "Duplicate round %d for session %s ignored", message.round_number, message.session_id
            )
            return ProtocolResult(session=slot.session, round=duplicate, duplicate=True)
        return ProtocolResult(session=slot.session, round=rnd)

    def _replayed_round(self, session: NegotiationSession, message: InboundMessage) -> Optional[NegotiationRound]:
        if message.round_number > session.next_round_number:
            raise RoundSequenceError(session.session_id, session.next_round_number, message.round_number)
        if message.round_number < 1:
            raise RoundSequenceError(session.session_id, session.next_round_number, message.round_number)
        if message.round_number == session.next_round_number:
            return None
        existing = session.rounds[message.round_number - 1]
        if existing.sender != message.sender or existing.kind != message.kind:
            raise RoundSequenceError(session.session_id, session.next_round_number, message.round_number)
        return existing

    def _apply_inbound(
        self,
        session: NegotiationSession,
        message: InboundMessage,
        now: datetime,
    ) -> tuple[NegotiationSession, NegotiationRound]:
        target = INBOUND_TARGETS[message.kind]
        staged = session
        if message.kind == K.COMMITMENT_PROPOSAL:
            commitment = message.payload.commitment
            if not verify_commitment_digest(commitment):
                raise AgreementHashMismatchError("<typed data digest>", commitment.digest)
            accepted = session.latest_round(K.ACCEPT)
            accepted_hash = accepted.payload.agreement_hash if accepted else ""
            if commitment.value.get("agreementHash") != accepted_hash:
                raise AgreementHashMismatchError(accepted_hash, str(commitment.value.get("agreementHash")))
            staged = replace(session, commitment=commitment)

        moved = self.state_machine.apply(staged, message.kind, target, now)
        if message.kind == K.ACCEPT:
            terms_round = session.latest_terms_round()
            expected = agreement_hash(terms_round.payload)
            if message.payload.agreement_hash != expected:
                raise AgreementHashMismatchError(expected, message.payload.agreement_hash)

        rnd = NegotiationRound(
            round_number=message.round_number,
            sender=message.sender,
            kind=message.kind,
            payload=message.payload,
            timestamp=message.timestamp,
            signature=message.signature,
        )
        moved = moved.with_round(rnd)
        if moved.state in ARCHIVE_STATES:
            moved = self.store.archive(moved, now)
        logger.info(
            "Session %s: %s from %s -> %s",
            session.session_id,
            message.kind.value,
            message.sender,
            moved.state.value,
        )
        return moved, rnd

    def _verify_inbound_signature(self, message: InboundMessage) -> None:
        address = self.peer_addresses.get(message.sender)
        if address is None:
            return
        digest = round_digest(
            message.session_id,
            message.round_number,
            message.sender,
            message.kind,
            message.payload,
            message.timestamp,
        )
        if not message.signature or not verify_signature(address, digest, message.signature):
            raise UnauthorizedSenderError(f"Invalid signature from {message.sender}")

    # Internals

    def _apply_local(
        self,
        session_id: str,
        kind: MessageKind,
        payload: RoundPayload | Callable[[NegotiationSession], RoundPayload],
    ) -> ProtocolResult:
        target = LOCAL_TARGETS[kind]
        now = self.clock()
        with self.store.mutate(session_id) as slot:
            session = slot.session
            if self._expire_if_due(slot, now):
                expired = True
            else:
                expired = False
                self._check_local(session)
                moved = self.state_machine.apply(session, kind, target, now)
                body = payload(session) if callable(payload) else payload
                rnd = self._local_round(moved, kind, body, now)
                moved = moved.with_round(rnd)
                if moved.state in ARCHIVE_STATES:
                    moved = self.store.archive(moved, now)
                slot.session = moved
        if expired:
            raise SessionExpiredError(f"Session {session_id} has expired")

        logger.info("Session %s: %s -> %s", session_id, kind.value, slot.session.state.value)
        delivery = self._deliver(slot.session.counterparty_agent_id, rnd)
        return ProtocolResult(session=slot.session, round=rnd, delivery=delivery)

    def _local_round(
        self,
        session: NegotiationSession,
        kind: MessageKind,
        payload: RoundPayload,
        now: datetime,
    ) -> NegotiationRound:
        number = session.next_round_number
        signature = None
        if self.signer is not None:
            digest = round_digest(session.session_id, number, self.local_agent_id, kind, payload, now)
            signature = self.signer.sign(self.key_ref, digest)
        return NegotiationRound(
            round_number=number,
            sender=self.local_agent_id,
            kind=kind,
            payload=payload,
            timestamp=now,
            signature=signature,
        )

    def _check_local(self, session: NegotiationSession) -> None:
        if session.local_agent_id != self.local_agent_id:
            raise UnauthorizedSenderError(
                f"{self.local_agent_id} is not a participant of session {session.session_id}"
            )

    def _expire_if_due(self, slot: SessionSlot, now: datetime) -> bool:
        session = slot.session
        if not session.is_expired(now):
            return False
        slot.session = self.store.archive(session, now)
        logger.info("Session %s expired at %s", session.session_id, session.expires_at.isoformat())
        return True

    def _deliver(self, agent_id: str, rnd: NegotiationRound) -> DeliveryOutcome:
        try:
            outcome = self.sender.send(agent_id, rnd)
        except Exception as exc:
            logger.warning("Delivery of round %d to %s failed: %s", rnd.round_number, agent_id, exc)
            return DeliveryOutcome(delivered=False, error=str(exc))
        if not outcome.delivered:
            logger.warning(
                "Delivery of round %d to %s failed: %s", rnd.round_number, agent_id, outcome.error
            )
        return outcome
