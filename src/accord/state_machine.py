"""
Negotiation finite state machine.

Legality is data: TRANSITIONS maps (state, trigger) to the set of legal
target states, and every check is a membership test against it. When a
(state, trigger) pair has more than one legal target the caller names the
intended target; the machine only verifies it.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterator, Mapping

from .errors import InvalidTransitionError, RoundLimitExceededError, TerminalStateError
from .negotiation import (
    MessageKind,
    NegotiationSession,
    NegotiationState,
    StateTransition,
)

S = NegotiationState
K = MessageKind

TRANSITIONS: Mapping[tuple[NegotiationState, MessageKind], frozenset[NegotiationState]] = {
    (S.INITIAL, K.OFFER): frozenset({S.OFFER_SENT, S.OFFER_RECEIVED}),
    (S.OFFER_SENT, K.COUNTER): frozenset({S.COUNTERING}),
    (S.OFFER_SENT, K.ACCEPT): frozenset({S.ACCEPTED}),
    (S.OFFER_SENT, K.REJECT): frozenset({S.REJECTED}),
    (S.OFFER_RECEIVED, K.COUNTER): frozenset({S.COUNTERING}),
    (S.OFFER_RECEIVED, K.ACCEPT): frozenset({S.ACCEPTED}),
    (S.OFFER_RECEIVED, K.REJECT): frozenset({S.REJECTED}),
    (S.COUNTERING, K.COUNTER): frozenset({S.COUNTERING}),
    (S.COUNTERING, K.ACCEPT): frozenset({S.ACCEPTED}),
    (S.COUNTERING, K.REJECT): frozenset({S.REJECTED}),
    (S.ACCEPTED, K.COMMITMENT_PROPOSAL): frozenset({S.COMMITTED}),
    (S.COMMITTED, K.DISPUTE_EVIDENCE): frozenset({S.DISPUTED}),
}

TERMINAL_STATES = frozenset(
    state
    for state in NegotiationState
    if not any(src == state for src, _ in TRANSITIONS)
)


def iter_edges() -> Iterator[tuple[NegotiationState, MessageKind, NegotiationState]]:
    """Enumerate every legal (from, trigger, to) triple."""
    for (src, trigger), targets in TRANSITIONS.items():
        for target in sorted(targets, key=lambda s: s.value):
            yield src, trigger, target


def legal_targets(state: NegotiationState, trigger: MessageKind) -> frozenset[NegotiationState]:
    return TRANSITIONS.get((state, trigger), frozenset())


def can_transition(
    from_state: NegotiationState,
    to_state: NegotiationState,
    trigger: MessageKind,
) -> bool:
    return to_state in legal_targets(from_state, trigger)


def is_terminal(state: NegotiationState) -> bool:
    return state in TERMINAL_STATES


class NegotiationStateMachine:
    """Pure transition function over NegotiationSession values."""

    def can_transition(
        self,
        from_state: NegotiationState,
        to_state: NegotiationState,
        trigger: MessageKind,
    ) -> bool:
        return can_transition(from_state, to_state, trigger)

    def apply(
        self,
        session: NegotiationSession,
        trigger: MessageKind,
        target_state: NegotiationState,
        timestamp: datetime,
    ) -> NegotiationSession:
        """
        Validate (session.state, trigger, target_state) and return the moved session.

        The input session is never modified. The round limit bounds every
        round, so no trigger may take the session past max_rounds.
        """
        current = session.state
        if is_terminal(current):
            raise TerminalStateError(
                session.session_id, current.value, trigger.value, target_state.value
            )
        if not can_transition(current, target_state, trigger):
            raise InvalidTransitionError(current.value, trigger.value, target_state.value)
        if len(session.rounds) + 1 > session.max_rounds:
            raise RoundLimitExceededError(session.session_id, session.max_rounds)

        record = StateTransition(
            from_state=current,
            to_state=target_state,
            trigger=trigger,
            timestamp=timestamp,
        )
        return replace(
            session,
            state=target_state,
            transitions=session.transitions + (record,),
            updated_at=timestamp,
        )
