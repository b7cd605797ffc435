"""
Accord error types.

Specific exceptions for each failure mode so callers can decide
whether to retry, escalate, or abort. None of them is process-fatal.
Budget violations are not exceptions: they come back as BudgetCheckResult.
"""

from __future__ import annotations

from typing import Optional


class AccordError(Exception):
    """Base error for all Accord operations."""
    pass


# Negotiation errors
class NegotiationError(AccordError):
    """Base error for negotiation protocol failures."""
    pass


class InvalidTransitionError(NegotiationError):
    """(state, trigger, target) is not an edge of the transition table."""
    def __init__(self, state: str, trigger: str, target: Optional[str] = None):
        self.state = state
        self.trigger = trigger
        self.target = target
        super().__init__(f"Invalid transition: {state} -> {target or '?'} (via {trigger})")


class TerminalStateError(InvalidTransitionError):
    """Session is in a state with no outgoing edges.

    Subclasses InvalidTransitionError: no triple starting at a terminal
    state is in the table either.
    """
    def __init__(self, session_id: str, state: str, trigger: str, target: Optional[str] = None):
        self.session_id = session_id
        self.state = state
        self.trigger = trigger
        self.target = target
        NegotiationError.__init__(
            self, f"Session {session_id} is in terminal state '{state}' (via {trigger})"
        )


class RoundLimitExceededError(NegotiationError):
    """Applying the trigger would push the session past its round limit."""
    def __init__(self, session_id: str, max_rounds: int):
        self.session_id = session_id
        self.max_rounds = max_rounds
        super().__init__(f"Session {session_id} has reached maximum rounds ({max_rounds})")


class SessionExpiredError(NegotiationError):
    """Session expiry has passed."""
    pass


class SessionNotFoundError(NegotiationError):
    """Session ID not found."""
    pass


class DuplicateSessionError(NegotiationError):
    """A session with this ID already exists."""
    pass


class UnauthorizedSenderError(NegotiationError):
    """Sender is not one of the two session participants."""
    pass


class RoundSequenceError(NegotiationError):
    """Inbound round number leaves a gap in the session's round sequence."""
    def __init__(self, session_id: str, expected: int, actual: int):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Session {session_id}: expected round {expected}, got round {actual}"
        )


class AgreementHashMismatchError(NegotiationError):
    """Acceptance hash does not match the terms of the latest offer."""
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Agreement hash mismatch: expected {expected}, got {actual}")


# Policy errors
class PolicyError(AccordError):
    """Base error for policy engine issues."""
    pass


class DuplicateVendorError(PolicyError):
    """A provider is already registered under this vendor ID."""
    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(f"Policy provider already registered for vendor '{vendor_id}'")


class PolicyNotFoundError(PolicyError):
    """Policy ID not found."""
    pass


class PolicySignatureError(PolicyError):
    """Policy signature verification failed."""
    pass
