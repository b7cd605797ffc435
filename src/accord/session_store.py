"""In-memory negotiation session store with per-session mutation locks."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Iterator, Optional

from .errors import DuplicateSessionError, SessionNotFoundError
from .negotiation import NegotiationSession, NegotiationState

logger = logging.getLogger(__name__)

ARCHIVE_STATES = frozenset({NegotiationState.REJECTED, NegotiationState.DISPUTED})


class SessionSlot:
    """Mutable holder a caller owns while inside SessionStore.mutate()."""

    def __init__(self, session: NegotiationSession):
        self.session = session


class SessionStore:
    """
    Owns every session record, keyed by session id.

    mutate() gives exclusive ownership of one session id; distinct ids
    never share a lock.
    """

    def __init__(self):
        self._sessions: dict[str, NegotiationSession] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def create(self, session: NegotiationSession) -> NegotiationSession:
        with self._lock_for(session.session_id):
            if session.session_id in self._sessions:
                raise DuplicateSessionError(f"Session already exists: {session.session_id}")
            self._sessions[session.session_id] = session
        logger.info(
            "Negotiation session created: %s (%s <-> %s, max rounds: %d)",
            session.session_id,
            session.local_agent_id,
            session.counterparty_agent_id,
            session.max_rounds,
        )
        return session

    def get(self, session_id: str) -> NegotiationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def find(self, session_id: str) -> Optional[NegotiationSession]:
        return self._sessions.get(session_id)

    @contextmanager
    def mutate(self, session_id: str) -> Iterator[SessionSlot]:
        """
        Hold session_id exclusively; the slot's session is stored on clean exit.

        If the block raises, the stored session is left untouched.
        """
        with self._lock_for(session_id):
            slot = SessionSlot(self.get(session_id))
            yield slot
            self._sessions[session_id] = slot.session

    def archive(self, session: NegotiationSession, now: datetime) -> NegotiationSession:
        if session.is_archived:
            return session
        logger.info("Negotiation session archived: %s (state: %s)", session.session_id, session.state.value)
        return replace(session, archived_at=now)

    def all_sessions(self) -> list[NegotiationSession]:
        return list(self._sessions.values())

    def active_sessions(self, now: datetime) -> list[NegotiationSession]:
        return [
            s
            for s in list(self._sessions.values())
            if not s.is_archived and not s.is_expired(now) and s.state not in ARCHIVE_STATES
        ]

    def purge_archived(self) -> int:
        """Drop archived sessions; returns how many were removed."""
        removed = 0
        for session_id in list(self._sessions):
            with self._lock_for(session_id):
                session = self._sessions.get(session_id)
                if session is not None and session.is_archived:
                    del self._sessions[session_id]
                    removed += 1
        with self._registry_lock:
            for session_id in list(self._locks):
                if session_id not in self._sessions and not self._locks[session_id].locked():
                    del self._locks[session_id]
        return removed
