"""In-memory store for login sessions and pending OIDC logins.

Two maps share one lock:

* sessions, keyed by an opaque 256-bit id that travels in the
  ``session_id`` cookie, valid for 24 hours;
* OIDC states, keyed by the ``state`` parameter of an authorization
  request, holding the PKCE verifier for 10 minutes and handed out at
  most once.

Expired entries are reported as :class:`~librecov.errors.Expired` when
looked up and removed by :meth:`SessionStore.cleanup_expired`, which a
background task calls periodically.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from librecov.errors import Expired, NotFound

logger = logging.getLogger(__name__)

SESSION_TTL = 24 * 60 * 60
STATE_TTL = 10 * 60
SWEEP_INTERVAL = 5 * 60


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    user_id: int
    provider_token: str
    created_at: float
    expires_at: float


@dataclass(frozen=True, slots=True)
class StateData:
    state: str
    code_verifier: str
    created_at: float


class SessionStore:
    """Thread-safe session and state store.

    *clock* returns the current time in seconds; tests pass a fake one.
    """

    def __init__(
        self,
        *,
        session_ttl: float = SESSION_TTL,
        state_ttl: float = STATE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_ttl = session_ttl
        self._state_ttl = state_ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._states: dict[str, StateData] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------ sessions

    def create_session(self, user_id: int, provider_token: str = "") -> str:
        """Create a session for *user_id* and return its id."""
        session_id = secrets.token_urlsafe(32)
        now = self._clock()
        with self._lock:
            self._sessions[session_id] = Session(
                id=session_id,
                user_id=user_id,
                provider_token=provider_token,
                created_at=now,
                expires_at=now + self._session_ttl,
            )
        return session_id

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found")
        if self._clock() > session.expires_at:
            raise Expired("Session expired")
        return session

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def delete_user_sessions(self, user_id: int) -> int:
        """Drop every session of *user_id*; returns how many were removed."""
        with self._lock:
            doomed = [k for k, s in self._sessions.items() if s.user_id == user_id]
            for k in doomed:
                del self._sessions[k]
        return len(doomed)

    # ------------------------------------------------------------------ states

    def store_state(self, state: str, code_verifier: str) -> None:
        with self._lock:
            self._states[state] = StateData(
                state=state, code_verifier=code_verifier, created_at=self._clock()
            )

    def get_state(self, state: str) -> StateData:
        """Consume *state*.  A second call for the same value raises."""
        with self._lock:
            data = self._states.pop(state, None)
        if data is None:
            raise NotFound("State not found")
        if self._clock() - data.created_at > self._state_ttl:
            raise Expired("State expired")
        return data

    # ------------------------------------------------------------------ sweeping

    def cleanup_expired(self) -> int:
        """Remove expired sessions and states; returns the number removed."""
        now = self._clock()
        with self._lock:
            sessions = [k for k, s in self._sessions.items() if now > s.expires_at]
            for k in sessions:
                del self._sessions[k]
            states = [
                k
                for k, s in self._states.items()
                if now - s.created_at > self._state_ttl
            ]
            for k in states:
                del self._states[k]
        return len(sessions) + len(states)

    def start_sweeper(self, interval: float = SWEEP_INTERVAL) -> asyncio.Task[None]:
        """Run :meth:`cleanup_expired` every *interval* seconds.

        The caller owns the returned task and cancels it at shutdown.
        """
        return asyncio.create_task(self._sweep(interval), name="session-sweeper")

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.cleanup_expired()
            if removed:
                logger.debug("Session sweep removed %d expired entries", removed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
