import enum
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .config import DEFAULT_REAP_INTERVAL, DEFAULT_SESSION_TTL
from .errors import DuplicateSession, StaleSession, UnknownSession

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 16


class SessionState(enum.Enum):
    INITIATED = "initiated"
    CHALLENGE_ISSUED = "challenge_issued"
    FINALIZED = "finalized"


# Total transition function: every state has exactly one successor (or none).
NEXT_STATE = {
    SessionState.INITIATED: SessionState.CHALLENGE_ISSUED,
    SessionState.CHALLENGE_ISSUED: SessionState.FINALIZED,
    SessionState.FINALIZED: None,
}


def next_state(state):
    return NEXT_STATE[state]


def new_session_id():
    return secrets.token_urlsafe(SESSION_ID_BYTES)


@dataclass
class Session:
    session_id: str
    commitment: bytes
    secret: Any
    created_at: float
    state: SessionState = SessionState.INITIATED
    history: List[SessionState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)


class _Entry:
    __slots__ = ("session", "lock", "removed")

    def __init__(self, session):
        self.session = session
        self.lock = threading.Lock()
        self.removed = False


class SessionStore:
    """Concurrent map of in-flight sessions.

    Each entry has its own lock; there is no store-wide lock. Inserting and
    popping rely on the atomicity of single dict operations.
    """

    def __init__(self, ttl=DEFAULT_SESSION_TTL, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries = {}
        self._reaper = None
        self._stop = threading.Event()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, session_id):
        return session_id in self._entries

    def create(self, commitment, secret):
        session = Session(new_session_id(), commitment, secret, self.clock())
        self.insert(session)
        return session

    def insert(self, session):
        entry = _Entry(session)
        if self._entries.setdefault(session.session_id, entry) is not entry:
            logger.critical("[SESSION] duplicate id %s", session.session_id)
            raise DuplicateSession(f"session {session.session_id} already exists")

    def _expired(self, session):
        return self.clock() - session.created_at > self.ttl

    def _discard(self, session_id, entry):
        # caller holds entry.lock
        entry.removed = True
        entry.session.secret = None
        if self._entries.get(session_id) is entry:
            self._entries.pop(session_id, None)

    def try_transition(self, session_id, expected, new, mutator=None):
        """Atomically move ``session_id`` from ``expected`` to ``new``.

        ``mutator(session)`` runs first, under the entry's lock; if it raises,
        the session keeps its current state. Returns the mutator's result.
        """
        if next_state(expected) is not new:
            raise ValueError(f"illegal transition {expected.name} -> {getattr(new, 'name', new)}")
        entry = self._entries.get(session_id)
        if entry is None:
            raise UnknownSession(f"unknown session {session_id}")
        with entry.lock:
            if entry.removed:
                raise UnknownSession(f"unknown session {session_id}")
            session = entry.session
            if self._expired(session):
                self._discard(session_id, entry)
                raise UnknownSession(f"session {session_id} expired")
            if session.state is not expected:
                raise StaleSession(
                    f"session {session_id} is {session.state.value}, expected {expected.value}")
            result = mutator(session) if mutator is not None else None
            session.state = new
            session.history.append(new)
            return result

    def remove(self, session_id):
        entry = self._entries.pop(session_id, None)
        if entry is None:
            return
        with entry.lock:
            entry.removed = True
            entry.session.secret = None

    def reap(self):
        """Remove every expired session. Returns how many were dropped."""
        dropped = 0
        for session_id, entry in list(self._entries.items()):
            with entry.lock:
                if not entry.removed and self._expired(entry.session):
                    self._discard(session_id, entry)
                    dropped += 1
        if dropped:
            logger.info("[REAPER] dropped %d expired sessions", dropped)
        return dropped

    def start_reaper(self, interval=DEFAULT_REAP_INTERVAL):
        if self._reaper is not None:
            return
        self._stop.clear()

        def loop():
            while not self._stop.wait(interval):
                self.reap()

        self._reaper = threading.Thread(target=loop, name="session-reaper", daemon=True)
        self._reaper.start()

    def stop_reaper(self):
        if self._reaper is None:
            return
        self._stop.set()
        self._reaper.join()
        self._reaper = None

    def snapshot(self, session_id) -> Optional[Session]:
        entry = self._entries.get(session_id)
        return None if entry is None else entry.session
