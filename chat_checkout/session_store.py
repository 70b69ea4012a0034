"""
Session storage.

The conversation engine never touches a global session map; it is handed
a SessionStore. InMemorySessionStore serves tests and single-process
deployments, SqliteSessionStore keeps sessions across restarts.

Both stores expire sessions after a period of inactivity, except sessions
still waiting on a payment provider: those stay alive until their payment
attempt reaches a terminal state.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from chat_checkout import config
from chat_checkout.errors import SessionExpiredError
from chat_checkout.models import Session, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SessionStore(ABC):
    """Keyed storage for sessions with inactivity expiry."""

    def __init__(self, ttl_seconds: int = config.SESSION_TTL_SECONDS, clock: Clock = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        if session.has_live_payment:
            return False
        now = now or self.clock()
        return now - session.last_updated > self.ttl

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """
        Return a copy of the session, or None if it never existed.

        Raises:
            SessionExpiredError: If the session existed but has expired
        """

    @abstractmethod
    def save(self, session: Session) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def evict_expired(self) -> List[str]:
        """Drop every expired session and return their ids."""


class InMemorySessionStore(SessionStore):
    """
    Process-local store; sessions are copied in and out.

    Expired ids are remembered for one more TTL so that a late message gets
    SessionExpiredError instead of looking like a brand new conversation.
    """

    def __init__(self, ttl_seconds: int = config.SESSION_TTL_SECONDS, clock: Clock = utcnow):
        super().__init__(ttl_seconds, clock)
        self._sessions: Dict[str, Session] = {}
        self._expired: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            if session_id in self._expired:
                raise SessionExpiredError(session_id)
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self.is_expired(session):
                self._expire(session_id, self.clock())
                raise SessionExpiredError(session_id)
            return session.model_copy(deep=True)

    def save(self, session: Session) -> None:
        with self._lock:
            self._expired.pop(session.session_id, None)
            self._sessions[session.session_id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._expired.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def evict_expired(self) -> List[str]:
        now = self.clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self.is_expired(s, now)]
            for session_id in expired:
                self._expire(session_id, now)
            forgotten = [sid for sid, at in self._expired.items() if now - at > self.ttl]
            for session_id in forgotten:
                del self._expired[session_id]
        if expired:
            logger.info("Evicted %s expired sessions", len(expired))
        return expired

    def _expire(self, session_id: str, now: datetime) -> None:
        self._sessions.pop(session_id, None)
        self._expired[session_id] = now

    def expired_count(self) -> int:
        with self._lock:
            return len(self._expired)

    def __len__(self) -> int:
        return len(self._sessions)


# Default database path
DEFAULT_DB_PATH = Path(config.DB_PATH)


class SqliteSessionStore(SessionStore):
    """
    Sessions persisted as JSON documents in SQLite.

    Uses parameterized queries and a connection per operation.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        ttl_seconds: int = config.SESSION_TTL_SECONDS,
        clock: Clock = utcnow,
    ):
        super().__init__(ttl_seconds, clock)
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_updated TEXT NOT NULL
                )
            """)

    def get(self, session_id: str) -> Optional[Session]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload, status FROM chat_sessions WHERE session_id = ?",
                (session_id,)
            ).fetchone()
            if row is None:
                return None
            if row['status'] == 'expired':
                raise SessionExpiredError(session_id)

            session = Session.model_validate_json(row['payload'])
            if self.is_expired(session):
                conn.execute(
                    "UPDATE chat_sessions SET status = 'expired' WHERE session_id = ?",
                    (session_id,)
                )
                # commit the expiry before raising
                conn.commit()
                raise SessionExpiredError(session_id)
            return session

    def save(self, session: Session) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO chat_sessions (session_id, payload, status, last_updated)
                VALUES (?, ?, 'active', ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    payload = excluded.payload,
                    status = 'active',
                    last_updated = excluded.last_updated
            """, (session.session_id, session.model_dump_json(), session.last_updated.isoformat()))

    def delete(self, session_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM chat_sessions WHERE session_id = ?", (session_id,))
            return cursor.rowcount > 0

    def evict_expired(self) -> List[str]:
        now = self.clock()
        expired = []
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT session_id, payload FROM chat_sessions WHERE status = 'active'"
            ).fetchall()
            for row in rows:
                session = Session.model_validate_json(row['payload'])
                if self.is_expired(session, now):
                    expired.append(row['session_id'])
            conn.executemany(
                "UPDATE chat_sessions SET status = 'expired' WHERE session_id = ?",
                [(sid,) for sid in expired]
            )

            # Expired rows are kept for one more TTL, then removed
            stale = [
                row['session_id']
                for row in conn.execute(
                    "SELECT session_id, last_updated FROM chat_sessions WHERE status = 'expired'"
                ).fetchall()
                if now - datetime.fromisoformat(row['last_updated']) > 2 * self.ttl
            ]
            conn.executemany("DELETE FROM chat_sessions WHERE session_id = ?", [(sid,) for sid in stale])
        if expired:
            logger.info("Evicted %s expired sessions", len(expired))
        return expired
