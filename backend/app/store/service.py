"""DuckDB-backed storage for users, sessions and chat/Q&A messages.

This is the persistence collaborator behind the socket hub and the REST
routers. Methods are coroutines so callers treat every storage call as a
suspension point; the embedded DuckDB calls themselves are synchronous and
fast for this volume of data.

Database Schema:
    users              - accounts (role, active flag)
    sessions           - scheduled talks (speaker, chat/qa switches)
    session_attendees  - (session_id, user_id) registrations
    messages           - chat messages, questions, announcements
    question_votes     - one row per (question, voter), direction up/down
    message_likes      - one row per (message, user)

Usage:
    store = ConferenceStore.get_instance()
    msg = await store.create_message(session_id, user_id, "hello")
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import duckdb

from .schemas import (
    Answer,
    CategoryStats,
    ContentType,
    Message,
    MessageKind,
    Session,
    SessionStatus,
    User,
    UserRole,
    VoteDirection,
    VoteTally,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the underlying database rejects an operation."""


def _utcnow() -> datetime:
    # DuckDB TIMESTAMP columns are naive; values are always UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        name        VARCHAR NOT NULL,
        email       VARCHAR NOT NULL,
        role        VARCHAR NOT NULL DEFAULT 'attendee',
        is_active   BOOLEAN NOT NULL DEFAULT TRUE,
        avatar      VARCHAR,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id             VARCHAR PRIMARY KEY,
        title          VARCHAR NOT NULL,
        description    VARCHAR NOT NULL DEFAULT '',
        speaker_id     VARCHAR NOT NULL,
        starts_at      TIMESTAMP,
        ends_at        TIMESTAMP,
        max_attendees  INTEGER NOT NULL DEFAULT 100,
        category       VARCHAR NOT NULL DEFAULT 'other',
        status         VARCHAR NOT NULL DEFAULT 'scheduled',
        is_active      BOOLEAN NOT NULL DEFAULT TRUE,
        chat_enabled   BOOLEAN NOT NULL DEFAULT TRUE,
        qa_enabled     BOOLEAN NOT NULL DEFAULT TRUE,
        created_at     TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_attendees (
        session_id     VARCHAR NOT NULL,
        user_id        VARCHAR NOT NULL,
        registered_at  TIMESTAMP NOT NULL,
        PRIMARY KEY (session_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id            VARCHAR PRIMARY KEY,
        session_id    VARCHAR NOT NULL,
        author_id     VARCHAR,
        body          VARCHAR NOT NULL,
        kind          VARCHAR NOT NULL DEFAULT 'message',
        category      VARCHAR NOT NULL DEFAULT 'general',
        is_anonymous  BOOLEAN NOT NULL DEFAULT FALSE,
        content_type  VARCHAR NOT NULL DEFAULT 'text',
        file_url      VARCHAR,
        file_name     VARCHAR,
        file_type     VARCHAR,
        reactions     VARCHAR NOT NULL DEFAULT '{}',
        seq           INTEGER NOT NULL,
        created_at    TIMESTAMP NOT NULL,
        answer        VARCHAR,
        answered_by   VARCHAR,
        answered_at   TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)",
    """
    CREATE TABLE IF NOT EXISTS question_votes (
        message_id  VARCHAR NOT NULL,
        voter_id    VARCHAR NOT NULL,
        direction   VARCHAR NOT NULL,
        PRIMARY KEY (message_id, voter_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_likes (
        message_id  VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
]

_USER_COLUMNS = ["id", "name", "email", "role", "is_active", "avatar", "created_at"]

_SESSION_COLUMNS = [
    "id", "title", "description", "speaker_id", "starts_at", "ends_at",
    "max_attendees", "category", "status", "is_active", "chat_enabled",
    "qa_enabled", "created_at",
]

_MESSAGE_COLUMNS = [
    "id", "session_id", "author_id", "body", "kind", "category",
    "is_anonymous", "content_type", "file_url", "file_name", "file_type",
    "reactions", "seq", "created_at", "answer", "answered_by", "answered_at",
]

_NET_VOTES = """
    LEFT JOIN (
        SELECT message_id,
               SUM(CASE WHEN direction = 'up' THEN 1 ELSE -1 END) AS net
        FROM question_votes
        GROUP BY message_id
    ) v ON v.message_id = m.id
"""

_ORDERINGS = {
    "newest": "m.seq DESC",
    "oldest": "m.seq ASC",
    "popular": "COALESCE(v.net, 0) DESC, m.seq DESC",
}


class ConferenceStore:
    """Singleton DuckDB store for the conference domain.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ConferenceStore"] = None
    _db_path: str = "convomanage.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ConferenceStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def _execute(self, sql: str, params: Optional[list] = None):
        try:
            return self._get_connection().execute(sql, params or [])
        except duckdb.Error as exc:
            logger.error("[Store] Query failed: %s", exc)
            raise StoreError(str(exc)) from exc

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    async def create_user(
        self,
        name: str,
        email: str,
        role: UserRole = UserRole.ATTENDEE,
        is_active: bool = True,
        avatar: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        self._execute(
            """
            INSERT INTO users (id, name, email, role, is_active, avatar, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [user_id, name, email, UserRole(role).value, is_active, avatar, _utcnow()],
        )
        return await self.get_user(user_id)

    async def get_user(self, user_id: str) -> Optional[User]:
        row = self._execute(
            f"SELECT {', '.join(_USER_COLUMNS)} FROM users WHERE id = ?", [user_id]
        ).fetchone()
        return User(**dict(zip(_USER_COLUMNS, row))) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._execute(
            f"SELECT {', '.join(_USER_COLUMNS)} FROM users WHERE lower(email) = lower(?)",
            [email],
        ).fetchone()
        return User(**dict(zip(_USER_COLUMNS, row))) if row else None

    async def list_users(
        self,
        role: Optional[UserRole] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[User]:
        """List accounts, newest first.

        Args:
            role: Only accounts with this role.
            is_active: Only active (True) or deactivated (False) accounts.
            search: Case-insensitive substring of name or email.
        """
        sql = f"SELECT {', '.join(_USER_COLUMNS)} FROM users WHERE TRUE"
        params: list = []
        if role is not None:
            sql += " AND role = ?"
            params.append(UserRole(role).value)
        if is_active is not None:
            sql += " AND is_active = ?"
            params.append(is_active)
        if search:
            sql += " AND (name ILIKE ? OR email ILIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])
        sql += " ORDER BY created_at DESC, id ASC"
        rows = self._execute(sql, params).fetchall()
        return [User(**dict(zip(_USER_COLUMNS, row))) for row in rows]

    async def update_user(self, user_id: str, **fields) -> Optional[User]:
        allowed = {"name", "email", "role", "is_active", "avatar"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if "role" in updates:
            updates["role"] = UserRole(updates["role"]).value
        if updates:
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            self._execute(
                f"UPDATE users SET {set_clause} WHERE id = ?",
                list(updates.values()) + [user_id],
            )
        return await self.get_user(user_id)

    async def set_user_active(self, user_id: str, is_active: bool) -> None:
        self._execute("UPDATE users SET is_active = ? WHERE id = ?", [is_active, user_id])

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    async def create_session(
        self,
        title: str,
        speaker_id: str,
        description: str = "",
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        max_attendees: int = 100,
        category: str = "other",
        chat_enabled: bool = True,
        qa_enabled: bool = True,
        session_id: Optional[str] = None,
    ) -> Session:
        session_id = session_id or str(uuid.uuid4())
        self._execute(
            """
            INSERT INTO sessions
              (id, title, description, speaker_id, starts_at, ends_at,
               max_attendees, category, status, is_active, chat_enabled,
               qa_enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?, ?, ?)
            """,
            [
                session_id, title, description, speaker_id, starts_at, ends_at,
                max_attendees, category, SessionStatus.SCHEDULED.value,
                chat_enabled, qa_enabled, _utcnow(),
            ],
        )
        logger.info("[Store] Created session %s (%s)", session_id, title)
        return await self.get_session(session_id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = self._execute(
            f"SELECT {', '.join(_SESSION_COLUMNS)} FROM sessions WHERE id = ?",
            [session_id],
        ).fetchone()
        if not row:
            return None
        return Session(**dict(zip(_SESSION_COLUMNS, row)), attendees=self._attendees(session_id))

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        speaker_id: Optional[str] = None,
        attendee_id: Optional[str] = None,
    ) -> List[Session]:
        """List active sessions, soonest first."""
        sql = f"SELECT {', '.join(_SESSION_COLUMNS)} FROM sessions WHERE is_active"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(SessionStatus(status).value)
        if speaker_id is not None:
            sql += " AND speaker_id = ?"
            params.append(speaker_id)
        if attendee_id is not None:
            sql += " AND id IN (SELECT session_id FROM session_attendees WHERE user_id = ?)"
            params.append(attendee_id)
        sql += " ORDER BY starts_at ASC NULLS LAST, created_at ASC"
        rows = self._execute(sql, params).fetchall()
        return [
            Session(**dict(zip(_SESSION_COLUMNS, row)), attendees=self._attendees(row[0]))
            for row in rows
        ]

    async def update_session(self, session_id: str, **fields) -> Optional[Session]:
        allowed = {
            "title", "description", "starts_at", "ends_at", "max_attendees",
            "category", "status", "is_active", "chat_enabled", "qa_enabled",
        }
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if "status" in updates:
            updates["status"] = SessionStatus(updates["status"]).value
        if updates:
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            self._execute(
                f"UPDATE sessions SET {set_clause} WHERE id = ?",
                list(updates.values()) + [session_id],
            )
        return await self.get_session(session_id)

    async def cancel_upcoming_sessions(self, speaker_id: str) -> List[str]:
        """Cancel and deactivate a speaker's sessions that have not started yet.

        Returns:
            Ids of the cancelled sessions.
        """
        rows = self._execute(
            """
            UPDATE sessions SET status = ?, is_active = FALSE
            WHERE speaker_id = ? AND is_active AND starts_at >= ?
            RETURNING id
            """,
            [SessionStatus.CANCELLED.value, speaker_id, _utcnow()],
        ).fetchall()
        if rows:
            logger.info("[Store] Cancelled %d upcoming session(s) of %s", len(rows), speaker_id)
        return [r[0] for r in rows]

    async def add_attendee(self, session_id: str, user_id: str) -> bool:
        """Register a user; returns False when already registered."""
        existing = self._execute(
            "SELECT 1 FROM session_attendees WHERE session_id = ? AND user_id = ?",
            [session_id, user_id],
        ).fetchone()
        if existing:
            return False
        self._execute(
            "INSERT INTO session_attendees (session_id, user_id, registered_at) VALUES (?, ?, ?)",
            [session_id, user_id, _utcnow()],
        )
        return True

    async def remove_attendee(self, session_id: str, user_id: str) -> bool:
        removed = self._execute(
            "DELETE FROM session_attendees WHERE session_id = ? AND user_id = ? RETURNING user_id",
            [session_id, user_id],
        ).fetchall()
        return len(removed) > 0

    def _attendees(self, session_id: str) -> List[str]:
        rows = self._execute(
            "SELECT user_id FROM session_attendees WHERE session_id = ? "
            "ORDER BY registered_at ASC, user_id ASC",
            [session_id],
        ).fetchall()
        return [r[0] for r in rows]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def create_message(
        self,
        session_id: str,
        author_id: Optional[str],
        body: str,
        kind: MessageKind = MessageKind.MESSAGE,
        category: str = "general",
        is_anonymous: bool = False,
        content_type: ContentType = ContentType.TEXT,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Message:
        """Insert a message and assign the next per-session sequence number."""
        message_id = str(uuid.uuid4())
        seq = self._execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE session_id = ?",
            [session_id],
        ).fetchone()[0]
        self._execute(
            """
            INSERT INTO messages
              (id, session_id, author_id, body, kind, category, is_anonymous,
               content_type, file_url, file_name, file_type, reactions, seq,
               created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '{}', ?, ?)
            """,
            [
                message_id, session_id, author_id, body, MessageKind(kind).value,
                category, is_anonymous, ContentType(content_type).value,
                file_url, file_name, file_type, seq, _utcnow(),
            ],
        )
        return await self.get_message(message_id)

    async def get_message(self, message_id: str) -> Optional[Message]:
        row = self._execute(
            f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages WHERE id = ?",
            [message_id],
        ).fetchone()
        return self._row_to_message(row) if row else None

    async def list_messages(
        self,
        session_id: str,
        kind: Optional[MessageKind] = None,
        category: Optional[str] = None,
        answered: Optional[bool] = None,
        order: str = "newest",
        offset: int = 0,
        limit: int = 50,
    ) -> List[Message]:
        where, params = self._message_filter(session_id, kind, category, answered)
        columns = ", ".join(f"m.{c}" for c in _MESSAGE_COLUMNS)
        rows = self._execute(
            f"SELECT {columns} FROM messages m {_NET_VOTES} WHERE {where} "
            f"ORDER BY {_ORDERINGS.get(order, _ORDERINGS['newest'])} LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return [self._row_to_message(r) for r in rows]

    async def count_messages(
        self,
        session_id: str,
        kind: Optional[MessageKind] = None,
        category: Optional[str] = None,
        answered: Optional[bool] = None,
    ) -> int:
        where, params = self._message_filter(session_id, kind, category, answered)
        return self._execute(
            f"SELECT COUNT(*) FROM messages m WHERE {where}", params
        ).fetchone()[0]

    async def delete_message(self, message_id: str) -> bool:
        deleted = self._execute(
            "DELETE FROM messages WHERE id = ? RETURNING id", [message_id]
        ).fetchall()
        self._execute("DELETE FROM question_votes WHERE message_id = ?", [message_id])
        self._execute("DELETE FROM message_likes WHERE message_id = ?", [message_id])
        return len(deleted) > 0

    async def add_reaction(self, message_id: str, reaction: str) -> Dict[str, int]:
        """Increment one reaction counter and return the full mapping."""
        message = await self.get_message(message_id)
        if message is None:
            raise StoreError(f"message {message_id} does not exist")
        reactions = dict(message.reactions)
        reactions[reaction] = reactions.get(reaction, 0) + 1
        self._execute(
            "UPDATE messages SET reactions = ? WHERE id = ?",
            [json.dumps(reactions, sort_keys=True), message_id],
        )
        return reactions

    async def set_answer(self, message_id: str, answer: str, answered_by: str) -> Optional[Message]:
        """Store (or overwrite) the single answer of a question."""
        self._execute(
            "UPDATE messages SET answer = ?, answered_by = ?, answered_at = ? WHERE id = ?",
            [answer, answered_by, _utcnow(), message_id],
        )
        return await self.get_message(message_id)

    async def category_stats(self, session_id: str) -> List[CategoryStats]:
        rows = self._execute(
            """
            SELECT category,
                   COUNT(*) AS total,
                   SUM(CASE WHEN answer IS NOT NULL THEN 1 ELSE 0 END) AS answered
            FROM messages
            WHERE session_id = ? AND kind = 'question'
            GROUP BY category
            ORDER BY category
            """,
            [session_id],
        ).fetchall()
        return [
            CategoryStats(name=r[0], total_questions=r[1], answered_questions=int(r[2] or 0))
            for r in rows
        ]

    # -----------------------------------------------------------------------
    # Votes & likes
    # -----------------------------------------------------------------------

    async def get_vote(self, message_id: str, voter_id: str) -> Optional[VoteDirection]:
        row = self._execute(
            "SELECT direction FROM question_votes WHERE message_id = ? AND voter_id = ?",
            [message_id, voter_id],
        ).fetchone()
        return VoteDirection(row[0]) if row else None

    async def set_vote(self, message_id: str, voter_id: str, direction: VoteDirection) -> None:
        self._execute(
            "DELETE FROM question_votes WHERE message_id = ? AND voter_id = ?",
            [message_id, voter_id],
        )
        self._execute(
            "INSERT INTO question_votes (message_id, voter_id, direction) VALUES (?, ?, ?)",
            [message_id, voter_id, VoteDirection(direction).value],
        )

    async def delete_vote(self, message_id: str, voter_id: str) -> None:
        self._execute(
            "DELETE FROM question_votes WHERE message_id = ? AND voter_id = ?",
            [message_id, voter_id],
        )

    async def vote_tally(self, message_id: str) -> VoteTally:
        row = self._execute(
            """
            SELECT COUNT(*) FILTER (WHERE direction = 'up'),
                   COUNT(*) FILTER (WHERE direction = 'down')
            FROM question_votes WHERE message_id = ?
            """,
            [message_id],
        ).fetchone()
        return VoteTally(upvotes=row[0] or 0, downvotes=row[1] or 0)

    async def toggle_like(self, message_id: str, user_id: str) -> Tuple[bool, int]:
        """Flip a like; returns (now_liked, like_count)."""
        removed = self._execute(
            "DELETE FROM message_likes WHERE message_id = ? AND user_id = ? RETURNING user_id",
            [message_id, user_id],
        ).fetchall()
        liked = not removed
        if liked:
            self._execute(
                "INSERT INTO message_likes (message_id, user_id) VALUES (?, ?)",
                [message_id, user_id],
            )
        count = self._execute(
            "SELECT COUNT(*) FROM message_likes WHERE message_id = ?", [message_id]
        ).fetchone()[0]
        return liked, count

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _message_filter(
        session_id: str,
        kind: Optional[MessageKind],
        category: Optional[str],
        answered: Optional[bool],
    ) -> Tuple[str, list]:
        clauses = ["m.session_id = ?"]
        params: list = [session_id]
        if kind is not None:
            clauses.append("m.kind = ?")
            params.append(MessageKind(kind).value)
        if category:
            clauses.append("m.category = ?")
            params.append(category)
        if answered is True:
            clauses.append("m.answer IS NOT NULL")
        elif answered is False:
            clauses.append("m.answer IS NULL")
        return " AND ".join(clauses), params

    @staticmethod
    def _row_to_message(row) -> Message:
        d = dict(zip(_MESSAGE_COLUMNS, row))
        answer_text = d.pop("answer")
        answered_by = d.pop("answered_by")
        answered_at = d.pop("answered_at")
        d["reactions"] = json.loads(d["reactions"] or "{}")
        if answer_text is not None:
            d["answer"] = Answer(text=answer_text, answered_by=answered_by, answered_at=answered_at)
        return Message(**d)
