import hashlib
import secrets
from datetime import UTC, datetime, timedelta

from marginalia.constants import SESSION_EXPIRY_HOURS, SESSION_TOKEN_BYTES
from marginalia.database import BaseRepository

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    token_hash TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
"""

_SQL_INSERT_SESSION = "INSERT INTO sessions (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)"
_SQL_GET_SESSION = "SELECT user_id, expires_at FROM sessions WHERE token_hash = ?"
_SQL_DELETE_SESSION = "DELETE FROM sessions WHERE token_hash = ?"
_SQL_DELETE_EXPIRED = "DELETE FROM sessions WHERE expires_at <= ?"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionRepository(BaseRepository):
    """Bearer tokens mapped to user ids. Only token hashes are stored."""

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def issue(self, user_id: str, expiry_hours: int = SESSION_EXPIRY_HOURS) -> str:
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        now = datetime.now(UTC)
        await self.conn.execute(
            _SQL_INSERT_SESSION,
            (hash_token(token), user_id, now.isoformat(), (now + timedelta(hours=expiry_hours)).isoformat()),
        )
        await self._commit()
        return token

    async def resolve(self, token: str) -> str | None:
        """Return the user id owning ``token``, or None if unknown or expired."""
        rows = await self.conn.execute_fetchall(_SQL_GET_SESSION, (hash_token(token),))
        if not rows:
            return None
        if datetime.fromisoformat(rows[0]["expires_at"]) <= datetime.now(UTC):
            return None
        return rows[0]["user_id"]

    async def revoke(self, token: str) -> bool:
        cursor = await self.conn.execute(_SQL_DELETE_SESSION, (hash_token(token),))
        await self._commit()
        return cursor.rowcount > 0

    async def purge_expired(self) -> int:
        cursor = await self.conn.execute(_SQL_DELETE_EXPIRED, (datetime.now(UTC).isoformat(),))
        await self._commit()
        return cursor.rowcount
