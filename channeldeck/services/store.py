"""
SQLite-backed persistence for channels, users, playlists and the test lock.

Every public method opens its own aiosqlite connection, so the store is safe
to share between concurrent probe workers. Driver errors never leave this
module raw: they surface as ``StorageError`` (or ``DuplicateCodeError`` when
the unique index on a playlist code rejects an insert).
"""
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite

from channeldeck.config import get_settings
from channeldeck.errors import DuplicateCodeError, StorageError, ValidationError
from channeldeck.models.channel import Channel, ChannelIn, TestResult, TestStatus
from channeldeck.models.user import CodeSpace, Playlist, PlaylistIn, Role, User, UserIn

logger = logging.getLogger(__name__)

# Channel columns written from ChannelIn / ChannelUpdate, in insert order.
# ``order`` is a reserved word in SQL, so it lives in ``sort_order``.
CHANNEL_FIELDS = {
    "channel_id": "channel_id",
    "channel_name": "channel_name",
    "channel_url": "channel_url",
    "channel_img": "channel_img",
    "channel_group": "channel_group",
    "channel_drm_key": "channel_drm_key",
    "channel_drm_type": "channel_drm_type",
    "tvg_name": "tvg_name",
    "tvg_logo": "tvg_logo",
    "order": "sort_order",
    "is_active": "is_active",
    "country": "country",
    "language": "language",
    "resolution": "resolution",
}

CHANNEL_ORDER = "ORDER BY c.channel_group ASC, c.sort_order ASC, c.id ASC"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_channel(row: aiosqlite.Row) -> Channel:
    data = dict(row)
    data["order"] = data.pop("sort_order")
    data["status"] = TestStatus(data.pop("test_status") or TestStatus.UNTESTED.value)
    data["is_active"] = bool(data["is_active"])
    data["is_testing"] = bool(data["is_testing"])
    return Channel(**data)


def _row_to_user(row: aiosqlite.Row) -> User:
    data = dict(row)
    data["role"] = Role(data["role"])
    data["is_active"] = bool(data["is_active"])
    return User(**data)


def _row_to_playlist(row: aiosqlite.Row) -> Playlist:
    data = dict(row)
    data["is_public"] = bool(data["is_public"])
    return Playlist(**data)


class ChannelStore:
    """Async SQLite store for the channel catalog and its owners."""

    def __init__(self, db_path: Optional[str] = None):
        settings = get_settings()
        self.db_path = db_path or settings.database_path
        self._ensure_directory()

    def _ensure_directory(self):
        """Create data directory if it doesn't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _connect(self):
        """Open a connection and translate driver errors at the boundary."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "playlist_code" in message:
                raise DuplicateCodeError(f"Playlist code already taken: {message}") from e
            if "UNIQUE" in message:
                column = message.rsplit(".", 1)[-1]
                raise ValidationError(f"A record with this {column} already exists") from e
            raise StorageError(f"Integrity error: {message}") from e
        except sqlite3.Error as e:
            logger.error(f"Database error on {self.db_path}: {e}")
            raise StorageError(f"Database error: {e}") from e

    async def initialize(self):
        """Create database tables if they don't exist."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id TEXT NOT NULL UNIQUE,
                    channel_name TEXT NOT NULL,
                    channel_url TEXT NOT NULL,
                    channel_img TEXT DEFAULT '',
                    channel_group TEXT DEFAULT 'Uncategorized',
                    channel_drm_key TEXT DEFAULT '',
                    channel_drm_type TEXT DEFAULT '',
                    tvg_name TEXT DEFAULT '',
                    tvg_logo TEXT DEFAULT '',
                    sort_order INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 1,
                    country TEXT,
                    language TEXT,
                    resolution TEXT,
                    last_tested TIMESTAMP,
                    test_status TEXT DEFAULT 'untested',
                    response_time INTEGER,
                    is_testing INTEGER DEFAULT 0,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE,
                    role TEXT NOT NULL DEFAULT 'User',
                    playlist_code TEXT NOT NULL UNIQUE,
                    is_active INTEGER DEFAULT 1,
                    last_login TIMESTAMP,
                    last_paired_device TEXT,
                    device_model TEXT,
                    paired_at TIMESTAMP,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
            """)

            # Membership list for users in the User role, kept in insertion order
            await db.execute("""
                CREATE TABLE IF NOT EXISTS user_channels (
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    channel_pk INTEGER NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (user_id, channel_pk)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS playlists (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    name TEXT NOT NULL DEFAULT 'My Playlist',
                    description TEXT DEFAULT '',
                    playlist_code TEXT NOT NULL UNIQUE,
                    is_public INTEGER DEFAULT 0,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS playlist_channels (
                    playlist_id INTEGER NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
                    channel_pk INTEGER NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (playlist_id, channel_pk)
                )
            """)

            # Advisory test lock; expires_at is epoch seconds
            await db.execute("""
                CREATE TABLE IF NOT EXISTS test_locks (
                    name TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    acquired_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

            await db.execute("CREATE INDEX IF NOT EXISTS idx_channels_group_order ON channels(channel_group, sort_order)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_channels_active ON channels(is_active)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_playlists_user ON playlists(user_id)")

            await db.commit()

    # ==================== CHANNELS ====================

    async def insert_channel(self, channel: ChannelIn) -> Channel:
        """Insert one channel; a duplicate channel_id is a ValidationError."""
        values = channel.model_dump()
        columns = list(CHANNEL_FIELDS.values())
        now = utcnow()
        async with self._connect() as db:
            await db.execute(
                f"""INSERT INTO channels ({", ".join(columns)}, created_at, updated_at)
                    VALUES ({", ".join("?" * len(columns))}, ?, ?)""",
                [values[field] for field in CHANNEL_FIELDS] + [now, now],
            )
            await db.commit()
        return await self.find_by_id(channel.channel_id)

    async def upsert_channels(self, channels: Iterable[ChannelIn]) -> int:
        """Bulk store/update channels; test metadata of existing rows is preserved."""
        columns = list(CHANNEL_FIELDS.values())
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns if col != "channel_id")
        now = utcnow()
        count = 0
        async with self._connect() as db:
            for channel in channels:
                values = channel.model_dump()
                await db.execute(
                    f"""INSERT INTO channels ({", ".join(columns)}, created_at, updated_at)
                        VALUES ({", ".join("?" * len(columns))}, ?, ?)
                        ON CONFLICT(channel_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at""",
                    [values[field] for field in CHANNEL_FIELDS] + [now, now],
                )
                count += 1
            await db.commit()
        return count

    async def update_channel(self, channel_id: str, fields: dict) -> Optional[Channel]:
        """Apply a partial edit. Returns the updated channel, or None if unknown."""
        assignments = {CHANNEL_FIELDS[name]: value for name, value in fields.items() if name in CHANNEL_FIELDS}
        if assignments:
            set_clause = ", ".join(f"{col} = ?" for col in assignments)
            async with self._connect() as db:
                await db.execute(
                    f"UPDATE channels SET {set_clause}, updated_at = ? WHERE channel_id = ?",
                    [*assignments.values(), utcnow(), channel_id],
                )
                await db.commit()
        return await self.find_by_id(channel_id)

    async def delete_channel(self, channel_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM channels WHERE channel_id = ?", (channel_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_all_channels(self) -> int:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM channels")
            await db.commit()
            return cursor.rowcount

    async def find_by_id(self, channel_id: str) -> Optional[Channel]:
        """Get single channel by its external id."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM channels WHERE channel_id = ?", (channel_id,))
            row = await cursor.fetchone()
            return _row_to_channel(row) if row else None

    async def find_by_ids(self, channel_ids: Iterable[str], active_only: bool = False) -> list[Channel]:
        """Get the known channels among ``channel_ids``, in catalog order."""
        ids = list(dict.fromkeys(channel_ids))
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        active = " AND c.is_active = 1" if active_only else ""
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT c.* FROM channels c WHERE c.channel_id IN ({placeholders}){active} {CHANNEL_ORDER}",
                ids,
            )
            return [_row_to_channel(row) for row in await cursor.fetchall()]

    async def find(
        self,
        active: Optional[bool] = None,
        group: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> list[Channel]:
        """Query channels, always sorted by (channel_group, order)."""
        conditions = []
        params: list = []
        if active is not None:
            conditions.append("c.is_active = ?")
            params.append(1 if active else 0)
        if group:
            conditions.append("c.channel_group = ?")
            params.append(group)
        if search:
            conditions.append("(c.channel_name LIKE ? OR c.tvg_name LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])

        query = "SELECT c.* FROM channels c"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" {CHANNEL_ORDER}"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, skip])
        elif skip:
            query += " LIMIT -1 OFFSET ?"
            params.append(skip)

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [_row_to_channel(row) for row in await cursor.fetchall()]

    # ==================== TEST METADATA ====================

    async def update_status(self, channel_id: str, result: TestResult, tested_at: Optional[str] = None) -> bool:
        """Write every test field of one channel in a single statement."""
        async with self._connect() as db:
            cursor = await db.execute("""
                UPDATE channels
                SET last_tested = ?,
                    test_status = ?,
                    response_time = ?,
                    is_testing = 0
                WHERE channel_id = ?
            """, (
                tested_at or utcnow(),
                TestStatus.from_working(result.working).value,
                result.response_time_ms,
                channel_id,
            ))
            await db.commit()
            return cursor.rowcount > 0

    async def mark_testing(self, channel_ids: Iterable[str], testing: bool = True):
        ids = list(channel_ids)
        if not ids:
            return
        placeholders = ",".join("?" * len(ids))
        async with self._connect() as db:
            await db.execute(
                f"UPDATE channels SET is_testing = ? WHERE channel_id IN ({placeholders})",
                [1 if testing else 0, *ids],
            )
            await db.commit()

    async def reset_testing_flags(self) -> int:
        """Clear in-progress flags left behind by a crashed run."""
        async with self._connect() as db:
            cursor = await db.execute("UPDATE channels SET is_testing = 0 WHERE is_testing = 1")
            await db.commit()
            return cursor.rowcount

    # ==================== CODES ====================

    async def exists_by_code(self, space: CodeSpace, code: str) -> bool:
        """Check one code space only; user and playlist codes never cross-match."""
        table = CodeSpace(space).value
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT 1 FROM {table} WHERE playlist_code = ? LIMIT 1", (code.upper(),)
            )
            return await cursor.fetchone() is not None

    # ==================== USERS ====================

    async def insert_user(self, user: UserIn, code: str) -> User:
        now = utcnow()
        async with self._connect() as db:
            cursor = await db.execute(
                """INSERT INTO users (username, email, role, playlist_code, is_active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (user.username, user.email, user.role.value, code.upper(), 1 if user.is_active else 0, now, now),
            )
            await db.commit()
            user_id = cursor.lastrowid
        return await self.get_user(user_id=user_id)

    async def get_user(self, username: Optional[str] = None, user_id: Optional[int] = None) -> Optional[User]:
        async with self._connect() as db:
            if user_id is not None:
                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            else:
                cursor = await db.execute("SELECT * FROM users WHERE username = ?", (username,))
            row = await cursor.fetchone()
            return _row_to_user(row) if row else None

    async def get_user_by_code(self, code: str, active_only: bool = True) -> Optional[User]:
        query = "SELECT * FROM users WHERE playlist_code = ?"
        if active_only:
            query += " AND is_active = 1"
        async with self._connect() as db:
            cursor = await db.execute(query, (code.upper(),))
            row = await cursor.fetchone()
            return _row_to_user(row) if row else None

    async def list_users(self) -> list[User]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM users ORDER BY username")
            return [_row_to_user(row) for row in await cursor.fetchall()]

    async def update_user_code(self, user_id: int, code: str) -> User:
        async with self._connect() as db:
            await db.execute(
                "UPDATE users SET playlist_code = ?, updated_at = ? WHERE id = ?",
                (code.upper(), utcnow(), user_id),
            )
            await db.commit()
        return await self.get_user(user_id=user_id)

    async def touch_login(self, user_id: int):
        now = utcnow()
        async with self._connect() as db:
            await db.execute("UPDATE users SET last_login = ? WHERE id = ?", (now, user_id))
            await db.commit()

    async def record_pairing(self, user_id: int, device_name: str, device_model: str) -> User:
        now = utcnow()
        async with self._connect() as db:
            await db.execute(
                """UPDATE users
                   SET last_paired_device = ?, device_model = ?, paired_at = ?, last_login = ?
                   WHERE id = ?""",
                (device_name, device_model, now, now, user_id),
            )
            await db.commit()
        return await self.get_user(user_id=user_id)

    async def user_channel_ids(self, user_id: int) -> list[str]:
        """External ids of the user's membership list, in the order they were added."""
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT c.channel_id FROM user_channels uc
                JOIN channels c ON c.id = uc.channel_pk
                WHERE uc.user_id = ?
                ORDER BY uc.position
            """, (user_id,))
            return [row[0] for row in await cursor.fetchall()]

    async def set_user_channels(self, user_id: int, channel_ids: list[str]) -> int:
        """Replace the membership list. Unknown ids are silently dropped."""
        async with self._connect() as db:
            await db.execute("DELETE FROM user_channels WHERE user_id = ?", (user_id,))
            for position, channel_id in enumerate(dict.fromkeys(channel_ids)):
                await db.execute("""
                    INSERT INTO user_channels (user_id, channel_pk, position)
                    SELECT ?, id, ? FROM channels WHERE channel_id = ?
                """, (user_id, position, channel_id))
            await db.execute("UPDATE users SET updated_at = ? WHERE id = ?", (utcnow(), user_id))
            await db.commit()
            cursor = await db.execute("SELECT COUNT(*) FROM user_channels WHERE user_id = ?", (user_id,))
            return (await cursor.fetchone())[0]

    async def channels_for_user(self, user: User) -> list[Channel]:
        """Active channels visible to ``user``: the whole catalog for admins."""
        if user.is_admin:
            return await self.find(active=True)
        async with self._connect() as db:
            cursor = await db.execute(f"""
                SELECT c.* FROM channels c
                JOIN user_channels uc ON uc.channel_pk = c.id
                WHERE uc.user_id = ? AND c.is_active = 1
                {CHANNEL_ORDER}
            """, (user.id,))
            return [_row_to_channel(row) for row in await cursor.fetchall()]

    async def count_users_by_role(self) -> dict:
        async with self._connect() as db:
            cursor = await db.execute("SELECT role, COUNT(*) FROM users GROUP BY role")
            return {row[0]: row[1] for row in await cursor.fetchall()}

    # ==================== PLAYLISTS ====================

    async def insert_playlist(self, user_id: int, playlist: PlaylistIn, code: str) -> Playlist:
        now = utcnow()
        async with self._connect() as db:
            cursor = await db.execute(
                """INSERT INTO playlists (user_id, name, description, playlist_code, is_public, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (user_id, playlist.name, playlist.description, code.upper(),
                 1 if playlist.is_public else 0, now, now),
            )
            playlist_id = cursor.lastrowid
            for position, channel_id in enumerate(dict.fromkeys(playlist.channel_ids)):
                await db.execute("""
                    INSERT INTO playlist_channels (playlist_id, channel_pk, position)
                    SELECT ?, id, ? FROM channels WHERE channel_id = ?
                """, (playlist_id, position, channel_id))
            await db.commit()
        return await self._get_playlist("p.id = ?", playlist_id)

    async def _get_playlist(self, condition: str, value) -> Optional[Playlist]:
        async with self._connect() as db:
            cursor = await db.execute(f"""
                SELECT p.*, (SELECT COUNT(*) FROM playlist_channels pc WHERE pc.playlist_id = p.id) AS channel_count
                FROM playlists p WHERE {condition}
            """, (value,))
            row = await cursor.fetchone()
            return _row_to_playlist(row) if row else None

    async def get_playlist_by_code(self, code: str) -> Optional[Playlist]:
        return await self._get_playlist("p.playlist_code = ?", code.upper())

    async def playlists_for_user(self, user_id: int) -> list[Playlist]:
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT p.*, (SELECT COUNT(*) FROM playlist_channels pc WHERE pc.playlist_id = p.id) AS channel_count
                FROM playlists p WHERE p.user_id = ? ORDER BY p.id
            """, (user_id,))
            return [_row_to_playlist(row) for row in await cursor.fetchall()]

    async def channels_for_playlist(self, playlist_id: int) -> list[Channel]:
        async with self._connect() as db:
            cursor = await db.execute(f"""
                SELECT c.* FROM channels c
                JOIN playlist_channels pc ON pc.channel_pk = c.id
                WHERE pc.playlist_id = ? AND c.is_active = 1
                {CHANNEL_ORDER}
            """, (playlist_id,))
            return [_row_to_channel(row) for row in await cursor.fetchall()]

    # ==================== TEST LOCK ====================

    async def acquire_lock(self, name: str, holder: str, ttl_seconds: float) -> bool:
        """Take the named lock unless a live holder has it. Expired rows are taken over."""
        now = time.time()
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO test_locks (name, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE test_locks.expires_at < ?
            """, (name, holder, now, now + ttl_seconds, now))
            cursor = await db.execute("SELECT holder FROM test_locks WHERE name = ?", (name,))
            row = await cursor.fetchone()
            await db.commit()
            return row is not None and row[0] == holder

    async def refresh_lock(self, name: str, holder: str, ttl_seconds: float) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE test_locks SET expires_at = ? WHERE name = ? AND holder = ?",
                (time.time() + ttl_seconds, name, holder),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def release_lock(self, name: str, holder: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM test_locks WHERE name = ? AND holder = ?", (name, holder)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def lock_holder(self, name: str) -> Optional[str]:
        """Current live holder of the lock, ignoring expired rows."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT holder FROM test_locks WHERE name = ? AND expires_at >= ?",
                (name, time.time()),
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def clear_lock(self, name: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM test_locks WHERE name = ?", (name,))
            await db.commit()
            return cursor.rowcount > 0

    # ==================== STATS ====================

    async def channel_stats(self) -> dict:
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT COUNT(*),
                       COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0)
                FROM channels
            """)
            total, active = await cursor.fetchone()

            cursor = await db.execute("""
                SELECT channel_group, COUNT(*) AS count
                FROM channels
                GROUP BY channel_group
                ORDER BY count DESC, channel_group ASC
            """)
            by_group = [{"group": row[0], "count": row[1]} for row in await cursor.fetchall()]

            cursor = await db.execute("SELECT test_status, COUNT(*) FROM channels GROUP BY test_status")
            by_status = {status.value: 0 for status in TestStatus}
            for row in await cursor.fetchall():
                by_status[row[0] or TestStatus.UNTESTED.value] = row[1]

            cursor = await db.execute(
                "SELECT AVG(response_time) FROM channels WHERE test_status = ?",
                (TestStatus.WORKING.value,),
            )
            avg_response = (await cursor.fetchone())[0]

        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "byGroup": by_group,
            "byStatus": by_status,
            "avgResponseTime": round(avg_response) if avg_response is not None else None,
        }


# Singleton instance
_store: Optional[ChannelStore] = None


async def get_store() -> ChannelStore:
    """Get or create the store singleton."""
    global _store
    if _store is None:
        _store = ChannelStore()
        await _store.initialize()
    return _store
