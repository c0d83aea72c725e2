import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import aiosqlite

from core import (
    DueEvent, StoreUnavailable, UserEvent,
    format_dt, now_tz, sort_key, truncate_minute,
)
from db_schema import CREATE_SQL, STATUS_DONE, STATUS_PENDING


class EventStore:
    """Users and their events in SQLite.

    Every public call runs under one lock and a fresh connection, so the
    message handlers and the reminders worker never interleave writes. The
    lock is held for a single call only; callers must not keep it while
    talking to Telegram.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self):
        async with self._lock:
            try:
                async with aiosqlite.connect(self.path) as db:
                    await db.execute("PRAGMA foreign_keys=ON")
                    yield db
            except aiosqlite.Error as e:
                raise StoreUnavailable(str(e)) from e

    async def init(self):
        async with self._connect() as db:
            await db.executescript(CREATE_SQL)
            await db.commit()

    async def ensure_user(self, telegram_id: int, username: Optional[str] = None) -> int:
        async with self._connect() as db:
            # существующего пользователя не трогаем
            await db.execute(
                "INSERT INTO users(telegram_id, username) VALUES(?, ?) "
                "ON CONFLICT(telegram_id) DO NOTHING",
                (telegram_id, username),
            )
            cur = await db.execute("SELECT id FROM users WHERE telegram_id=?", (telegram_id,))
            row = await cur.fetchone()
            await cur.close()
            await db.commit()
        return row[0]

    async def create_event(self, user_id: int, text: str, event_at: datetime) -> int:
        event_at = truncate_minute(event_at)
        async with self._connect() as db:
            cur = await db.execute(
                "INSERT INTO events(user_id, text, event_time, run_at_iso, status) VALUES(?, ?, ?, ?, ?)",
                (user_id, text, format_dt(event_at), sort_key(event_at), STATUS_PENDING),
            )
            event_id = cur.lastrowid
            await cur.close()
            await db.commit()
        return event_id

    async def list_events(self, telegram_id: int, include_done: bool = False) -> List[UserEvent]:
        sql = (
            "SELECT e.text, e.event_time FROM events e "
            "JOIN users u ON e.user_id = u.id "
            "WHERE u.telegram_id=?"
        )
        params = [telegram_id]
        if not include_done:
            sql += " AND e.status=?"
            params.append(STATUS_PENDING)
        sql += " ORDER BY e.run_at_iso, e.id"

        async with self._connect() as db:
            cur = await db.execute(sql, params)
            rows = await cur.fetchall()
            await cur.close()
        return [UserEvent(text, event_time) for text, event_time in rows]

    async def find_due(self, now: Optional[datetime] = None) -> List[DueEvent]:
        now = truncate_minute(now or now_tz())
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT u.telegram_id, e.text, e.event_time FROM events e "
                "JOIN users u ON e.user_id = u.id "
                "WHERE e.status=? AND e.run_at_iso<=? "
                "ORDER BY e.run_at_iso, e.id",
                (STATUS_PENDING, sort_key(now)),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [DueEvent(*row) for row in rows]

    async def mark_delivered(self, telegram_id: int, event_time: str) -> int:
        async with self._connect() as db:
            cur = await db.execute(
                "UPDATE events SET status=?, sent_at_iso=? "
                "WHERE status=? AND event_time=? "
                "AND user_id IN (SELECT id FROM users WHERE telegram_id=?)",
                (STATUS_DONE, now_tz().isoformat(), STATUS_PENDING, event_time, telegram_id),
            )
            changed = cur.rowcount
            await cur.close()
            await db.commit()
        return changed
