# =============================================================================
# Cache Repository - SQLite CacheStore
# =============================================================================
# Implements the CacheStore contract on top of the Database connection.
#
# It handles:
#   - Converting between domain models and database rows
#   - The dedup-by-uid merge (INSERT OR IGNORE on UNIQUE(account_id, uid))
#   - Lazily stored content and attachment metadata
#   - Search, stats and retention cleanup
#
# aiosqlite runs every statement on one worker thread, but a multi-statement
# write (look up uids, insert, commit) still needs the asyncio.Lock so two
# coroutines can't interleave inside it. A failed write is rolled back as a
# whole, and any aiosqlite.Error surfaces as CacheError.
# =============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable

import aiosqlite

from mailsync.core import (
    Address,
    AttachmentMeta,
    MessageContent,
    MessageSummary,
    uid_from_id,
    utcnow,
)
from mailsync.errors import CacheError
from mailsync.storage.cache import CacheStats, check_flag_field, dedupe_batch

if TYPE_CHECKING:
    from mailsync.storage.database import Database

logger = logging.getLogger(__name__)

# Column order used by every summary SELECT
SUMMARY_COLUMNS = (
    "account_id, uid, message_id, subject, sender_name, sender_address, "
    "recipient_name, recipient_address, date_sent, is_read, has_attachments, "
    "preview_text, size_bytes, cached_at"
)

# Same columns, qualified for the messages/message_content join
_JOINED_SUMMARY_COLUMNS = ", ".join(f"m.{c.strip()}" for c in SUMMARY_COLUMNS.split(","))

_INSERT_SUMMARY = f"""INSERT OR IGNORE INTO messages ({SUMMARY_COLUMNS})
                      VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

_UPSERT_SUMMARY = f"""INSERT INTO messages ({SUMMARY_COLUMNS})
                      VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                      ON CONFLICT(account_id, uid) DO UPDATE SET
                        message_id=excluded.message_id,
                        subject=excluded.subject,
                        sender_name=excluded.sender_name,
                        sender_address=excluded.sender_address,
                        recipient_name=excluded.recipient_name,
                        recipient_address=excluded.recipient_address,
                        date_sent=excluded.date_sent,
                        is_read=excluded.is_read,
                        has_attachments=excluded.has_attachments,
                        preview_text=excluded.preview_text,
                        size_bytes=excluded.size_bytes,
                        cached_at=excluded.cached_at"""


def _to_iso(value: datetime) -> str:
    """Store every timestamp as UTC with microseconds so text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CacheRepository:
    """
    SQLite-backed CacheStore.

    Usage:
        >>> db = Database(config.database_path())
        >>> await db.connect()
        >>> cache = CacheRepository(db)
        >>> added = await cache.merge_new("personal", summaries)

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
        """
        self.db = db
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _errors(self, what: str) -> AsyncIterator[None]:
        try:
            yield
        except aiosqlite.Error as e:
            logger.error(f"Cache {what} failed: {e}")
            raise CacheError(f"Cache {what} failed: {e}") from e

    @asynccontextmanager
    async def _transaction(self, what: str) -> AsyncIterator[None]:
        """
        Run one write unit under the lock.

        If anything inside fails, statements already executed are rolled
        back so a later commit on the shared connection can't persist half
        of the unit.
        """
        async with self._lock, self._errors(what):
            try:
                yield
            except Exception:
                await self._rollback(what)
                raise

    async def _rollback(self, what: str) -> None:
        try:
            await self.db.conn.rollback()
        except (aiosqlite.Error, CacheError) as e:
            logger.warning(f"Rollback after failed {what} failed: {e}")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_all(self, account_id: str, limit: int | None = None) -> list[MessageSummary]:
        """All cached summaries for an account, newest uid first."""
        sql = f"SELECT {SUMMARY_COLUMNS} FROM messages WHERE account_id = ? ORDER BY uid DESC"
        params: tuple[Any, ...] = (account_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)

        async with self._errors("read"):
            async with self.db.conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_summary(row) for row in rows]

    async def get_by_uid(self, account_id: str, uid: int) -> MessageSummary | None:
        async with self._errors("read"):
            async with self.db.conn.execute(
                f"SELECT {SUMMARY_COLUMNS} FROM messages WHERE account_id = ? AND uid = ?",
                (account_id, uid)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_summary(row) if row else None

    async def get_content(self, account_id: str, message_id: str) -> MessageContent | None:
        """
        Get the decoded content of a message.

        Returns None when only the summary is cached (or nothing is).
        """
        uid = uid_from_id(message_id)

        async with self._errors("read"):
            async with self.db.conn.execute(
                f"""SELECT m.id, c.body_text, c.body_html, {_JOINED_SUMMARY_COLUMNS}
                    FROM messages m JOIN message_content c ON c.message_rowid = m.id
                    WHERE m.account_id = ? AND m.uid = ?""",
                (account_id, uid)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            rowid, body_text, body_html = row[0], row[1], row[2]
            summary = self._row_to_summary(row[3:])

            async with self.db.conn.execute(
                """SELECT filename, size, content_type FROM attachments
                   WHERE message_rowid = ? ORDER BY position""",
                (rowid,)
            ) as cursor:
                attachments = [
                    AttachmentMeta(filename=r[0], size_bytes=r[1], content_type=r[2])
                    for r in await cursor.fetchall()
                ]

        return MessageContent(
            summary=summary,
            text_body=body_text or "",
            html_body=body_html,
            attachments=attachments,
        )

    async def highest_uid(self, account_id: str) -> int:
        async with self._errors("read"):
            async with self.db.conn.execute(
                "SELECT MAX(uid) FROM messages WHERE account_id = ?", (account_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row and row[0] is not None else 0

    async def _uids(self, account_id: str) -> set[int]:
        async with self.db.conn.execute(
            "SELECT uid FROM messages WHERE account_id = ?", (account_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return {row[0] for row in rows}

    # =========================================================================
    # Writes
    # =========================================================================

    async def merge_new(self, account_id: str, batch: Iterable[MessageSummary]) -> int:
        """
        Insert summaries whose uid isn't cached yet.

        Returns:
            Number of messages added.
        """
        async with self._transaction("merge"):
            fresh = dedupe_batch(batch, await self._uids(account_id))
            if not fresh:
                return 0

            await self.db.conn.executemany(
                _INSERT_SUMMARY,
                [self._summary_params(account_id, s) for s in fresh]
            )
            await self.db.conn.commit()
            logger.debug(f"Merged {len(fresh)} new messages into {account_id}")
            return len(fresh)

    async def replace_all(self, account_id: str, batch: Iterable[MessageSummary]) -> None:
        """Make the account's cache exactly `batch` (content of kept uids survives)."""
        fresh = dedupe_batch(batch, set())
        keep = [s.uid for s in fresh]

        async with self._transaction("replace"):
            placeholders = ",".join("?" * len(keep))
            if keep:
                await self.db.conn.execute(
                    f"DELETE FROM messages WHERE account_id = ? AND uid NOT IN ({placeholders})",
                    (account_id, *keep)
                )
            else:
                await self.db.conn.execute(
                    "DELETE FROM messages WHERE account_id = ?", (account_id,)
                )
            await self.db.conn.executemany(
                _UPSERT_SUMMARY,
                [self._summary_params(account_id, s) for s in fresh]
            )
            await self.db.conn.commit()

    async def upsert_content(self, account_id: str, message_id: str, content: MessageContent) -> None:
        """Store decoded content and refresh the summary row it belongs to."""
        uid = uid_from_id(message_id)
        summary = replace(content.summary, account_id=account_id, uid=uid)

        async with self._transaction("content write"):
            await self.db.conn.execute(_UPSERT_SUMMARY, self._summary_params(account_id, summary))

            async with self.db.conn.execute(
                "SELECT id FROM messages WHERE account_id = ? AND uid = ?", (account_id, uid)
            ) as cursor:
                rowid = (await cursor.fetchone())[0]

            await self.db.conn.execute(
                """INSERT OR REPLACE INTO message_content
                   (message_rowid, body_text, body_html, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (rowid, content.text_body, content.html_body, _to_iso(utcnow()))
            )
            await self.db.conn.execute(
                "DELETE FROM attachments WHERE message_rowid = ?", (rowid,)
            )
            await self.db.conn.executemany(
                """INSERT INTO attachments
                   (message_rowid, position, filename, content_type, size)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (rowid, position, a.filename, a.content_type, a.size_bytes)
                    for position, a in enumerate(content.attachments)
                ]
            )
            await self.db.conn.commit()

    async def set_flag(self, account_id: str, message_id: str, field: str, value: bool) -> bool:
        check_flag_field(field)
        uid = uid_from_id(message_id)

        async with self._transaction("flag update"):
            # field is one of FLAG_FIELDS, checked above
            cursor = await self.db.conn.execute(
                f"UPDATE messages SET {field} = ? WHERE account_id = ? AND uid = ?",
                (int(bool(value)), account_id, uid)
            )
            await self.db.conn.commit()
            return cursor.rowcount > 0

    async def remove(self, account_id: str, message_id: str) -> bool:
        uid = uid_from_id(message_id)

        async with self._transaction("delete"):
            # CASCADE removes content and attachments
            cursor = await self.db.conn.execute(
                "DELETE FROM messages WHERE account_id = ? AND uid = ?", (account_id, uid)
            )
            await self.db.conn.commit()
            return cursor.rowcount > 0

    async def clear_account(self, account_id: str) -> int:
        async with self._transaction("delete"):
            cursor = await self.db.conn.execute(
                "DELETE FROM messages WHERE account_id = ?", (account_id,)
            )
            await self.db.conn.commit()
            return cursor.rowcount

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, account_id: str, query: str, limit: int | None = None) -> list[MessageSummary]:
        """Substring search on subject, sender and preview, newest date first."""
        needle = query.strip()
        if not needle:
            return []
        pattern = f"%{_escape_like(needle)}%"

        sql = f"""SELECT {SUMMARY_COLUMNS} FROM messages
                  WHERE account_id = ? AND (
                      subject LIKE ? ESCAPE '\\'
                      OR sender_name LIKE ? ESCAPE '\\'
                      OR sender_address LIKE ? ESCAPE '\\'
                      OR preview_text LIKE ? ESCAPE '\\')
                  ORDER BY date_sent DESC"""
        params: tuple[Any, ...] = (account_id, pattern, pattern, pattern, pattern)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)

        return await self._select(sql, params)

    async def search_by_sender(self, account_id: str, sender: str) -> list[MessageSummary]:
        pattern = f"%{_escape_like(sender.strip())}%"
        return await self._select(
            f"""SELECT {SUMMARY_COLUMNS} FROM messages
                WHERE account_id = ? AND (
                    sender_address LIKE ? ESCAPE '\\' OR sender_name LIKE ? ESCAPE '\\')
                ORDER BY date_sent DESC""",
            (account_id, pattern, pattern)
        )

    async def search_by_date_range(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[MessageSummary]:
        return await self._select(
            f"""SELECT {SUMMARY_COLUMNS} FROM messages
                WHERE account_id = ? AND date_sent >= ? AND date_sent <= ?
                ORDER BY date_sent DESC""",
            (account_id, _to_iso(start), _to_iso(end))
        )

    async def _select(self, sql: str, params: tuple[Any, ...]) -> list[MessageSummary]:
        async with self._errors("search"):
            async with self.db.conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_summary(row) for row in rows]

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def stats(self, account_id: str) -> CacheStats:
        async with self._errors("stats"):
            async with self.db.conn.execute(
                """SELECT COUNT(*),
                          COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0),
                          MIN(date_sent), MAX(date_sent), MAX(cached_at)
                   FROM messages WHERE account_id = ?""",
                (account_id,)
            ) as cursor:
                total, unread, oldest, newest, last_cached = await cursor.fetchone()

            async with self.db.conn.execute(
                """SELECT COUNT(*) FROM message_content c
                   JOIN messages m ON m.id = c.message_rowid
                   WHERE m.account_id = ?""",
                (account_id,)
            ) as cursor:
                (with_content,) = await cursor.fetchone()

        return CacheStats(
            account_id=account_id,
            total_messages=total,
            unread_messages=unread,
            with_content=with_content,
            oldest=_from_iso(oldest) if oldest else None,
            newest=_from_iso(newest) if newest else None,
            last_cached_at=_from_iso(last_cached) if last_cached else None,
        )

    async def clean_old(self, retention_days: int) -> int:
        cutoff = _to_iso(utcnow() - timedelta(days=retention_days))

        async with self._transaction("cleanup"):
            cursor = await self.db.conn.execute(
                "DELETE FROM messages WHERE date_sent < ?", (cutoff,)
            )
            await self.db.conn.commit()
            removed = cursor.rowcount

        if removed:
            logger.info(f"Removed {removed} cached messages older than {retention_days} days")
        return removed

    async def close(self) -> None:
        await self.db.close()

    # =========================================================================
    # Row Mapping
    # =========================================================================

    def _summary_params(self, account_id: str, s: MessageSummary) -> tuple[Any, ...]:
        return (
            account_id, s.uid, s.message_id, s.subject,
            s.sender.name, s.sender.address,
            s.recipient.name, s.recipient.address,
            _to_iso(s.date), int(s.is_read), int(s.has_attachments),
            s.preview_text, s.size_bytes, _to_iso(s.cached_at),
        )

    def _row_to_summary(self, row) -> MessageSummary:
        """Convert a database row (SUMMARY_COLUMNS order) to a MessageSummary."""
        return MessageSummary(
            account_id=row[0],
            uid=row[1],
            message_id=row[2] or "",
            subject=row[3] or "",
            sender=Address(name=row[4] or "", address=row[5] or ""),
            recipient=Address(name=row[6] or "", address=row[7] or ""),
            date=_from_iso(row[8]),
            is_read=bool(row[9]),
            has_attachments=bool(row[10]),
            preview_text=row[11] or "",
            size_bytes=row[12] or 0,
            cached_at=_from_iso(row[13]),
        )
