# =============================================================================
# Cache Store Contract
# =============================================================================
# The cache is the system of record for summaries and decoded content. The
# orchestrator talks to it only through the CacheStore protocol, so the
# in-memory store (tests, embedding) and the SQLite repository are
# interchangeable.
#
# Merge/dedup: merge_new() looks up the uids already cached for the account,
# drops every candidate whose uid is among them (and duplicates inside the
# batch), and stores only the rest. Replaying a batch is a no-op, so
# background refresh, catch-up and forced refresh can race on one cache.
#
# Every method must be safe under concurrent use from those paths.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from mailsync.core import AttachmentMeta, MessageContent, MessageSummary, uid_from_id, utcnow

logger = logging.getLogger(__name__)

# Summary fields that set_flag() may change
FLAG_FIELDS = ("is_read", "has_attachments")


@dataclass
class CacheStats:
    """Counters for one account's cache."""
    account_id: str
    total_messages: int = 0
    unread_messages: int = 0
    with_content: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None
    last_cached_at: datetime | None = None


class CacheStore(Protocol):
    """Storage the orchestrator reads from and merges into."""

    async def get_all(self, account_id: str, limit: int | None = None) -> list[MessageSummary]:
        """All cached summaries, newest uid first."""
        ...

    async def get_by_uid(self, account_id: str, uid: int) -> MessageSummary | None:
        ...

    async def get_content(self, account_id: str, message_id: str) -> MessageContent | None:
        """Decoded content, or None if only the summary is cached."""
        ...

    async def highest_uid(self, account_id: str) -> int:
        """Largest cached uid, 0 when the account has nothing cached."""
        ...

    async def merge_new(self, account_id: str, batch: Iterable[MessageSummary]) -> int:
        """Store summaries whose uid is not cached yet. Returns how many were added."""
        ...

    async def replace_all(self, account_id: str, batch: Iterable[MessageSummary]) -> None:
        ...

    async def upsert_content(self, account_id: str, message_id: str, content: MessageContent) -> None:
        ...

    async def set_flag(self, account_id: str, message_id: str, field: str, value: bool) -> bool:
        """Update is_read / has_attachments. Returns False if the message is not cached."""
        ...

    async def remove(self, account_id: str, message_id: str) -> bool:
        ...

    async def clear_account(self, account_id: str) -> int:
        ...

    async def search(self, account_id: str, query: str, limit: int | None = None) -> list[MessageSummary]:
        """Case-insensitive substring match on subject, sender and preview."""
        ...

    async def search_by_sender(self, account_id: str, sender: str) -> list[MessageSummary]:
        ...

    async def search_by_date_range(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[MessageSummary]:
        ...

    async def stats(self, account_id: str) -> CacheStats:
        ...

    async def clean_old(self, retention_days: int) -> int:
        """Remove messages dated before the retention window. Returns the count."""
        ...

    async def close(self) -> None:
        ...


def check_flag_field(field: str) -> None:
    if field not in FLAG_FIELDS:
        raise ValueError(f"Unsupported flag field: {field!r} (expected one of {FLAG_FIELDS})")


def dedupe_batch(batch: Iterable[MessageSummary], known: set[int]) -> list[MessageSummary]:
    """
    Keep the first summary for each uid that is not in `known`.

    Shared by every CacheStore so they all merge the same way.
    """
    fresh: list[MessageSummary] = []
    seen = set(known)
    for summary in batch:
        if summary.uid in seen:
            continue
        seen.add(summary.uid)
        fresh.append(summary)
    return fresh


@dataclass
class _Body:
    text_body: str
    html_body: str | None
    attachments: list[AttachmentMeta]


class MemoryCacheStore:
    """
    CacheStore backed by dictionaries.

    Everything is guarded by one asyncio.Lock. Values are copied on the way
    in and out so callers can't mutate cached state behind the lock.
    """

    def __init__(self) -> None:
        self._summaries: dict[str, dict[int, MessageSummary]] = {}
        self._bodies: dict[str, dict[int, _Body]] = {}
        self._lock = asyncio.Lock()

    async def get_all(self, account_id: str, limit: int | None = None) -> list[MessageSummary]:
        async with self._lock:
            rows = sorted(self._summaries.get(account_id, {}).values(), key=lambda s: s.uid, reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [replace(s) for s in rows]

    async def get_by_uid(self, account_id: str, uid: int) -> MessageSummary | None:
        async with self._lock:
            summary = self._summaries.get(account_id, {}).get(uid)
            return replace(summary) if summary else None

    async def get_content(self, account_id: str, message_id: str) -> MessageContent | None:
        uid = uid_from_id(message_id)
        async with self._lock:
            summary = self._summaries.get(account_id, {}).get(uid)
            body = self._bodies.get(account_id, {}).get(uid)
            if summary is None or body is None:
                return None
            return MessageContent(
                summary=replace(summary),
                text_body=body.text_body,
                html_body=body.html_body,
                attachments=[replace(a) for a in body.attachments],
            )

    async def highest_uid(self, account_id: str) -> int:
        async with self._lock:
            return max(self._summaries.get(account_id, {}), default=0)

    async def merge_new(self, account_id: str, batch: Iterable[MessageSummary]) -> int:
        async with self._lock:
            cached = self._summaries.setdefault(account_id, {})
            fresh = dedupe_batch(batch, set(cached))
            for summary in fresh:
                cached[summary.uid] = replace(summary, account_id=account_id)
            if fresh:
                logger.debug(f"Merged {len(fresh)} new messages into {account_id}")
            return len(fresh)

    async def replace_all(self, account_id: str, batch: Iterable[MessageSummary]) -> None:
        async with self._lock:
            fresh = dedupe_batch(batch, set())
            self._summaries[account_id] = {
                s.uid: replace(s, account_id=account_id) for s in fresh
            }
            bodies = self._bodies.get(account_id, {})
            self._bodies[account_id] = {uid: b for uid, b in bodies.items() if uid in self._summaries[account_id]}

    async def upsert_content(self, account_id: str, message_id: str, content: MessageContent) -> None:
        uid = uid_from_id(message_id)
        async with self._lock:
            self._summaries.setdefault(account_id, {})[uid] = replace(
                content.summary, account_id=account_id, uid=uid
            )
            self._bodies.setdefault(account_id, {})[uid] = _Body(
                text_body=content.text_body,
                html_body=content.html_body,
                attachments=[replace(a) for a in content.attachments],
            )

    async def set_flag(self, account_id: str, message_id: str, field: str, value: bool) -> bool:
        check_flag_field(field)
        uid = uid_from_id(message_id)
        async with self._lock:
            summary = self._summaries.get(account_id, {}).get(uid)
            if summary is None:
                return False
            setattr(summary, field, bool(value))
            return True

    async def remove(self, account_id: str, message_id: str) -> bool:
        uid = uid_from_id(message_id)
        async with self._lock:
            self._bodies.get(account_id, {}).pop(uid, None)
            return self._summaries.get(account_id, {}).pop(uid, None) is not None

    async def clear_account(self, account_id: str) -> int:
        async with self._lock:
            self._bodies.pop(account_id, None)
            return len(self._summaries.pop(account_id, {}))

    async def search(self, account_id: str, query: str, limit: int | None = None) -> list[MessageSummary]:
        needle = query.strip().lower()
        if not needle:
            return []

        def matches(s: MessageSummary) -> bool:
            haystack = (s.subject, s.sender.name, s.sender.address, s.preview_text)
            return any(needle in (value or "").lower() for value in haystack)

        return await self._filter(account_id, matches, limit)

    async def search_by_sender(self, account_id: str, sender: str) -> list[MessageSummary]:
        needle = sender.strip().lower()

        def matches(s: MessageSummary) -> bool:
            return needle in s.sender.address.lower() or needle in s.sender.name.lower()

        return await self._filter(account_id, matches)

    async def search_by_date_range(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[MessageSummary]:
        return await self._filter(account_id, lambda s: start <= s.date <= end)

    async def _filter(self, account_id: str, predicate, limit: int | None = None) -> list[MessageSummary]:
        async with self._lock:
            rows = [s for s in self._summaries.get(account_id, {}).values() if predicate(s)]
        rows.sort(key=lambda s: s.date, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [replace(s) for s in rows]

    async def stats(self, account_id: str) -> CacheStats:
        async with self._lock:
            rows = list(self._summaries.get(account_id, {}).values())
            with_content = len(self._bodies.get(account_id, {}))

        stats = CacheStats(account_id=account_id, with_content=with_content)
        if rows:
            stats.total_messages = len(rows)
            stats.unread_messages = sum(1 for s in rows if not s.is_read)
            stats.oldest = min(s.date for s in rows)
            stats.newest = max(s.date for s in rows)
            stats.last_cached_at = max(s.cached_at for s in rows)
        return stats

    async def clean_old(self, retention_days: int) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        removed = 0
        async with self._lock:
            for account_id, rows in self._summaries.items():
                old = [uid for uid, s in rows.items() if s.date < cutoff]
                for uid in old:
                    del rows[uid]
                    self._bodies.get(account_id, {}).pop(uid, None)
                removed += len(old)
        if removed:
            logger.info(f"Removed {removed} cached messages older than {retention_days} days")
        return removed

    async def close(self) -> None:
        pass
