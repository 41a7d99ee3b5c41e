# =============================================================================
# Sync Orchestrator
# =============================================================================
# Decides, per read, whether to answer from the cache, refresh in the
# background, or block on a live fetch, and keeps the cache in step with the
# server.
#
# Freshness policy for get_messages():
#
#   force_refresh ............................ live fetch, merge, mark fresh
#   cache empty .............................. live fetch (as forced)
#   age <  fresh_seconds ..................... cache
#   age >  stale_seconds ..................... cache + one background refresh
#   otherwise ................................ cache
#
# Design notes:
#   - Every live operation opens its own short-lived ProtocolClient and
#     closes it afterwards. The IDLE connection is never used here.
#   - At most one refresh runs per account. A forced refresh that arrives
#     while one is running waits for that one instead of starting another.
#   - Reads degrade to the cache (flagged stale) instead of failing. Writes
#     (mark read/unread, delete) go to the server and the cache concurrently
#     and raise unless both succeed.
#   - All cache writes go through merge_new(), which drops uids already
#     cached, so refresh, catch-up and forced refresh can race safely.
# =============================================================================

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from mailsync.config import Config, SyncConfig
from mailsync.core import (
    Account,
    MessageContent,
    MessageSummary,
    uid_from_id,
)
from mailsync.credentials import CredentialProvider
from mailsync.errors import (
    AttachmentTooLargeError,
    CacheError,
    MailSyncError,
    NotFoundError,
)
from mailsync.events import EventType, LoggingSink, NotificationSink, SyncEvent
from mailsync.imap import (
    IdleMonitor,
    IdleStatus,
    ProtocolClient,
    RawContent,
    format_since_date,
    summary_from_header,
)
from mailsync.mime import has_attachments, parse_body, parse_header_block
from mailsync.storage import CacheStats, CacheStore
from mailsync.sync.session import AccountSession, SessionRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Account], ProtocolClient]

_UNSAFE_FILENAME = re.compile(r"[^a-zA-Z0-9._-]")


class Source(Enum):
    """Where the data in a result came from."""
    CACHE = "cache"
    LIVE = "imap"
    HYBRID = "hybrid"  # cache now, refresh running


@dataclass
class MessageListResult:
    """
    Answer to get_messages().

    Attributes:
        messages: Summaries, newest first.
        source: cache, imap or hybrid.
        last_sync: When the account last completed a sync.
        is_refreshing: A background refresh is running.
        cache_hit: The messages came from the cache.
        cache_age: Seconds since last_sync, None if never synced.
        imap_total: Message count reported by the server (live fetches only).
        is_stale: A live fetch failed and the cache was served instead.
    """
    messages: list[MessageSummary]
    source: Source
    last_sync: datetime | None = None
    is_refreshing: bool = False
    cache_hit: bool = False
    cache_age: float | None = None
    imap_total: int | None = None
    is_stale: bool = False


@dataclass
class ContentResult:
    content: MessageContent
    source: Source
    fetch_seconds: float = 0.0


@dataclass
class AttachmentData:
    filename: str
    content_type: str
    size_bytes: int
    data: bytes = field(repr=False, default=b"")


@dataclass
class SearchResult:
    results: list[MessageSummary]
    cache_count: int = 0
    live_count: int = 0
    total: int = 0
    search_seconds: float = 0.0


def sanitize_filename(filename: str) -> str:
    """Replace anything outside [a-zA-Z0-9._-] with an underscore."""
    cleaned = _UNSAFE_FILENAME.sub("_", filename or "")
    return cleaned or "attachment"


def make_client_factory(sync: SyncConfig) -> ClientFactory:
    """Build ProtocolClients with the timeouts and buffer from `sync`."""

    def factory(account: Account) -> ProtocolClient:
        return ProtocolClient(
            account.account_id,
            account.mailbox,
            connect_timeout=sync.connect_timeout,
            auth_timeout=sync.auth_timeout,
            fetch_timeout=sync.fetch_timeout,
            disconnect_timeout=sync.disconnect_timeout,
            recent_buffer_max=sync.recent_buffer_max,
            recent_buffer_ratio=sync.recent_buffer_ratio,
        )

    return factory


class SyncOrchestrator:
    """
    Cache-aware sync for any number of accounts.

    Usage:
        >>> orchestrator = SyncOrchestrator(cache, KeyringCredentialProvider(), config=config)
        >>> result = await orchestrator.get_messages("personal")
        >>> result.source, len(result.messages)
        (<Source.CACHE: 'cache'>, 30)
        >>> await orchestrator.start_idle("personal")
        >>> await orchestrator.close()
    """

    def __init__(
        self,
        cache: CacheStore,
        credentials: CredentialProvider,
        sink: NotificationSink | None = None,
        config: Config | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.cache = cache
        self.credentials = credentials
        self.sink = sink or LoggingSink()
        self.config = config or Config()
        self._client_factory = client_factory or make_client_factory(self.config.sync)

        self.sessions = SessionRegistry()
        self._accounts: dict[str, Account] = {
            account.account_id: account
            for account in self.config.accounts.values()
            if account.enabled
        }

    # =========================================================================
    # Accounts
    # =========================================================================

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def add_account(self, account: Account) -> None:
        self._accounts[account.account_id] = account

    async def remove_account(self, account_id: str, clear_cache: bool = False) -> None:
        """Forget an account and tear its session down."""
        self._accounts.pop(account_id, None)
        await self.sessions.remove(account_id)
        if clear_cache:
            removed = await self.cache.clear_account(account_id)
            logger.info(f"Cleared {removed} cached messages for {account_id}")

    def _account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Unknown account: {account_id}")
        return account

    def _session(self, account_id: str) -> AccountSession:
        return self.sessions.get(self._account(account_id))

    @asynccontextmanager
    async def _connection(self, account: Account) -> AsyncIterator[ProtocolClient]:
        """A connected client for one logical operation."""
        client = self._client_factory(account)
        try:
            await client.connect(self.credentials.get_credentials(account))
            yield client
        finally:
            await client.disconnect()

    # =========================================================================
    # Message Lists
    # =========================================================================

    async def get_messages(
        self,
        account_id: str,
        force_refresh: bool = False,
        limit: int | None = None,
    ) -> MessageListResult:
        """
        Return the account's newest messages.

        Raises:
            NotFoundError: Unknown account.
            ValueError: Negative limit.
            MailSyncError: Only when a forced refresh fails and nothing is
                           cached to fall back on.
        """
        if limit is None:
            limit = self.config.sync.default_limit
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        session = self._session(account_id)

        if limit == 0:
            return MessageListResult(
                messages=[],
                source=Source.CACHE,
                last_sync=session.last_sync,
                is_refreshing=session.is_refreshing,
                cache_age=session.cache_age(),
            )

        if force_refresh:
            return await self._refresh_now(session, limit, raise_if_empty=True)

        cached = await self._cached(account_id, limit)
        if not cached:
            return await self._refresh_now(session, limit, raise_if_empty=False)

        age = session.cache_age()
        result = MessageListResult(
            messages=cached,
            source=Source.CACHE,
            last_sync=session.last_sync,
            is_refreshing=session.is_refreshing,
            cache_hit=True,
            cache_age=age,
        )

        if age is not None and age < self.config.sync.fresh_seconds:
            return result

        if age is None or age > self.config.sync.stale_seconds:
            self._start_refresh(session, limit)
            result.source = Source.HYBRID
            result.is_refreshing = True

        return result

    async def _cached(self, account_id: str, limit: int | None) -> list[MessageSummary]:
        try:
            return await self.cache.get_all(account_id, limit)
        except CacheError as e:
            logger.warning(f"Cache read failed for {account_id}: {e}")
            return []

    async def _refresh_now(
        self, session: AccountSession, limit: int, raise_if_empty: bool
    ) -> MessageListResult:
        """Live fetch, or wait for the one already running."""
        task = self._start_refresh(session, limit)
        try:
            messages, total = await asyncio.shield(task)
        except MailSyncError as e:
            cached = await self._cached(session.account_id, limit)
            if not cached and raise_if_empty:
                raise
            logger.warning(f"Live fetch failed for {session.account_id}, serving cache: {e}")
            return MessageListResult(
                messages=cached,
                source=Source.CACHE,
                last_sync=session.last_sync,
                cache_hit=bool(cached),
                cache_age=session.cache_age(),
                is_stale=True,
            )

        return MessageListResult(
            messages=messages[:limit],
            source=Source.LIVE,
            last_sync=session.last_sync,
            cache_age=session.cache_age(),
            imap_total=total,
        )

    def _start_refresh(self, session: AccountSession, limit: int) -> asyncio.Task:
        """Start a refresh unless one is already running; return the running one."""
        if session.is_refreshing:
            logger.debug(f"Refresh already in flight for {session.account_id}")
            return session.refresh_task

        task = asyncio.create_task(
            self._live_fetch(session, limit),
            name=f"refresh-{session.account_id}",
        )
        task.add_done_callback(self._refresh_done)
        session.refresh_task = task
        return task

    @staticmethod
    def _refresh_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"{task.get_name()} failed: {error}")

    async def _live_fetch(
        self, session: AccountSession, limit: int
    ) -> tuple[list[MessageSummary], int | None]:
        """Fetch the newest `limit` messages and merge them into the cache."""
        account = session.account
        async with self._connection(account) as client:
            messages = await client.list_recent(limit)
            total = client.last_snapshot.total_messages if client.last_snapshot else None

        try:
            await self._merge(account.account_id, messages)
        except CacheError as e:
            # Served live, but the cursor stays put so the cache still reads as stale
            logger.warning(f"Could not merge fetched messages for {account.account_id}: {e}")
            return messages, total

        session.cursor.advance([m.uid for m in messages])
        logger.info(f"Synced {len(messages)} messages for {account.account_id}")
        return messages, total

    async def _merge(self, account_id: str, messages: list[MessageSummary]) -> int:
        """
        Merge new uids and bring the read flag of known ones up to date.

        merge_new() never overwrites a cached row, so a message read in
        another client would otherwise stay unread here.
        """
        known = {s.uid: s for s in await self.cache.get_all(account_id)}
        added = await self.cache.merge_new(account_id, messages)

        for message in messages:
            cached = known.get(message.uid)
            if cached is not None and cached.is_read != message.is_read:
                await self.cache.set_flag(account_id, message.id, "is_read", message.is_read)

        return added

    def refresh_status(self, account_id: str) -> dict:
        session = self._session(account_id)
        return {
            "is_refreshing": session.is_refreshing,
            "last_sync": session.last_sync,
        }

    # =========================================================================
    # Message Content
    # =========================================================================

    async def get_content(self, account_id: str, message_id: str) -> ContentResult:
        """
        Return the decoded message, fetching and caching it on first read.

        Raises:
            NotFoundError: Unknown account, malformed id, or no such message.
            MailSyncError: The live fetch failed.
        """
        account = self._account(account_id)
        uid = uid_from_id(message_id)
        started = time.perf_counter()

        try:
            cached = await self.cache.get_content(account_id, message_id)
        except CacheError as e:
            logger.warning(f"Cache read failed for {message_id}: {e}")
            cached = None

        if cached is not None and cached.has_body:
            return ContentResult(cached, Source.CACHE, time.perf_counter() - started)

        async with self._connection(account) as client:
            raw = await client.fetch_content(uid)

        content = await self._decode_content(account_id, raw)

        try:
            await self.cache.upsert_content(account_id, message_id, content)
        except CacheError as e:
            logger.warning(f"Could not cache content for {message_id}: {e}")

        return ContentResult(content, Source.LIVE, time.perf_counter() - started)

    async def _decode_content(self, account_id: str, raw: RawContent) -> MessageContent:
        parsed = parse_body(raw.raw_body)

        try:
            summary = await self.cache.get_by_uid(account_id, raw.uid)
        except CacheError:
            summary = None

        if summary is None:
            summary = summary_from_header(
                account_id,
                raw.uid,
                parse_header_block(raw.headers),
                is_read=raw.is_read,
                attachments=has_attachments(raw.structure),
                size_bytes=raw.size_bytes,
            )

        if parsed.attachments and not summary.has_attachments:
            # The header-only pass can miss attachments the full parse finds
            logger.debug(f"Correcting has_attachments for {account_id}/{raw.uid}")
            summary = replace(summary, has_attachments=True)

        return MessageContent(
            summary=summary,
            text_body=parsed.text_content,
            html_body=parsed.html_content,
            attachments=[a.meta() for a in parsed.attachments],
        )

    async def get_attachment(self, account_id: str, message_id: str, index: int) -> AttachmentData:
        """
        Download one attachment by its 1-based position in the message.

        Raises:
            NotFoundError: Index out of range, or no such message.
            AttachmentTooLargeError: Larger than the configured cap.
        """
        account = self._account(account_id)
        uid = uid_from_id(message_id)
        if index < 1:
            raise NotFoundError(f"Attachment index must start at 1, got {index}")

        async with self._connection(account) as client:
            raw = await client.fetch_content(uid)

        attachments = parse_body(raw.raw_body).attachments
        if index > len(attachments):
            raise NotFoundError(
                f"Message {message_id} has {len(attachments)} attachments, asked for #{index}"
            )

        attachment = attachments[index - 1]
        cap = self.config.cache.max_attachment_bytes
        if attachment.size_bytes > cap:
            raise AttachmentTooLargeError(
                f"{attachment.filename} is {attachment.size_bytes} bytes (limit {cap})"
            )

        return AttachmentData(
            filename=sanitize_filename(attachment.filename),
            content_type=attachment.content_type,
            size_bytes=attachment.size_bytes,
            data=attachment.content,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    async def mark_read(self, account_id: str, message_id: str) -> None:
        await self._set_read(account_id, message_id, True)

    async def mark_unread(self, account_id: str, message_id: str) -> None:
        await self._set_read(account_id, message_id, False)

    async def _set_read(self, account_id: str, message_id: str, is_read: bool) -> None:
        account = self._account(account_id)
        uid = uid_from_id(message_id)

        async def on_server() -> None:
            async with self._connection(account) as client:
                if is_read:
                    await client.mark_read(uid)
                else:
                    await client.mark_unread(uid)

        await self._dual_write(
            f"mark {'read' if is_read else 'unread'} {message_id}",
            on_server(),
            self.cache.set_flag(account_id, message_id, "is_read", is_read),
        )

    async def delete(self, account_id: str, message_id: str) -> None:
        """Delete and expunge on the server, and drop the cached copy."""
        account = self._account(account_id)
        uid = uid_from_id(message_id)

        async def on_server() -> None:
            async with self._connection(account) as client:
                await client.delete(uid)

        await self._dual_write(
            f"delete {message_id}",
            on_server(),
            self.cache.remove(account_id, message_id),
        )

    async def _dual_write(self, what: str, server: Awaitable, cache: Awaitable) -> None:
        """Run both writes concurrently; raise the first failure if either fails."""
        results = await asyncio.gather(server, cache, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            sides = [name for name, r in zip(("server", "cache"), results) if isinstance(r, BaseException)]
            logger.error(f"Failed to {what} ({' and '.join(sides)}): {errors[0]}")
            raise errors[0]
        logger.debug(f"{what}: done")

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, account_id: str, query: str) -> SearchResult:
        """
        Search the cache and the server's subjects at the same time.

        Cached rows win when both sides return the same uid. A failing server
        search leaves the cache results.
        """
        account = self._account(account_id)
        started = time.perf_counter()

        if not query.strip():
            return SearchResult(results=[])

        cached, live = await asyncio.gather(
            self._search_cache(account_id, query),
            self._search_live(account, query),
        )

        merged = {s.uid: s for s in live}
        merged.update({s.uid: s for s in cached})
        results = sorted(merged.values(), key=lambda s: s.date, reverse=True)

        return SearchResult(
            results=results,
            cache_count=len(cached),
            live_count=len(live),
            total=len(results),
            search_seconds=time.perf_counter() - started,
        )

    async def _search_cache(self, account_id: str, query: str) -> list[MessageSummary]:
        try:
            return await self.cache.search(account_id, query)
        except CacheError as e:
            logger.warning(f"Cache search failed for {account_id}: {e}")
            return []

    async def _search_live(self, account: Account, query: str) -> list[MessageSummary]:
        limit = self.config.sync.search_live_limit
        try:
            async with self._connection(account) as client:
                uids = await client.search(["SUBJECT", query])
                newest = sorted(uids, reverse=True)[:limit]
                return await client.fetch_by_uids(newest) if newest else []
        except MailSyncError as e:
            logger.warning(f"Server search failed for {account.account_id}, using cache only: {e}")
            return []

    # =========================================================================
    # Incremental Catch-up
    # =========================================================================

    async def incremental_catch_up(self, account_id: str) -> int:
        """
        Import messages that arrived since the newest cached uid.

        With a warm cache, searches the last `catch_up_days` and fetches only
        uids above the cached maximum (newest `catch_up_limit` of them). With
        a cold cache, fetches the newest `cold_start_limit`.

        Returns:
            How many messages were added to the cache.
        """
        session = self._session(account_id)
        sync = self.config.sync

        try:
            highest = await self.cache.highest_uid(account_id)
        except CacheError as e:
            logger.warning(f"Cache read failed for {account_id}, using cursor: {e}")
            highest = session.cursor.highest_known_uid

        async with self._connection(session.account) as client:
            if highest:
                uids = await client.search(["SINCE", format_since_date(sync.catch_up_days)])
                new_uids = sorted((u for u in uids if u > highest), reverse=True)
                new_uids = new_uids[:sync.catch_up_limit]
                fetched = await client.fetch_by_uids(new_uids) if new_uids else []
            else:
                fetched = await client.list_recent(sync.cold_start_limit)

        added = await self.cache.merge_new(account_id, fetched)
        session.cursor.advance([m.uid for m in fetched])
        logger.info(f"Catch-up for {account_id}: {len(fetched)} fetched, {added} new")
        return added

    # =========================================================================
    # IDLE Control
    # =========================================================================

    async def start_idle(self, account_id: str) -> IdleStatus:
        """Start watching the account and forwarding its events to the sink."""
        session = self._session(account_id)

        if session.monitor is None:
            session.monitor = IdleMonitor(
                session.account,
                self.credentials,
                session.events,
                config=self.config.idle,
                client_factory=self._client_factory,
            )
        await session.monitor.start()

        if session.consumer_task is None or session.consumer_task.done():
            session.consumer_task = asyncio.create_task(
                self._consume(session), name=f"events-{account_id}"
            )

        return session.monitor.status()

    async def stop_idle(self, account_id: str) -> None:
        session = self.sessions.find(account_id)
        if session is None or session.monitor is None:
            return

        await session.monitor.stop()
        await session.stop_consumer()

        # Forward what the monitor emitted while shutting down
        while not session.events.empty():
            await self._handle_event(session, session.events.get_nowait())

    async def manual_refresh(self, account_id: str) -> MessageListResult | None:
        """
        Check for new mail now.

        With a running monitor the check goes through IDLE and the result
        arrives as a newMail event; otherwise a forced get_messages() runs.
        """
        session = self._session(account_id)
        if session.monitor is not None and session.monitor.is_running:
            await session.monitor.manual_refresh()
            return None
        return await self.get_messages(account_id, force_refresh=True)

    def idle_status(self, account_id: str) -> IdleStatus | None:
        session = self.sessions.find(account_id)
        if session is None or session.monitor is None:
            return None
        return session.monitor.status()

    def all_idle_statuses(self) -> dict[str, IdleStatus]:
        return {
            session.account_id: session.monitor.status()
            for session in self.sessions.sessions()
            if session.monitor is not None
        }

    async def _consume(self, session: AccountSession) -> None:
        """Drain the account's event queue until cancelled."""
        while True:
            event = await session.events.get()
            await self._handle_event(session, event)

    async def _handle_event(self, session: AccountSession, event: SyncEvent) -> None:
        try:
            if event.event == EventType.NEW_MAIL:
                added = await self.incremental_catch_up(session.account_id)
                await self._publish(SyncEvent(
                    EventType.NEW_MAIL,
                    session.account_id,
                    {**event.payload, "new": added},
                ))
            else:
                await self._publish(event)
        except Exception as e:
            logger.exception(f"Handling {event.event.value} for {session.account_id} failed")
            await self._publish(SyncEvent(
                EventType.ERROR,
                session.account_id,
                {"message": str(e), "fatal": False},
            ))

    async def _publish(self, event: SyncEvent) -> None:
        try:
            await self.sink.publish(event)
        except Exception as e:
            logger.warning(f"Notification sink rejected {event.event.value}: {e}")

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cache_stats(self, account_id: str) -> CacheStats:
        return await self.cache.stats(account_id)

    async def clean_old_messages(self) -> int:
        return await self.cache.clean_old(self.config.cache.retention_days)

    async def close(self) -> None:
        """Stop every monitor and background task."""
        await self.sessions.close_all()
        logger.info("Sync orchestrator closed")
