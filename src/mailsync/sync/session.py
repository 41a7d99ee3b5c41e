# =============================================================================
# Account Sessions
# =============================================================================
# Per-account sync state, owned by a registry with an explicit lifecycle.
#
# A session holds everything the orchestrator needs to remember about one
# account between calls:
#   - the SyncCursor (last sync time, highest uid merged)
#   - the in-flight background refresh, if any
#   - the IDLE monitor, its event queue and the task consuming that queue
#
# Sessions are created on first access and torn down when the account is
# removed or the orchestrator closes.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from mailsync.core import Account, SyncCursor, utcnow
from mailsync.imap import IdleMonitor

logger = logging.getLogger(__name__)


@dataclass
class AccountSession:
    """
    Sync state for one account.

    Attributes:
        account: The account this session belongs to.
        cursor: How far the account has been synced.
        events: Queue the IDLE monitor writes to and the consumer reads.
        refresh_task: The background refresh currently running, if any.
                      At most one exists per account at a time.
        monitor: The IDLE monitor, once start_idle() has been called.
        consumer_task: Task draining `events` into the notification sink.
    """
    account: Account
    cursor: SyncCursor = field(default_factory=SyncCursor)
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    refresh_task: asyncio.Task | None = None
    monitor: IdleMonitor | None = None
    consumer_task: asyncio.Task | None = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    @property
    def last_sync(self) -> datetime | None:
        return self.cursor.last_sync_timestamp

    @property
    def is_refreshing(self) -> bool:
        return self.refresh_task is not None and not self.refresh_task.done()

    def cache_age(self, now: datetime | None = None) -> float | None:
        """Seconds since the last completed sync, None if never synced."""
        if self.last_sync is None:
            return None
        return ((now or utcnow()) - self.last_sync).total_seconds()

    async def stop_consumer(self) -> None:
        task, self.consumer_task = self.consumer_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        """Stop the monitor, the consumer and any background refresh."""
        if self.monitor is not None:
            await self.monitor.stop()
            self.monitor = None

        await self.stop_consumer()

        task, self.refresh_task = self.refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        logger.debug(f"Closed session for {self.account_id}")


class SessionRegistry:
    """
    Owns every AccountSession.

    Usage:
        >>> registry = SessionRegistry()
        >>> session = registry.get(account)      # created on first access
        >>> await registry.remove(account.account_id)
    """

    def __init__(self) -> None:
        self._sessions: dict[str, AccountSession] = {}

    def get(self, account: Account) -> AccountSession:
        session = self._sessions.get(account.account_id)
        if session is None:
            session = AccountSession(account=account)
            self._sessions[account.account_id] = session
            logger.debug(f"Created session for {account.account_id}")
        return session

    def find(self, account_id: str) -> AccountSession | None:
        return self._sessions.get(account_id)

    async def remove(self, account_id: str) -> bool:
        """Tear down and forget a session. Returns False if there was none."""
        session = self._sessions.pop(account_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()

    def sessions(self) -> list[AccountSession]:
        return list(self._sessions.values())

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
