# =============================================================================
# IDLE Monitor
# =============================================================================
# Background monitor for IMAP IDLE push notifications, one per account.
#
# Key responsibilities:
#   - Maintain a dedicated connection to the account's mailbox
#   - Detect IDLE support, falling back to fixed-interval polling
#   - Translate server pushes into events on the account's queue
#   - Restart the IDLE session before the server drops it
#   - Reconnect with linear backoff, up to a fixed number of attempts
#   - Graceful, bounded shutdown
#
# State machine:
#
#   DISCONNECTED -> CONNECTING -> CONNECTED -> (capability check)
#                       ^                          |            |
#                       |                       IDLING       POLLING
#                       |                          |            |
#                       +-------- ERROR <----------+------------+
#                         (backoff: delay * attempts)
#
# Design notes:
#   - The IDLE connection is never shared and never used for mutations;
#     the orchestrator opens a separate ProtocolClient for those.
#   - Events go into an asyncio.Queue owned by the account's session. The
#     orchestrator consumes it in its own task, so nothing slow ever runs
#     inside the network loop.
#   - Transient errors are only logged. The queue sees an ERROR event once
#     the retry budget is spent, or immediately for authentication failures.
#   - The retry budget is only refilled once IDLE or polling is running, so
#     a server that accepts logins but fails right after still runs it out.
#   - A server that refuses the IDLE command (usually one only assumed to
#     support it from its hostname) is polled instead for the rest of the run.
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from mailsync.config import IdleConfig
from mailsync.core import Account, ConnectionState, utcnow
from mailsync.credentials import CredentialProvider
from mailsync.errors import AuthError, IdleRefusedError, MailSyncError
from mailsync.events import EventType, SyncEvent
from mailsync.imap.client import ProtocolClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Account], ProtocolClient]


def default_client_factory(account: Account) -> ProtocolClient:
    return ProtocolClient(account.account_id, account.mailbox)


@dataclass(frozen=True)
class IdleStatus:
    """Read-only snapshot of a monitor, safe to hand to anyone."""
    state: ConnectionState
    is_connected: bool
    is_idling: bool
    supports_idle: bool
    last_activity: datetime | None
    attempts: int
    detection_method: str

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "isConnected": self.is_connected,
            "isIdling": self.is_idling,
            "supportsIdle": self.supports_idle,
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
            "attempts": self.attempts,
            "detectionMethod": self.detection_method,
        }


class IdleMonitor:
    """
    Keeps one account's mailbox under watch.

    Usage:
        >>> events = asyncio.Queue()
        >>> monitor = IdleMonitor(account, KeyringCredentialProvider(), events)
        >>> await monitor.start()
        >>> event = await events.get()   # SyncEvent(NEW_MAIL, ...)
        >>> await monitor.stop()

    Events put on the queue:
        CONNECTED      {}                       after each successful connect
        NEW_MAIL       {"count": N}             server reported N EXISTS
        NEW_MAIL       {"count": 0}             poll tick (no IDLE support)
        NEW_MAIL       {"count": 0, "manual": True}   manual_refresh()
        MAIL_DELETED   {"seq": N}               server reported N EXPUNGE
        DISCONNECTED   {}                       connection torn down
        ERROR          {"message": ..., "fatal": True}   monitor gave up
    """

    # Seconds stop() waits for the task before forcing the socket closed
    STOP_TIMEOUT = 2.0
    FORCE_DISCONNECT_TIMEOUT = 1.0

    def __init__(
        self,
        account: Account,
        credentials: CredentialProvider,
        events: asyncio.Queue,
        config: IdleConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.account = account
        self.config = config or IdleConfig()
        self._credentials = credentials
        self._events = events
        self._client_factory = client_factory or default_client_factory

        self._state = ConnectionState.DISCONNECTED
        self._supports_idle = False
        self._detection_method = "none"
        self._last_activity: datetime | None = None
        self._attempts = 0
        self._idle_refused = False

        self._running = False
        self._task: asyncio.Task | None = None
        self._client: ProtocolClient | None = None
        self._refresh_requested = asyncio.Event()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def start(self) -> None:
        """Spawn the monitor task. Calling it again while running does nothing."""
        if self._running:
            logger.debug(f"IDLE monitor already running for {self.account.name}")
            return

        self._running = True
        self._attempts = 0
        self._idle_refused = False
        self._task = asyncio.create_task(self._run(), name=f"idle-{self.account.name}")

    async def stop(self) -> None:
        """
        Stop monitoring. Safe to call in any state, any number of times.

        The task gets STOP_TIMEOUT seconds to finish, then the connection is
        closed with a further FORCE_DISCONNECT_TIMEOUT bound.
        """
        self._running = False
        task, self._task = self._task, None

        if task is not None and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(
                    asyncio.gather(task, return_exceptions=True),
                    timeout=self.STOP_TIMEOUT,
                )
            except asyncio.TimeoutError:
                logger.warning(f"IDLE task for {self.account.name} did not stop cleanly, forcing disconnect")

        await self._teardown(force=True)

    async def manual_refresh(self) -> None:
        """
        Ask for an immediate check.

        While idling the IDLE command is interrupted, a refresh event is
        emitted and IDLE resumes after `resume_delay`. Otherwise the event
        is emitted right away.
        """
        if self._state == ConnectionState.IDLING and self._running:
            self._refresh_requested.set()
        else:
            await self._emit(EventType.NEW_MAIL, {"count": 0, "manual": True})

    def status(self) -> IdleStatus:
        return IdleStatus(
            state=self._state,
            is_connected=self._state in (
                ConnectionState.CONNECTED,
                ConnectionState.IDLING,
                ConnectionState.POLLING,
            ),
            is_idling=self._state == ConnectionState.IDLING,
            supports_idle=self._supports_idle,
            last_activity=self._last_activity,
            attempts=self._attempts,
            detection_method=self._detection_method,
        )

    # =========================================================================
    # Monitor Loop
    # =========================================================================

    async def _run(self) -> None:
        """Connect, watch, and on failure back off and try again."""
        logger.info(f"Starting IDLE monitor for {self.account.name}")

        while self._running:
            try:
                await self._connect()

                if self._supports_idle:
                    try:
                        await self._idle_loop()
                    except IdleRefusedError as e:
                        self._fall_back_to_polling(e)
                        await self._poll_loop()
                else:
                    await self._poll_loop()

            except asyncio.CancelledError:
                logger.debug(f"IDLE monitor cancelled for {self.account.name}")
                return  # stop() owns the cleanup

            except AuthError as e:
                # Don't retry on auth failure - needs new credentials
                logger.error(f"IDLE auth failed for {self.account.name}: {e}")
                await self._fail(str(e))
                return

            except MailSyncError as e:
                if not await self._backoff(e):
                    return

            except Exception as e:
                logger.exception(f"Unexpected IDLE error for {self.account.name}")
                if not await self._backoff(e):
                    return

        logger.info(f"IDLE monitor stopped for {self.account.name}")

    async def _backoff(self, error: Exception) -> bool:
        """
        Handle a connection error. Returns False once the monitor gives up.
        """
        logger.warning(f"IDLE connection lost for {self.account.name}: {error}")
        await self._teardown()
        self._state = ConnectionState.ERROR

        if self._attempts >= self.config.max_reconnect_attempts:
            logger.error(
                f"IDLE for {self.account.name} failed {self._attempts} reconnect attempts, giving up"
            )
            await self._fail(f"Gave up after {self._attempts} reconnect attempts: {error}")
            return False

        self._attempts += 1
        delay = self.config.reconnect_delay * self._attempts
        logger.info(
            f"Reconnecting IDLE for {self.account.name} in {delay}s "
            f"(attempt {self._attempts}/{self.config.max_reconnect_attempts})"
        )
        await asyncio.sleep(delay)
        return self._running

    async def _fail(self, message: str) -> None:
        self._running = False
        await self._teardown()
        self._state = ConnectionState.ERROR
        await self._emit(EventType.ERROR, {"message": message, "fatal": True})

    async def _connect(self) -> None:
        """Open a fresh connection and decide between IDLE and polling."""
        self._state = ConnectionState.CONNECTING
        self._client = await self._open_client()

        self._state = ConnectionState.CONNECTED
        self._touch()
        await self._emit(EventType.CONNECTED, {})

        if self._idle_refused:
            supported, method = False, "refused"
        else:
            supported, method = await self._client.detect_idle_support(
                self.config.assume_idle_hosts
            )
        self._supports_idle = supported
        self._detection_method = method

        if supported:
            logger.info(f"{self.account.name} supports IDLE (detected via {method})")
        else:
            logger.warning(
                f"{self.account.name} server does not support IDLE, "
                f"polling every {self.config.poll_interval}s"
            )

    async def _open_client(self) -> ProtocolClient:
        # Credentials are fetched per attempt and not kept
        credentials = self._credentials.get_credentials(self.account)
        # Registered before connecting so stop() can close a half-open socket
        self._client = self._client_factory(self.account)
        await self._client.connect(credentials)
        return self._client

    async def _idle_loop(self) -> None:
        """
        Hold IDLE open, dispatching pushes until the refresh timer expires.

        When it does, the session is torn down and re-established
        (DONE, LOGOUT, reconnect, IDLE) before the server can time it out.
        """
        loop = asyncio.get_running_loop()
        await self._enter_idle()
        session_started = loop.time()

        while self._running:
            remaining = self.config.refresh_seconds - (loop.time() - session_started)
            if remaining <= 0:
                await self._restart_session()
                session_started = loop.time()
                continue

            push_task = asyncio.create_task(
                self._client.idle_wait(remaining), name=f"idle-wait-{self.account.name}"
            )
            refresh_task = asyncio.create_task(
                self._refresh_requested.wait(), name=f"idle-refresh-{self.account.name}"
            )
            try:
                done, pending = await asyncio.wait(
                    {push_task, refresh_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (push_task, refresh_task):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(push_task, refresh_task, return_exceptions=True)

            if push_task in done and not push_task.cancelled():
                notifications = push_task.result()
                if notifications:
                    self._touch()
                    for notification in notifications:
                        event = self._parse_notification(notification)
                        if event is not None:
                            await self._events.put(event)

            if refresh_task in done:
                self._refresh_requested.clear()
                await self._interrupt_for_refresh()

    async def _enter_idle(self) -> None:
        await self._client.idle_start()
        self._state = ConnectionState.IDLING
        self._attempts = 0
        self._touch()
        logger.debug(f"IDLE active for {self.account.name}")

    async def _interrupt_for_refresh(self) -> None:
        logger.info(f"Manual refresh requested for {self.account.name}")
        await self._client.idle_done()
        self._state = ConnectionState.CONNECTED
        await self._emit(EventType.NEW_MAIL, {"count": 0, "manual": True})
        await asyncio.sleep(self.config.resume_delay)
        if self._running:
            await self._enter_idle()

    async def _restart_session(self) -> None:
        logger.info(f"Refreshing IDLE session for {self.account.name}")
        old, self._client = self._client, None
        try:
            await old.idle_done()
        finally:
            # Logged out even if we are cancelled while leaving IDLE
            await asyncio.shield(old.disconnect())

        self._state = ConnectionState.CONNECTING
        self._client = await self._open_client()
        self._state = ConnectionState.CONNECTED
        await self._enter_idle()

    def _fall_back_to_polling(self, error: IdleRefusedError) -> None:
        """The server said no to IDLE after all; poll for the rest of this run."""
        logger.warning(
            f"{self.account.name} refused IDLE ({error}), "
            f"polling every {self.config.poll_interval}s instead"
        )
        self._idle_refused = True
        self._supports_idle = False
        self._detection_method = "refused"

    async def _poll_loop(self) -> None:
        """Fallback when IDLE is unsupported: NOOP and a check signal every interval."""
        self._state = ConnectionState.POLLING

        while self._running:
            await asyncio.sleep(self.config.poll_interval)
            if not self._running:
                break
            await self._client.noop()
            self._touch()
            self._attempts = 0
            await self._emit(EventType.NEW_MAIL, {"count": 0})

    async def _teardown(self, force: bool = False) -> None:
        """Close the connection and report DISCONNECTED if it was up."""
        was_connected = self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.IDLING,
            ConnectionState.POLLING,
        )
        client, self._client = self._client, None

        if client is not None:
            if force:
                try:
                    await asyncio.wait_for(client.disconnect(), timeout=self.FORCE_DISCONNECT_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning(f"Timeout disconnecting IDLE client for {self.account.name}")
            else:
                await client.disconnect()

        self._state = ConnectionState.DISCONNECTED
        if was_connected:
            await self._emit(EventType.DISCONNECTED, {})

    # =========================================================================
    # Helpers
    # =========================================================================

    def _touch(self) -> None:
        self._last_activity = utcnow()

    async def _emit(self, event_type: EventType, payload: dict) -> None:
        await self._events.put(SyncEvent(event_type, self.account.account_id, payload))

    def _parse_notification(self, notification: str) -> SyncEvent | None:
        """
        Parse an IMAP IDLE notification into an event.

        Common notifications (aioimaplib strips the leading *):
            - "N EXISTS" - N messages now exist
            - "N EXPUNGE" - Message N was deleted
            - "N FETCH (FLAGS ...)" - Flags changed on message N (ignored)
        """
        notification = notification.strip()

        # aioimaplib may or may not include the leading *
        if notification.startswith("*"):
            notification = notification[1:].strip()

        match = re.match(r"(\d+)\s+EXISTS", notification, re.IGNORECASE)
        if match:
            count = int(match.group(1))
            logger.info(f"IDLE: {self.account.name} now has {count} messages")
            return SyncEvent(EventType.NEW_MAIL, self.account.account_id, {"count": count})

        match = re.match(r"(\d+)\s+EXPUNGE", notification, re.IGNORECASE)
        if match:
            logger.info(f"IDLE: {self.account.name} message deleted")
            return SyncEvent(
                EventType.MAIL_DELETED, self.account.account_id, {"seq": int(match.group(1))}
            )

        if "FETCH" in notification.upper():
            logger.debug(f"IDLE: {self.account.name} flags changed")
            return None

        logger.debug(f"IDLE: Unknown notification from {self.account.name}: {notification}")
        return None
