# =============================================================================
# Sync Events
# =============================================================================
# What the engine reports upward, and the sinks that receive it.
#
# The engine emits {event, account_id, payload} records; it does not know or
# care how they are displayed. A sink is anything with an async publish().
#
#   - CallbackSink: hand events to an async callable (a UI, a web socket)
#   - LoggingSink: write them to the log
#   - QueueSink: collect them (tests, the `watch` command)
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from mailsync.core import utcnow

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event names as they appear on the wire."""
    NEW_MAIL = "newMail"
    MAIL_DELETED = "mailDeleted"
    ERROR = "error"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class SyncEvent:
    """
    One event for one account.

    Attributes:
        event: What happened.
        account_id: Account it happened on.
        payload: Event details, e.g. {"count": 3} for new mail or
                 {"message": "...", "fatal": True} for errors.
        timestamp: When the event was produced.
    """
    event: EventType
    account_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.value,
            "accountId": self.account_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(Protocol):
    """Receives events from the orchestrator. Must not block for long."""

    async def publish(self, event: SyncEvent) -> None:
        ...


class CallbackSink:
    """Forward each event to an async callable."""

    def __init__(self, callback: Callable[[SyncEvent], Awaitable[None]]) -> None:
        self._callback = callback

    async def publish(self, event: SyncEvent) -> None:
        await self._callback(event)


class LoggingSink:
    """Log every event, errors at WARNING."""

    async def publish(self, event: SyncEvent) -> None:
        if event.event == EventType.ERROR:
            logger.warning(f"[{event.account_id}] {event.event.value}: {event.payload}")
        else:
            logger.info(f"[{event.account_id}] {event.event.value}: {event.payload}")


class QueueSink:
    """
    Collect events in memory.

    Events are kept in `events` and also put on an asyncio.Queue so a
    consumer can await them one at a time.
    """

    def __init__(self) -> None:
        self.events: list[SyncEvent] = []
        self.queue: asyncio.Queue[SyncEvent] = asyncio.Queue()

    async def publish(self, event: SyncEvent) -> None:
        self.events.append(event)
        await self.queue.put(event)

    def of_type(self, event_type: EventType) -> list[SyncEvent]:
        return [e for e in self.events if e.event == event_type]
