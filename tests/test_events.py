# =============================================================================
# Events, Credentials and Sessions
# =============================================================================

import asyncio
import logging

import pytest

from mailsync.credentials import KeyringCredentialProvider, StaticCredentialProvider
from mailsync.errors import AuthError
from mailsync.events import CallbackSink, EventType, LoggingSink, QueueSink, SyncEvent
from mailsync.sync import SessionRegistry, sanitize_filename


# =============================================================================
# Events and Sinks
# =============================================================================

def test_event_to_dict():
    event = SyncEvent(EventType.NEW_MAIL, "test", {"count": 2})

    data = event.to_dict()

    assert data["event"] == "newMail"
    assert data["accountId"] == "test"
    assert data["payload"] == {"count": 2}
    assert data["timestamp"] == event.timestamp.isoformat()


async def test_queue_sink():
    sink = QueueSink()
    await sink.publish(SyncEvent(EventType.CONNECTED, "test"))
    await sink.publish(SyncEvent(EventType.NEW_MAIL, "test", {"count": 1}))

    assert [e.event for e in sink.of_type(EventType.NEW_MAIL)] == [EventType.NEW_MAIL]
    assert (await sink.queue.get()).event == EventType.CONNECTED


async def test_callback_sink():
    received = []

    async def callback(event):
        received.append(event.event)

    await CallbackSink(callback).publish(SyncEvent(EventType.MAIL_DELETED, "test", {"seq": 1}))

    assert received == [EventType.MAIL_DELETED]


async def test_logging_sink(caplog):
    sink = LoggingSink()

    with caplog.at_level(logging.INFO, logger="mailsync.events"):
        await sink.publish(SyncEvent(EventType.NEW_MAIL, "test", {"count": 1}))
        await sink.publish(SyncEvent(EventType.ERROR, "test", {"message": "boom", "fatal": True}))

    levels = [r.levelno for r in caplog.records]
    assert levels == [logging.INFO, logging.WARNING]
    assert "boom" in caplog.records[1].getMessage()


async def test_failing_sink_does_not_break_orchestrator(cache, credentials, fast_config, mailbox):
    from mailsync.sync import SyncOrchestrator

    async def refuse(event):
        raise RuntimeError("sink down")

    orchestrator = SyncOrchestrator(
        cache, credentials, sink=CallbackSink(refuse), config=fast_config,
        client_factory=mailbox.factory,
    )
    await orchestrator._publish(SyncEvent(EventType.CONNECTED, "test"))
    await orchestrator.close()


# =============================================================================
# Credentials
# =============================================================================

def test_static_credentials(sample_account):
    provider = StaticCredentialProvider({"test": "secret"})

    creds = provider.get_credentials(sample_account)

    assert creds.host == "imap.example.com"
    assert creds.username == "test@example.com"
    assert creds.password == "secret"
    assert "secret" not in repr(creds)


def test_static_credentials_missing(sample_account):
    with pytest.raises(AuthError):
        StaticCredentialProvider({}).get_credentials(sample_account)


def test_keyring_credentials(sample_account, monkeypatch):
    lookups = []

    def get_password(service, username):
        lookups.append((service, username))
        return "from-keyring"

    monkeypatch.setattr("keyring.get_password", get_password)

    creds = KeyringCredentialProvider().get_credentials(sample_account)

    assert creds.password == "from-keyring"
    assert lookups == [("mailsync:test", "test@example.com")]


def test_keyring_credentials_missing(sample_account, monkeypatch):
    monkeypatch.setattr("keyring.get_password", lambda service, username: None)

    with pytest.raises(AuthError, match="keyring set mailsync:test"):
        KeyringCredentialProvider().get_credentials(sample_account)


# =============================================================================
# Sessions
# =============================================================================

async def test_session_registry(sample_account):
    registry = SessionRegistry()

    session = registry.get(sample_account)

    assert registry.get(sample_account) is session
    assert "test" in registry
    assert len(registry) == 1
    assert session.cache_age() is None
    assert not session.is_refreshing

    session.cursor.advance([5, 9, 2])
    assert session.cursor.highest_known_uid == 9
    assert session.cache_age() < 5

    assert await registry.remove("test")
    assert not await registry.remove("test")
    assert registry.find("test") is None


async def test_session_close_cancels_refresh(sample_account):
    registry = SessionRegistry()
    session = registry.get(sample_account)
    session.refresh_task = asyncio.create_task(asyncio.sleep(10))

    await registry.close_all()

    assert len(registry) == 0
    assert session.refresh_task is None


# =============================================================================
# Filenames
# =============================================================================

@pytest.mark.parametrize("name, expected", [
    ("report.pdf", "report.pdf"),
    ("my report (1).pdf", "my_report__1_.pdf"),
    ("../../etc/passwd", ".._.._etc_passwd"),
    ("Café.txt", "Caf_.txt"),
    ("", "attachment"),
])
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected
