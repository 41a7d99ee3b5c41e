# =============================================================================
# IDLE Monitor Tests
# =============================================================================

import asyncio
from dataclasses import replace

import pytest

from mailsync.core import ConnectionState
from mailsync.errors import AuthError, NetworkError
from mailsync.events import EventType
from mailsync.imap import IdleMonitor

from conftest import FakeClient


async def next_event(queue: asyncio.Queue, event_type: EventType, timeout: float = 2.0):
    """Skip events until one of `event_type` arrives."""
    async def wait():
        while True:
            event = await queue.get()
            if event.event == event_type:
                return event

    return await asyncio.wait_for(wait(), timeout=timeout)


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def events():
    return asyncio.Queue()


@pytest.fixture
def make_monitor(sample_account, credentials, events, mailbox, fast_config):
    def make(**idle_changes):
        config = replace(fast_config.idle, **idle_changes)
        monitor = IdleMonitor(sample_account, credentials, events, config, mailbox.factory)
        return monitor

    return make


async def test_push_notifications_become_events(make_monitor, events, mailbox):
    monitor = make_monitor()
    await monitor.start()

    connected = await next_event(events, EventType.CONNECTED)
    assert connected.account_id == "test"

    await mailbox.pushes.put("* 5 EXISTS")
    new_mail = await next_event(events, EventType.NEW_MAIL)
    assert new_mail.payload == {"count": 5}

    await mailbox.pushes.put("3 EXPUNGE")
    deleted = await next_event(events, EventType.MAIL_DELETED)
    assert deleted.payload == {"seq": 3}

    status = monitor.status()
    assert status.is_idling
    assert status.supports_idle
    assert status.detection_method == "capability"
    assert status.last_activity is not None

    await monitor.stop()


async def test_session_is_restarted_before_timeout(make_monitor, mailbox):
    monitor = make_monitor(refresh_minutes=0.002)  # 0.12s
    await monitor.start()

    await wait_until(lambda: mailbox.idle_starts >= 3)

    assert mailbox.connects >= 3
    assert mailbox.idle_dones >= 2
    assert mailbox.disconnects >= 2
    assert monitor.is_running

    await monitor.stop()


async def test_polling_without_idle(make_monitor, events, mailbox):
    mailbox.supports_idle = False
    monitor = make_monitor(poll_interval=0.02)
    await monitor.start()

    tick = await next_event(events, EventType.NEW_MAIL)

    assert tick.payload == {"count": 0}
    assert mailbox.count("noop") >= 1
    assert mailbox.idle_starts == 0
    assert monitor.state == ConnectionState.POLLING
    assert not monitor.status().supports_idle

    await monitor.stop()


async def test_manual_refresh_interrupts_idle(make_monitor, events, mailbox):
    monitor = make_monitor()
    await monitor.start()
    await next_event(events, EventType.CONNECTED)
    await wait_until(lambda: monitor.state == ConnectionState.IDLING)

    await monitor.manual_refresh()
    refresh = await next_event(events, EventType.NEW_MAIL)

    assert refresh.payload == {"count": 0, "manual": True}
    assert mailbox.idle_dones == 1
    await wait_until(lambda: mailbox.idle_starts == 2)

    await monitor.stop()


async def test_manual_refresh_when_not_idling(make_monitor, events):
    monitor = make_monitor()
    await monitor.manual_refresh()

    event = events.get_nowait()
    assert event.event == EventType.NEW_MAIL
    assert event.payload == {"count": 0, "manual": True}


async def test_reconnects_after_connection_drop(make_monitor, events, mailbox):
    monitor = make_monitor()
    await monitor.start()
    await next_event(events, EventType.CONNECTED)

    await mailbox.pushes.put(NetworkError("connection reset"))

    await next_event(events, EventType.DISCONNECTED)
    await next_event(events, EventType.CONNECTED)
    assert mailbox.connects == 2
    # Budget refilled once IDLE is back, not on the bare connect
    await wait_until(lambda: monitor.status().attempts == 0)
    assert monitor.state == ConnectionState.IDLING

    await monitor.stop()


async def test_gives_up_after_max_attempts(make_monitor, events, mailbox):
    mailbox.connect_errors = [NetworkError("refused")] * 10
    monitor = make_monitor(max_reconnect_attempts=3)
    await monitor.start()

    error = await next_event(events, EventType.ERROR)

    assert error.payload["fatal"] is True
    assert "3 reconnect attempts" in error.payload["message"]
    # First try plus three retries
    assert mailbox.connects == 4
    assert not monitor.is_running
    assert monitor.state == ConnectionState.ERROR

    await monitor.stop()


async def test_connecting_without_idling_still_uses_up_attempts(make_monitor, events, mailbox):
    mailbox.fail_on["idle_start"] = NetworkError("connection reset")
    monitor = make_monitor(max_reconnect_attempts=3)
    await monitor.start()

    error = await next_event(events, EventType.ERROR)

    assert error.payload["fatal"] is True
    assert mailbox.connects == 4
    assert not monitor.is_running

    await monitor.stop()


async def test_refused_idle_falls_back_to_polling(sample_account, credentials, events, fake_imap, fast_config):
    # Allow-listed host whose server turns IDLE down
    fake_imap.protocol.capabilities = {"IMAP4REV1"}
    account = replace(sample_account, imap_host="imap.gmail.com")
    config = replace(fast_config.idle, poll_interval=0.02)
    monitor = IdleMonitor(account, credentials, events, config)
    await monitor.start()

    tick = await next_event(events, EventType.NEW_MAIL)

    assert tick.payload == {"count": 0}
    assert monitor.state == ConnectionState.POLLING
    status = monitor.status()
    assert not status.supports_idle
    assert status.detection_method == "refused"
    assert status.attempts == 0
    assert fake_imap.commands.count(("LOGIN", "test@example.com")) == 1

    await monitor.stop()


async def test_old_session_logged_out_when_stopped_mid_restart(make_monitor, mailbox, monkeypatch):
    leaving = asyncio.Event()

    async def stuck_idle_done(self):
        leaving.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(FakeClient, "idle_done", stuck_idle_done)
    monitor = make_monitor(refresh_minutes=0.002)
    await monitor.start()
    await asyncio.wait_for(leaving.wait(), timeout=2.0)

    await monitor.stop()

    assert mailbox.clients[0].state == ConnectionState.DISCONNECTED
    assert mailbox.disconnects == 1


async def test_auth_failure_is_fatal_immediately(make_monitor, events, mailbox):
    mailbox.connect_errors = [AuthError("bad password")]
    monitor = make_monitor()
    await monitor.start()

    error = await next_event(events, EventType.ERROR)

    assert error.payload == {"message": "bad password", "fatal": True}
    assert mailbox.connects == 1

    await monitor.stop()


async def test_stop_is_idempotent(make_monitor, events, mailbox):
    monitor = make_monitor()
    await monitor.start()
    await next_event(events, EventType.CONNECTED)

    await monitor.stop()
    await monitor.stop()

    assert monitor.state == ConnectionState.DISCONNECTED
    assert not monitor.is_running
    await next_event(events, EventType.DISCONNECTED)


async def test_start_twice_runs_one_task(make_monitor, events, mailbox):
    monitor = make_monitor()
    await monitor.start()
    await monitor.start()
    await next_event(events, EventType.CONNECTED)
    await wait_until(lambda: monitor.state == ConnectionState.IDLING)

    assert mailbox.connects == 1

    await monitor.stop()


@pytest.mark.parametrize("line, event_type, payload", [
    ("* 12 EXISTS", EventType.NEW_MAIL, {"count": 12}),
    ("4 EXPUNGE", EventType.MAIL_DELETED, {"seq": 4}),
])
def test_parse_notification(sample_account, credentials, line, event_type, payload):
    monitor = IdleMonitor(sample_account, credentials, asyncio.Queue())
    event = monitor._parse_notification(line)
    assert (event.event, event.payload) == (event_type, payload)


def test_flag_changes_are_ignored(sample_account, credentials):
    monitor = IdleMonitor(sample_account, credentials, asyncio.Queue())
    assert monitor._parse_notification("7 FETCH (FLAGS (\\Seen))") is None
    assert monitor._parse_notification("OK Still here") is None
