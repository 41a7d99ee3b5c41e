# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailsync test suite.
#
# Two fakes stand in for a real server:
#   - FakeIMAP: replaces aioimaplib's IMAP4_SSL so ProtocolClient can be
#     tested against canned wire responses.
#   - FakeMailbox / FakeClient: an in-memory mailbox with the ProtocolClient
#     interface, for the IDLE monitor and the orchestrator.
# =============================================================================

import asyncio
import base64
from collections import namedtuple
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from aioimaplib import aioimaplib

from mailsync.config import Config, IdleConfig, SyncConfig
from mailsync.core import (
    Account,
    Address,
    ConnectionState,
    MailboxSnapshot,
    MessageSummary,
)
from mailsync.credentials import StaticCredentialProvider
from mailsync.errors import NotFoundError
from mailsync.events import QueueSink
from mailsync.imap import RawContent
from mailsync.storage import MemoryCacheStore

# Same shape as aioimaplib's Response
Response = namedtuple("Response", "result lines")

BASE_DATE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

PLAIN_STRUCTURE = '("TEXT" "PLAIN" ("CHARSET" "utf-8") NIL NIL "7BIT" 42 2 NIL NIL NIL NIL)'

ATTACHMENT_STRUCTURE = (
    '(("TEXT" "PLAIN" ("CHARSET" "utf-8") NIL NIL "7BIT" 42 2 NIL NIL NIL NIL)'
    '("APPLICATION" "PDF" ("NAME" "report.pdf") NIL NIL "BASE64" 1024 NIL '
    '("ATTACHMENT" ("FILENAME" "report.pdf")) NIL NIL) "MIXED" ("BOUNDARY" "XYZ") NIL NIL NIL)'
)


def header_block(uid: int, subject: str | None = None, sender: str = "Alice <alice@example.com>") -> bytes:
    date = (BASE_DATE + timedelta(minutes=uid)).strftime("%a, %d %b %Y %H:%M:%S +0000")
    return (
        f"From: {sender}\r\n"
        f"To: test@example.com\r\n"
        f"Subject: {subject or f'Message {uid}'}\r\n"
        f"Date: {date}\r\n"
        f"Message-ID: <{uid}@example.com>\r\n"
        "\r\n"
    ).encode()


def plain_message(uid: int, subject: str | None = None, body: str = "Hello there") -> bytes:
    return header_block(uid, subject).rstrip(b"\r\n") + (
        "\r\nContent-Type: text/plain; charset=utf-8\r\n\r\n" + body + "\r\n"
    ).encode()


def multipart_message(uid: int, attachment: bytes = b"%PDF-1.4 fake", filename: str = "report.pdf") -> bytes:
    encoded = base64.b64encode(attachment).decode()
    return header_block(uid, "With attachment").rstrip(b"\r\n") + (
        "\r\nMIME-Version: 1.0\r\n"
        'Content-Type: multipart/mixed; boundary="XYZ"\r\n'
        "\r\n"
        "--XYZ\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "\r\n"
        "See attached.\r\n"
        "--XYZ\r\n"
        f'Content-Type: application/pdf; name="{filename}"\r\n'
        "Content-Transfer-Encoding: base64\r\n"
        f'Content-Disposition: attachment; filename="{filename}"\r\n'
        "\r\n"
        f"{encoded}\r\n"
        "--XYZ--\r\n"
    ).encode()


def make_summary(uid: int, account_id: str = "test", **changes) -> MessageSummary:
    summary = MessageSummary(
        account_id=account_id,
        uid=uid,
        sender=Address("Alice", "alice@example.com"),
        recipient=Address("test@example.com", "test@example.com"),
        subject=f"Message {uid}",
        date=BASE_DATE + timedelta(minutes=uid),
        preview_text=f"Message {uid} - Alice",
        size_bytes=1000 + uid,
        message_id=f"<{uid}@example.com>",
    )
    return replace(summary, **changes)


# =============================================================================
# aioimaplib Fake
# =============================================================================

class FakeProtocol:
    def __init__(self, capabilities):
        self.state = "NONAUTH"
        self.capabilities = set(capabilities)
        self.transport = None
        # What a CAPABILITY command answers once logged in; None keeps the current set
        self.post_login: set[str] | None = None
        self.capability_queries = 0

    async def capability(self):
        self.capability_queries += 1
        if self.post_login is not None:
            self.capabilities = set(self.post_login)


class FakeIMAP:
    """
    Canned server behind the aioimaplib IMAP4_SSL interface.

    Messages are held as {uid: (flags, header bytes, structure)}; sequence
    numbers follow ascending uid order, like a real mailbox.
    """

    def __init__(self, host="imap.example.com", port=993, timeout=None):
        self.host = host
        self.port = port
        self.protocol = FakeProtocol(["IMAP4rev1", "IDLE"])
        self.messages: dict[int, tuple[str, bytes, str]] = {}
        self.full: dict[int, bytes] = {}
        self.commands: list[tuple] = []
        self.login_ok = True
        self.delay: float = 0.0
        self.pushes: asyncio.Queue = asyncio.Queue()
        self.idle_future: asyncio.Future | None = None

    def add(self, uid, flags="", header=None, structure=PLAIN_STRUCTURE, full=None):
        self.messages[uid] = (flags, header or header_block(uid), structure)
        if full is not None:
            self.full[uid] = full

    async def wait_hello_from_server(self):
        return None

    def has_capability(self, capability):
        return capability in self.protocol.capabilities

    async def starttls(self):
        self.commands.append(("STARTTLS",))
        return Response("OK", [b"Begin TLS"])

    async def login(self, user, password):
        self.commands.append(("LOGIN", user))
        if not self.login_ok:
            return Response("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"])
        self.protocol.state = "AUTH"
        return Response("OK", [b"LOGIN completed"])

    async def logout(self):
        self.commands.append(("LOGOUT",))
        return Response("OK", [b"BYE"])

    def _mailbox_lines(self):
        return [
            f"{len(self.messages)} EXISTS".encode(),
            b"0 RECENT",
            b"OK [UIDVALIDITY 42] UIDs valid",
            f"OK [UIDNEXT {max(self.messages, default=0) + 1}] Predicted next UID".encode(),
            b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            b"[READ-ONLY] EXAMINE completed",
        ]

    async def examine(self, mailbox):
        self.commands.append(("EXAMINE", mailbox))
        return Response("OK", self._mailbox_lines())

    async def select(self, mailbox):
        self.commands.append(("SELECT", mailbox))
        return Response("OK", self._mailbox_lines())

    async def status(self, mailbox, items):
        unseen = sum(1 for flags, _, _ in self.messages.values() if "\\Seen" not in flags)
        return Response("OK", [f"{mailbox} (MESSAGES {len(self.messages)} UNSEEN {unseen})".encode(), b"STATUS completed"])

    def _fetch_lines(self, uids):
        ordered = sorted(self.messages)
        lines = []
        for uid in uids:
            flags, header, structure = self.messages[uid]
            seq = ordered.index(uid) + 1
            lines.append(
                f"{seq} FETCH (UID {uid} FLAGS ({flags}) RFC822.SIZE {1000 + uid} "
                f"BODYSTRUCTURE {structure} "
                f"BODY[HEADER.FIELDS (FROM TO SUBJECT DATE MESSAGE-ID)] {{{len(header)}}}".encode()
            )
            lines.append(bytearray(header))
            lines.append(b")")
        lines.append(b"Fetch completed.")
        return lines

    async def fetch(self, message_set, items):
        self.commands.append(("FETCH", message_set, items))
        if self.delay:
            await asyncio.sleep(self.delay)
        start = int(message_set.split(":")[0])
        ordered = sorted(self.messages)
        return Response("OK", self._fetch_lines(ordered[start - 1:]))

    async def uid(self, command, *args):
        self.commands.append(("UID", command) + args)
        if command == "FETCH":
            uid_set, items = args
            uids = [int(u) for u in uid_set.split(",") if int(u) in self.messages]
            if "BODY.PEEK[]" in items:
                lines = []
                for uid in uids:
                    flags, _, structure = self.messages[uid]
                    raw = self.full.get(uid, b"")
                    lines.append(
                        f"1 FETCH (UID {uid} FLAGS ({flags}) RFC822.SIZE {len(raw)} "
                        f"BODYSTRUCTURE {structure} BODY[] {{{len(raw)}}}".encode()
                    )
                    lines.append(bytearray(raw))
                    lines.append(b")")
                lines.append(b"Fetch completed.")
                return Response("OK", lines)
            return Response("OK", self._fetch_lines(uids))
        if command == "STORE":
            return Response("OK", [b"STORE completed"])
        return Response("BAD", [b"unknown"])

    async def uid_search(self, *criteria, charset=None):
        self.commands.append(("SEARCH", criteria, charset))
        hits = " ".join(str(u) for u in sorted(self.messages))
        return Response("OK", [hits.encode(), b"SEARCH completed"])

    async def expunge(self):
        self.commands.append(("EXPUNGE",))
        return Response("OK", [b"EXPUNGE completed"])

    async def noop(self):
        return Response("OK", [b"NOOP completed"])

    async def idle_start(self, timeout=None):
        self.commands.append(("IDLE",))
        if "IDLE" not in self.protocol.capabilities:
            raise aioimaplib.Abort("server returned error to IDLE command")
        self.idle_future = asyncio.get_running_loop().create_future()
        return self.idle_future

    async def wait_server_push(self, timeout=None):
        return await self.pushes.get()

    def idle_done(self):
        self.commands.append(("DONE",))
        if self.idle_future is not None and not self.idle_future.done():
            self.idle_future.set_result(Response("OK", [b"IDLE terminated"]))


@pytest.fixture
def fake_imap(monkeypatch):
    """Patch aioimaplib so every connection talks to one FakeIMAP."""
    server = FakeIMAP()

    def connect(host, port, timeout=None, **kwargs):
        server.host, server.port = host, port
        return server

    monkeypatch.setattr(aioimaplib, "IMAP4_SSL", connect)
    monkeypatch.setattr(aioimaplib, "IMAP4", connect)
    return server


# =============================================================================
# In-memory Mailbox Fake
# =============================================================================

class FakeMailbox:
    """
    Shared server state for FakeClient instances.

    Attributes:
        connect_errors: Exceptions raised by the next connect() calls, in order.
        fail_on: Operation name -> exception raised when it is called.
        gate: When set, list_recent() waits for it before answering.
        pushes: Items delivered by idle_wait(); exceptions are raised.
    """

    def __init__(self, account_id: str = "test") -> None:
        self.account_id = account_id
        self.messages: dict[int, MessageSummary] = {}
        self.raw: dict[int, bytes] = {}
        self.supports_idle = True

        self.connect_errors: list[Exception] = []
        self.fail_on: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.pushes: asyncio.Queue = asyncio.Queue()

        self.clients: list["FakeClient"] = []
        self.calls: list[str] = []
        self.fetched_uids: list[int] = []
        self.searches: list = []
        self.connects = 0
        self.disconnects = 0
        self.idle_starts = 0
        self.idle_dones = 0

    def add(self, uid: int, raw: bytes | None = None, **changes) -> MessageSummary:
        summary = make_summary(uid, self.account_id, **changes)
        self.messages[uid] = summary
        self.raw[uid] = raw if raw is not None else plain_message(uid, summary.subject)
        return summary

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def factory(self, account: Account) -> "FakeClient":
        client = FakeClient(self)
        self.clients.append(client)
        return client


class FakeClient:
    """ProtocolClient stand-in backed by a FakeMailbox."""

    def __init__(self, mailbox: FakeMailbox) -> None:
        self.mailbox = mailbox
        self.state = ConnectionState.DISCONNECTED
        self.last_snapshot: MailboxSnapshot | None = None
        self.credentials = None

    def _call(self, name: str) -> None:
        self.mailbox.calls.append(name)
        error = self.mailbox.fail_on.get(name)
        if error is not None:
            raise error

    async def connect(self, credentials) -> None:
        self.mailbox.connects += 1
        self.credentials = credentials
        if self.mailbox.connect_errors:
            raise self.mailbox.connect_errors.pop(0)
        self.state = ConnectionState.CONNECTED

    async def disconnect(self) -> None:
        self.mailbox.disconnects += 1
        self.state = ConnectionState.DISCONNECTED

    async def list_recent(self, limit: int) -> list[MessageSummary]:
        self._call("list_recent")
        if self.mailbox.gate is not None:
            await self.mailbox.gate.wait()
        self.last_snapshot = MailboxSnapshot(total_messages=len(self.mailbox.messages))
        uids = sorted(self.mailbox.messages, reverse=True)[:limit]
        return [replace(self.mailbox.messages[u]) for u in uids]

    async def fetch_by_uids(self, uids) -> list[MessageSummary]:
        self._call("fetch_by_uids")
        uids = list(uids)
        self.mailbox.fetched_uids.extend(uids)
        found = [replace(self.mailbox.messages[u]) for u in uids if u in self.mailbox.messages]
        return sorted(found, key=lambda s: s.uid, reverse=True)

    async def search(self, criteria) -> list[int]:
        self._call("search")
        self.mailbox.searches.append(criteria)
        if criteria[0] == "SUBJECT":
            needle = criteria[1].lower()
            return sorted(u for u, s in self.mailbox.messages.items() if needle in s.subject.lower())
        return sorted(self.mailbox.messages)

    async def fetch_content(self, uid: int) -> RawContent:
        self._call("fetch_content")
        if uid not in self.mailbox.raw:
            raise NotFoundError(f"Message UID {uid} not found")
        raw = self.mailbox.raw[uid]
        summary = self.mailbox.messages.get(uid)
        return RawContent(
            uid=uid,
            headers=raw.split(b"\r\n\r\n", 1)[0].decode(),
            raw_body=raw,
            size_bytes=len(raw),
            flags=frozenset({"\\SEEN"}) if summary and summary.is_read else frozenset(),
        )

    async def mark_read(self, uid: int) -> None:
        self._call("mark_read")
        self.mailbox.messages[uid].is_read = True

    async def mark_unread(self, uid: int) -> None:
        self._call("mark_unread")
        self.mailbox.messages[uid].is_read = False

    async def delete(self, uid: int) -> None:
        self._call("delete")
        self.mailbox.messages.pop(uid, None)
        self.mailbox.raw.pop(uid, None)

    async def detect_idle_support(self, allow_list=()) -> tuple[bool, str]:
        if self.mailbox.supports_idle:
            return True, "capability"
        return False, "none"

    async def idle_start(self) -> None:
        self._call("idle_start")
        self.mailbox.idle_starts += 1
        self.state = ConnectionState.IDLING

    async def idle_wait(self, timeout: float) -> list[str]:
        try:
            item = await asyncio.wait_for(self.mailbox.pushes.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return []
        if isinstance(item, Exception):
            raise item
        return [item]

    async def idle_done(self) -> None:
        self.mailbox.idle_dones += 1
        self.state = ConnectionState.CONNECTED

    async def noop(self) -> None:
        self._call("noop")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
    )


@pytest.fixture
def credentials():
    return StaticCredentialProvider({"test": "secret"})


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def cache():
    return MemoryCacheStore()


@pytest.fixture
def sink():
    return QueueSink()


@pytest.fixture
def fast_config(sample_account):
    """Config with the account registered and every delay shortened."""
    return Config(
        accounts={sample_account.name: sample_account},
        sync=SyncConfig(),
        idle=IdleConfig(
            refresh_minutes=10.0,
            reconnect_delay=0.01,
            max_reconnect_attempts=3,
            poll_interval=0.05,
            resume_delay=0.01,
        ),
    )


@pytest.fixture
async def orchestrator(cache, credentials, sink, fast_config, mailbox):
    from mailsync.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator(
        cache, credentials, sink=sink, config=fast_config, client_factory=mailbox.factory
    )
    yield orchestrator
    await orchestrator.close()
