# =============================================================================
# IMAP Protocol Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib for one connection
# to one mailbox.
#
# Key responsibilities:
#   - Connection management (connect, disconnect) with independent
#     connect and auth timeouts
#   - Authentication (supports SSL and STARTTLS)
#   - Mailbox operations (list recent, fetch by UID, fetch content, search)
#   - Mutations (flags, delete + expunge) in read-write mode
#   - IDLE transport primitives used by the IdleMonitor
#
# Design notes:
#   - The client is short-lived: the orchestrator opens one per logical
#     operation and closes it afterwards. It never keeps message data.
#   - Listing opens the mailbox read-only (EXAMINE); mutations re-open it
#     read-write (SELECT).
#   - Every fetch and search runs under one hard timeout. When it expires
#     the partial batch is thrown away and OperationTimeoutError is raised;
#     callers never see a half-filled list.
#   - "Newest N" is found by over-fetching a sequence window and re-sorting
#     by UID, because sequence numbers shift when messages are deleted.
#   - aioimaplib raises its own Abort, Error and CommandTimeout; these are
#     translated into mailsync.errors like every other failure.
# =============================================================================

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Iterable, TypeVar

from aioimaplib import aioimaplib

from mailsync.core import (
    Address,
    ConnectionState,
    Credentials,
    MailboxSnapshot,
    MessageSummary,
    utcnow,
)
from mailsync.errors import (
    AuthError,
    MailSyncError,
    NetworkError,
    IdleRefusedError,
    NotFoundError,
    OperationTimeoutError,
    ProtocolError,
)
from mailsync.mime import (
    BodyPart,
    ParsedHeader,
    has_attachments,
    parse_address,
    parse_bodystructure,
    parse_header_block,
)

# Set up logging for this module
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Items fetched for list views: flags, size, structure and a few headers
SUMMARY_FETCH_ITEMS = (
    "(UID FLAGS RFC822.SIZE BODYSTRUCTURE "
    "BODY.PEEK[HEADER.FIELDS (FROM TO SUBJECT DATE MESSAGE-ID)])"
)

# Items fetched when the full message is needed
CONTENT_FETCH_ITEMS = "(UID FLAGS RFC822.SIZE BODYSTRUCTURE BODY.PEEK[])"

# SEARCH SINCE wants English month abbreviations regardless of locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_FETCH_START = re.compile(r"^\*?\s*(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_MARKER = re.compile(r"\{(\d+)\}\s*$")
_SECTION_LITERAL = re.compile(r"BODY\[([^\]]*)\](?:<\d+>)?\s*\{\d+\}\s*$", re.IGNORECASE)
_UID = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(r"\bFLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_SIZE = re.compile(r"\bRFC822\.SIZE\s+(\d+)", re.IGNORECASE)
_BODYSTRUCTURE = re.compile(r"\bBODYSTRUCTURE\s*", re.IGNORECASE)


def _quote_mailbox(name: str) -> str:
    """
    Quote an IMAP mailbox name if it contains special characters.

    Mailbox names with spaces or special characters must be quoted, with
    internal quotes and backslashes escaped.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _quote_argument(value: str) -> str:
    """Quote a SEARCH string argument when it is not a bare atom."""
    if value and not any(c in value for c in ' "\\(){}%*]') and value.isascii():
        return value
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def format_since_date(days_back: int) -> str:
    """
    Format the SEARCH SINCE date for `days_back` days ago, e.g. "7-Mar-2025".

    Built from an explicit month table so the server never sees a
    locale-dependent month name.
    """
    when = utcnow() - timedelta(days=days_back)
    return f"{when.day}-{_MONTHS[when.month - 1]}-{when.year}"


def summary_from_header(
    account_id: str,
    uid: int,
    header: ParsedHeader,
    *,
    is_read: bool = False,
    attachments: bool = False,
    size_bytes: int = 0,
) -> MessageSummary:
    """Build a MessageSummary from a decoded header block."""
    sender = parse_address(header.sender)
    recipient = parse_address(header.to) if header.to else Address()
    return MessageSummary(
        account_id=account_id,
        uid=uid,
        sender=sender,
        recipient=recipient,
        subject=header.subject,
        date=header.date,
        is_read=is_read,
        has_attachments=attachments,
        preview_text=f"{header.subject} - {sender.name or sender.address}",
        size_bytes=size_bytes,
        message_id=header.message_id,
    )


def _decode_line(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _library_error(error: Exception, what: str) -> MailSyncError:
    """Translate an aioimaplib exception (Abort, Error, CommandTimeout...)."""
    if isinstance(error, aioimaplib.CommandTimeout):
        return OperationTimeoutError(f"{what} timed out in aioimaplib")
    return ProtocolError(f"{what} aborted: {error}")


@dataclass
class RawContent:
    """
    The undecoded form of one full message.

    Attributes:
        uid: UID of the message.
        headers: The raw header block (everything up to the first blank line).
        raw_body: The complete RFC 822 message bytes.
        size_bytes: RFC822.SIZE reported by the server.
        structure: Parsed BODYSTRUCTURE, when the server sent one.
        flags: Upper-cased flags, e.g. {"\\SEEN"}.
    """
    uid: int
    headers: str
    raw_body: bytes
    size_bytes: int = 0
    structure: BodyPart | None = None
    flags: frozenset[str] = frozenset()

    @property
    def is_read(self) -> bool:
        return "\\SEEN" in self.flags


@dataclass
class _FetchGroup:
    """All response items belonging to one "N FETCH (...)" line."""
    seq: int
    text: str
    header: bytes | None = None
    body: bytes | None = None


class ProtocolClient:
    """
    Async IMAP client for one account's mailbox.

    Usage:
        >>> client = ProtocolClient("personal")
        >>> await client.connect(credentials)
        >>> recent = await client.list_recent(30)
        >>> await client.disconnect()

    Attributes:
        account_id: Account whose messages this client produces.
        mailbox: Mailbox opened by every operation.
        state: Connection lifecycle, owned by this client.
        capabilities: Upper-cased capabilities currently known.
        last_snapshot: Counters from the most recent mailbox open.
    """

    # Timeouts (seconds)
    CONNECT_TIMEOUT = 10
    AUTH_TIMEOUT = 5
    FETCH_TIMEOUT = 15
    DISCONNECT_TIMEOUT = 5

    # Over-fetch for list_recent: min(MAX, floor(limit * RATIO))
    RECENT_BUFFER_MAX = 10
    RECENT_BUFFER_RATIO = 0.5

    def __init__(
        self,
        account_id: str,
        mailbox: str = "INBOX",
        *,
        connect_timeout: float | None = None,
        auth_timeout: float | None = None,
        fetch_timeout: float | None = None,
        disconnect_timeout: float | None = None,
        recent_buffer_max: int | None = None,
        recent_buffer_ratio: float | None = None,
    ) -> None:
        self.account_id = account_id
        self.mailbox = mailbox

        self.connect_timeout = connect_timeout or self.CONNECT_TIMEOUT
        self.auth_timeout = auth_timeout or self.AUTH_TIMEOUT
        self.fetch_timeout = fetch_timeout or self.FETCH_TIMEOUT
        self.disconnect_timeout = disconnect_timeout or self.DISCONNECT_TIMEOUT
        self.recent_buffer_max = (
            self.RECENT_BUFFER_MAX if recent_buffer_max is None else recent_buffer_max
        )
        self.recent_buffer_ratio = (
            self.RECENT_BUFFER_RATIO if recent_buffer_ratio is None else recent_buffer_ratio
        )

        self.state = ConnectionState.DISCONNECTED
        self.capabilities: set[str] = set()
        self.last_snapshot: MailboxSnapshot | None = None

        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._host = ""
        self._handshake_capabilities: set[str] = set()
        self._mode: str | None = None           # "examine" or "select"
        self._idle_task: Awaitable | None = None

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected and authenticated."""
        return self._client is not None and self.state in (
            ConnectionState.CONNECTED,
            ConnectionState.IDLING,
        )

    def recent_buffer(self, limit: int) -> int:
        """Extra sequence numbers fetched beyond `limit` to cover deletion gaps."""
        return min(self.recent_buffer_max, math.floor(limit * self.recent_buffer_ratio))

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, credentials: Credentials) -> None:
        """
        Open the connection and log in.

        The connect phase (TCP/TLS + greeting + STARTTLS) and the login phase
        have separate timeouts so a slow server cannot stretch one into the
        other.

        Args:
            credentials: Host, port, security mode and login for this attempt.

        Raises:
            NetworkError: Connection refused or timed out.
            AuthError: The server rejected the login.
            ProtocolError: The server greeting or STARTTLS upgrade was unusable.
        """
        self._host = credentials.host
        self.state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {credentials.host}:{credentials.port}")

        try:
            await asyncio.wait_for(self._open(credentials), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self._abort()
            raise NetworkError(
                f"Connection timed out to {credentials.host}:{credentials.port}"
            ) from e
        except OSError as e:
            await self._abort()
            raise NetworkError(
                f"Failed to connect to {credentials.host}:{credentials.port}: {e}"
            ) from e
        except aioimaplib.AioImapException as e:
            await self._abort()
            raise _library_error(e, f"Connection to {credentials.host}") from e
        except MailSyncError:
            await self._abort()
            raise

        try:
            await asyncio.wait_for(self._authenticate(credentials), timeout=self.auth_timeout)
        except asyncio.TimeoutError as e:
            await self._abort()
            raise NetworkError(f"Login timed out for {credentials.username}") from e
        except OSError as e:
            await self._abort()
            raise NetworkError(f"Connection lost during login: {e}") from e
        except aioimaplib.AioImapException as e:
            await self._abort()
            raise _library_error(e, f"Login for {credentials.username}") from e
        except MailSyncError:
            await self._abort()
            raise

        self.capabilities = self._current_capabilities() or set(self._handshake_capabilities)
        self.state = ConnectionState.CONNECTED
        logger.info(f"Successfully connected to {credentials.host}")

    async def _open(self, credentials: Credentials) -> None:
        """Create the transport, wait for the greeting, upgrade if needed."""
        if credentials.security == "ssl":
            # Direct SSL connection (usually port 993)
            self._client = aioimaplib.IMAP4_SSL(
                host=credentials.host,
                port=credentials.port,
                timeout=self.fetch_timeout,
            )
        else:
            # Plain connection, upgraded with STARTTLS unless "plain" (usually port 143)
            self._client = aioimaplib.IMAP4(
                host=credentials.host,
                port=credentials.port,
                timeout=self.fetch_timeout,
            )

        await self._client.wait_hello_from_server()

        protocol_state = getattr(self._client.protocol, "state", None)
        if protocol_state not in ("NONAUTH", "AUTH"):
            raise ProtocolError(f"Unexpected server greeting (state {protocol_state})")

        # aioimaplib records the greeting's capability list on the protocol
        self._handshake_capabilities = self._current_capabilities()
        logger.debug(f"Server capabilities: {sorted(self._handshake_capabilities)}")

        if credentials.security == "starttls":
            if not self._client.has_capability("STARTTLS"):
                raise ProtocolError("Server does not support STARTTLS")
            logger.debug("Upgrading to TLS via STARTTLS")
            await self._client.starttls()

    async def _authenticate(self, credentials: Credentials) -> None:
        logger.debug(f"Authenticating as {credentials.username}")

        response = await self._client.login(credentials.username, credentials.password)

        if response.result != "OK":
            raise AuthError(
                f"Authentication failed for {credentials.username}: "
                f"{[_decode_line(line) for line in response.lines]}"
            )
        logger.debug("Authentication successful")

    def _current_capabilities(self) -> set[str]:
        if self._client is None:
            return set()
        caps = getattr(self._client.protocol, "capabilities", None) or ()
        return {str(cap).upper() for cap in caps}

    async def disconnect(self) -> None:
        """
        Gracefully disconnect: LOGOUT, bounded by DISCONNECT_TIMEOUT.

        If the server does not answer in time the socket is closed
        forcibly. Never raises.
        """
        client, self._client = self._client, None
        self._mode = None
        self._idle_task = None

        if client is not None:
            try:
                logger.debug("Sending LOGOUT")
                await asyncio.wait_for(client.logout(), timeout=self.disconnect_timeout)
            except asyncio.TimeoutError:
                logger.warning("LOGOUT not acknowledged, closing socket")
                self._close_transport(client)
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
                self._close_transport(client)

        self.state = ConnectionState.DISCONNECTED

    async def _abort(self) -> None:
        """Drop a half-open connection after a failed connect."""
        client, self._client = self._client, None
        if client is not None:
            self._close_transport(client)
        self._mode = None
        self.state = ConnectionState.ERROR

    @staticmethod
    def _close_transport(client: Any) -> None:
        transport = getattr(getattr(client, "protocol", None), "transport", None)
        if transport is not None:
            transport.close()

    def _require(self) -> Any:
        if self._client is None:
            raise NetworkError(f"Not connected ({self.account_id})")
        return self._client

    async def _bounded(self, coro: Awaitable[T], what: str) -> T:
        """
        Run a fetch/search/store under FETCH_TIMEOUT.

        Raises:
            OperationTimeoutError: The operation exceeded its bound.
            NetworkError: The connection failed underneath it.
            ProtocolError: aioimaplib aborted the command.
        """
        try:
            return await asyncio.wait_for(coro, timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            # Partial results die with the cancelled coroutine
            raise OperationTimeoutError(
                f"{what} timed out after {self.fetch_timeout}s"
            ) from e
        except OSError as e:
            self.state = ConnectionState.ERROR
            raise NetworkError(f"{what} failed: {e}") from e
        except aioimaplib.AioImapException as e:
            self.state = ConnectionState.ERROR
            raise _library_error(e, what) from e

    # =========================================================================
    # Mailbox State
    # =========================================================================

    async def _open_mailbox(self, readonly: bool) -> MailboxSnapshot:
        """
        Open the mailbox with EXAMINE (read-only) or SELECT (read-write).

        Always re-issued so the returned counters are current.
        """
        client = self._require()
        quoted = _quote_mailbox(self.mailbox)

        if readonly:
            response = await client.examine(quoted)
        else:
            response = await client.select(quoted)

        if response.result != "OK":
            self._mode = None
            raise ProtocolError(
                f"Failed to open mailbox '{self.mailbox}': "
                f"{[_decode_line(line) for line in response.lines]}"
            )

        self._mode = "examine" if readonly else "select"
        snapshot = self._parse_select_response(response)
        self.last_snapshot = snapshot
        logger.debug(f"Opened {self.mailbox} ({self._mode}): {snapshot}")
        return snapshot

    def _parse_select_response(self, response) -> MailboxSnapshot:
        """Parse SELECT/EXAMINE response into a MailboxSnapshot."""
        snapshot = MailboxSnapshot()

        for line in response.lines:
            line = _decode_line(line)

            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                snapshot.total_messages = int(match.group(1))

            match = re.search(r"(\d+)\s+RECENT", line, re.IGNORECASE)
            if match:
                snapshot.recent_count = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                snapshot.uid_validity = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                snapshot.uid_next = int(match.group(1))

            match = re.match(r"\*?\s*FLAGS\s*\(([^)]*)\)", line, re.IGNORECASE)
            if match:
                snapshot.flags = match.group(1).split()

        return snapshot

    async def mailbox_info(self) -> MailboxSnapshot:
        """
        Return fresh counters for the mailbox.

        EXAMINE provides totals and recent counts; the unseen count comes
        from STATUS because the EXAMINE UNSEEN code is a sequence number.
        """
        return await self._bounded(self._mailbox_info(), "mailbox_info")

    async def _mailbox_info(self) -> MailboxSnapshot:
        snapshot = await self._open_mailbox(readonly=True)
        client = self._require()

        response = await client.status(_quote_mailbox(self.mailbox), "(MESSAGES UNSEEN)")
        if response.result != "OK":
            raise ProtocolError(f"STATUS failed: {[_decode_line(l) for l in response.lines]}")

        for line in response.lines:
            match = re.search(r"UNSEEN\s+(\d+)", _decode_line(line), re.IGNORECASE)
            if match:
                snapshot.unseen_count = int(match.group(1))

        return snapshot

    # =========================================================================
    # Message Listing
    # =========================================================================

    async def list_recent(self, limit: int) -> list[MessageSummary]:
        """
        Fetch the newest `limit` messages.

        Opens the mailbox read-only, fetches the sequence window
        `max(1, total - (limit + buffer) + 1):*`, then sorts by UID
        descending and truncates to `limit`.

        Args:
            limit: Maximum number of messages to return.

        Returns:
            Summaries, newest UID first, at most `limit` of them.
        """
        if limit <= 0:
            return []
        return await self._bounded(self._list_recent(limit), "list_recent")

    async def _list_recent(self, limit: int) -> list[MessageSummary]:
        snapshot = await self._open_mailbox(readonly=True)
        total = snapshot.total_messages
        if total == 0:
            return []

        start = max(1, total - (limit + self.recent_buffer(limit)) + 1)
        logger.debug(f"Fetching sequence range {start}:* of {total} from {self.mailbox}")

        client = self._require()
        response = await client.fetch(f"{start}:*", SUMMARY_FETCH_ITEMS)
        if response.result != "OK":
            raise ProtocolError(f"Fetch failed: {[_decode_line(l) for l in response.lines]}")

        summaries = self._summaries_from(response)
        summaries.sort(key=lambda s: s.uid, reverse=True)
        return summaries[:limit]

    async def list_recent_by_date(self, days_back: int, limit: int) -> list[MessageSummary]:
        """
        Fetch the newest `limit` messages that arrived in the last `days_back` days.

        Uses UID SEARCH SINCE instead of a sequence window.
        """
        return await self._bounded(
            self._list_recent_by_date(days_back, limit), "list_recent_by_date"
        )

    async def _list_recent_by_date(self, days_back: int, limit: int) -> list[MessageSummary]:
        uids = await self._search(["SINCE", format_since_date(days_back)])
        newest = sorted(uids, reverse=True)[:limit]
        return await self._fetch_by_uids(newest)

    async def fetch_by_uids(self, uids: Iterable[int]) -> list[MessageSummary]:
        """Fetch summaries for specific UIDs, newest first."""
        return await self._bounded(self._fetch_by_uids(list(uids)), "fetch_by_uids")

    async def _fetch_by_uids(self, uids: list[int]) -> list[MessageSummary]:
        if not uids:
            return []

        await self._open_mailbox(readonly=True)
        client = self._require()

        uid_set = ",".join(str(u) for u in sorted(set(uids)))
        logger.debug(f"Fetching UIDs {uid_set} from {self.mailbox}")
        response = await client.uid("FETCH", uid_set, SUMMARY_FETCH_ITEMS)
        if response.result != "OK":
            raise ProtocolError(f"UID fetch failed: {[_decode_line(l) for l in response.lines]}")

        wanted = set(uids)
        summaries = [s for s in self._summaries_from(response) if s.uid in wanted]
        summaries.sort(key=lambda s: s.uid, reverse=True)
        return summaries

    async def fetch_content(self, uid: int) -> RawContent:
        """
        Fetch one full message in a single request.

        Raises:
            NotFoundError: The server returned no message for `uid`.
        """
        return await self._bounded(self._fetch_content(uid), "fetch_content")

    async def _fetch_content(self, uid: int) -> RawContent:
        await self._open_mailbox(readonly=True)
        client = self._require()

        response = await client.uid("FETCH", str(uid), CONTENT_FETCH_ITEMS)
        if response.result != "OK":
            raise ProtocolError(f"UID fetch failed: {[_decode_line(l) for l in response.lines]}")

        for group in self._group_fetch_lines(response.lines):
            match = _UID.search(group.text)
            if not match or int(match.group(1)) != uid or group.body is None:
                continue

            flags_match = _FLAGS.search(group.text)
            size_match = _SIZE.search(group.text)
            raw_body = group.body
            normalized = raw_body.replace(b"\r\n", b"\n")
            header_end = normalized.find(b"\n\n")
            headers = normalized[:header_end] if header_end >= 0 else normalized

            return RawContent(
                uid=uid,
                headers=headers.decode("utf-8", errors="replace"),
                raw_body=raw_body,
                size_bytes=int(size_match.group(1)) if size_match else len(raw_body),
                structure=self._structure_from(group.text),
                flags=frozenset(flags_match.group(1).upper().split()) if flags_match else frozenset(),
            )

        raise NotFoundError(f"Message UID {uid} not found in {self.mailbox}")

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, criteria: list[str] | str) -> list[int]:
        """
        Run UID SEARCH and return the matching UIDs in ascending order.

        Args:
            criteria: Either a raw criteria string ("UNSEEN") or a list of
                      keywords and arguments (["SUBJECT", "hello world"]).
                      In the list form, arguments that are not bare atoms
                      are quoted.
        """
        return await self._bounded(self._search(criteria), "search")

    async def _search(self, criteria: list[str] | str) -> list[int]:
        await self._open_mailbox(readonly=True)
        client = self._require()

        if isinstance(criteria, str):
            args = [criteria]
        else:
            # Keywords (SUBJECT, SINCE, UNSEEN...) stay bare, arguments get quoted
            args = [
                str(c) if str(c).isupper() and str(c).isalpha() else _quote_argument(str(c))
                for c in criteria
            ]

        charset = None if all(a.isascii() for a in args) else "utf-8"
        logger.debug(f"UID SEARCH {' '.join(args)}")
        response = await client.uid_search(*args, charset=charset)
        if response.result != "OK":
            raise ProtocolError(f"Search failed: {[_decode_line(l) for l in response.lines]}")

        uids: set[int] = set()
        for line in response.lines:
            tokens = _decode_line(line).split()
            if tokens and tokens[0] in ("*", "SEARCH"):
                tokens = [t for t in tokens if t not in ("*", "SEARCH")]
            if tokens and all(t.isdigit() for t in tokens):
                uids.update(int(t) for t in tokens)

        return sorted(uids)

    # =========================================================================
    # Flag Operations
    # =========================================================================

    async def set_flag(self, uid: int, flag: str, on: bool = True) -> None:
        """
        Add or remove one flag (e.g. "\\Seen") on a message.

        Re-opens the mailbox read-write first.
        """
        await self._bounded(self._set_flag(uid, flag, on), "set_flag")

    async def _set_flag(self, uid: int, flag: str, on: bool) -> None:
        await self._open_mailbox(readonly=False)
        client = self._require()

        command = f"+FLAGS ({flag})" if on else f"-FLAGS ({flag})"
        logger.debug(f"Setting flags on {uid}: {command}")
        response = await client.uid("STORE", str(uid), command)

        if response.result != "OK":
            raise ProtocolError(f"Failed to set flags: {[_decode_line(l) for l in response.lines]}")

    async def mark_read(self, uid: int) -> None:
        """Mark a message as read."""
        await self.set_flag(uid, "\\Seen", on=True)

    async def mark_unread(self, uid: int) -> None:
        """Mark a message as unread."""
        await self.set_flag(uid, "\\Seen", on=False)

    async def delete(self, uid: int) -> None:
        """Flag a message \\Deleted and expunge it."""
        await self._bounded(self._delete(uid), "delete")

    async def _delete(self, uid: int) -> None:
        await self._set_flag(uid, "\\Deleted", True)
        client = self._require()

        logger.debug(f"Expunging UID {uid} in {self.mailbox}")
        response = await client.expunge()
        if response.result != "OK":
            raise ProtocolError(f"Expunge failed: {[_decode_line(l) for l in response.lines]}")

    # =========================================================================
    # IDLE Support
    # =========================================================================

    async def detect_idle_support(self, allow_list: Iterable[str] = ()) -> tuple[bool, str]:
        """
        Decide whether the server supports IDLE.

        Tried in order:
            1. "capability": a CAPABILITY command sent now, after login.
               Many servers only advertise IDLE once authenticated, and
               aioimaplib doesn't ask again by itself.
            2. "handshake": the list advertised in the server greeting
            3. "hostname": the host matches an entry of `allow_list`

        A hostname match is only a guess. If the server then refuses IDLE,
        idle_start() raises IdleRefusedError.

        Returns:
            (supported, method), where method is the step that confirmed
            support, or "none".
        """
        client = self._require()

        await self._query_capabilities()
        if client.has_capability("IDLE"):
            return True, "capability"

        if "IDLE" in self._handshake_capabilities:
            return True, "handshake"

        host = self._host.lower()
        for known in allow_list:
            if known and known.lower() in host:
                logger.info(f"Assuming IDLE support for {self._host} (matches {known})")
                return True, "hostname"

        return False, "none"

    async def _query_capabilities(self) -> None:
        """Re-issue CAPABILITY; on failure keep what we already know."""
        client = self._require()
        try:
            await asyncio.wait_for(client.protocol.capability(), timeout=self.auth_timeout)
        except (asyncio.TimeoutError, OSError, aioimaplib.AioImapException) as e:
            logger.debug(f"CAPABILITY query failed, using known capabilities: {e!r}")
            return
        self.capabilities = self._current_capabilities()
        logger.debug(f"Capabilities after login: {sorted(self.capabilities)}")

    async def idle_start(self) -> None:
        """
        Open the mailbox read-only and enter IDLE.

        Use idle_wait() to wait for pushes, then idle_done() to leave IDLE.

        Raises:
            IdleRefusedError: The server answered the IDLE command with an error.
        """
        await self._bounded(self._open_mailbox(readonly=True), "idle select")
        client = self._require()

        logger.debug(f"Entering IDLE mode on {self.mailbox}")
        try:
            self._idle_task = await client.idle_start()
        except aioimaplib.AioImapException as e:
            raise IdleRefusedError(f"{self._host} refused IDLE: {e}") from e
        except OSError as e:
            self.state = ConnectionState.ERROR
            raise NetworkError(f"IDLE start failed: {e}") from e
        self.state = ConnectionState.IDLING

    async def idle_wait(self, timeout: float) -> list[str]:
        """
        Wait for IDLE notifications from the server.

        Returns:
            Decoded notification lines, or an empty list on timeout.

        Raises:
            NetworkError: The connection dropped while waiting.
        """
        client = self._require()

        try:
            msg = await asyncio.wait_for(client.wait_server_push(), timeout=timeout)
        except asyncio.TimeoutError:
            return []
        except OSError as e:
            self.state = ConnectionState.ERROR
            raise NetworkError(f"IDLE connection lost: {e}") from e
        except aioimaplib.AioImapException as e:
            self.state = ConnectionState.ERROR
            raise _library_error(e, "IDLE wait") from e

        if isinstance(msg, (str, bytes, bytearray)):
            msg = [msg]
        notifications = [_decode_line(line) for line in msg or ()]
        logger.debug(f"IDLE notifications: {notifications}")
        return notifications

    async def idle_done(self) -> None:
        """Leave IDLE mode (sends DONE) and wait briefly for the server's OK."""
        client = self._client
        idle_task, self._idle_task = self._idle_task, None
        if client is None or idle_task is None:
            return

        client.idle_done()
        try:
            await asyncio.wait_for(idle_task, timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            logger.warning("IDLE not acknowledged after DONE")
        except aioimaplib.AioImapException as e:
            logger.warning(f"IDLE ended with an error after DONE: {e!r}")
        if self.state == ConnectionState.IDLING:
            self.state = ConnectionState.CONNECTED

    async def noop(self) -> None:
        """Send a NOOP keep-alive."""
        client = self._require()
        try:
            response = await asyncio.wait_for(client.noop(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError("NOOP timed out") from e
        except OSError as e:
            raise NetworkError(f"NOOP failed: {e}") from e
        except aioimaplib.AioImapException as e:
            raise _library_error(e, "NOOP") from e
        if response.result != "OK":
            raise ProtocolError(f"NOOP failed: {[_decode_line(l) for l in response.lines]}")

    # =========================================================================
    # FETCH Response Parsing
    # =========================================================================

    def _summaries_from(self, response) -> list[MessageSummary]:
        summaries = []
        for group in self._group_fetch_lines(response.lines):
            summary = self._build_summary(group)
            if summary is not None:
                summaries.append(summary)
        return summaries

    def _group_fetch_lines(self, lines: Iterable[Any]) -> list[_FetchGroup]:
        """
        Group response items by message.

        aioimaplib returns a mix of text lines and raw literals. A text line
        ending in {N} announces that the next item is a literal: BODY[HEADER...]
        literals are kept as the header block, BODY[] as the full message, and
        any other literal (an odd subject inside BODYSTRUCTURE, say) is
        inlined back into the text as a quoted string.
        """
        groups: list[_FetchGroup] = []
        current: _FetchGroup | None = None
        pending: str | None = None

        for item in lines:
            if pending is not None and current is not None:
                data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode()
                if pending == "header":
                    current.header = data
                elif pending == "body":
                    current.body = data
                else:
                    inlined = data.decode("utf-8", errors="replace")
                    inlined = inlined.replace('\\', '\\\\').replace('"', '\\"')
                    current.text += f'"{inlined}"'
                pending = None
                continue

            line = _decode_line(item)
            start = _FETCH_START.match(line)
            if start:
                current = _FetchGroup(seq=int(start.group(1)), text=line.rstrip())
                groups.append(current)
            elif current is None or "completed" in line.lower():
                continue
            else:
                current.text += " " + line.strip()

            marker = _LITERAL_MARKER.search(current.text)
            if marker:
                section = _SECTION_LITERAL.search(current.text)
                if section is None:
                    pending = "inline"
                elif section.group(1).upper().startswith("HEADER"):
                    pending = "header"
                else:
                    pending = "body"
                current.text = current.text[:marker.start()].rstrip()
                if pending != "inline":
                    current.text += " NIL"

        return groups

    def _structure_from(self, text: str) -> BodyPart | None:
        match = _BODYSTRUCTURE.search(text)
        if not match:
            return None
        return parse_bodystructure(text[match.end():])

    def _build_summary(self, group: _FetchGroup) -> MessageSummary | None:
        uid_match = _UID.search(group.text)
        if not uid_match:
            return None

        flags_match = _FLAGS.search(group.text)
        flags = flags_match.group(1).upper() if flags_match else ""
        size_match = _SIZE.search(group.text)

        return summary_from_header(
            self.account_id,
            int(uid_match.group(1)),
            parse_header_block(group.header or b""),
            is_read="\\SEEN" in flags,
            attachments=has_attachments(self._structure_from(group.text)),
            size_bytes=int(size_match.group(1)) if size_match else 0,
        )
