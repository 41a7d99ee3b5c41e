# =============================================================================
# Message Model
# =============================================================================
# The data shapes that flow between the protocol client, the decoder, the
# orchestrator and the cache:
#
#   - MessageSummary: one row per email (headers + flags + metadata)
#   - MessageContent: a summary plus the decoded body and attachment list
#   - MailboxSnapshot: counters from the last mailbox open (never persisted)
#   - SyncCursor: how far the orchestrator has synced an account
#   - ConnectionState: lifecycle of one IMAP connection
#
# Identity: (account_id, uid) is the natural key of a message. The id the UI
# sees is derived from the uid ("imap-<uid>") so the cache and callers agree
# on identity without a lookup table.
# =============================================================================

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from mailsync.errors import NotFoundError


# Prefix of the client-facing message id
ID_PREFIX = "imap-"

_ID_PATTERN = re.compile(r"^imap-(\d+)$")


def synthetic_id(uid: int) -> str:
    """Return the client-facing id for a uid."""
    return f"{ID_PREFIX}{uid}"


def uid_from_id(message_id: str) -> int:
    """
    Recover the uid from a client-facing id.

    Raises:
        NotFoundError: If the id is not of the form "imap-<uid>".
    """
    match = _ID_PATTERN.match(message_id or "")
    if not match:
        raise NotFoundError(f"Unknown message id: {message_id!r}")
    return int(match.group(1))


def utcnow() -> datetime:
    """Timezone-aware now, used everywhere a timestamp is stamped."""
    return datetime.now(timezone.utc)


class ConnectionState(Enum):
    """
    Lifecycle of one IMAP connection.

    Owned by whichever component manages the connection and never mutated
    from outside it.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    IDLING = "idling"
    POLLING = "polling"
    ERROR = "error"


@dataclass
class Address:
    """A display name / email address pair."""
    name: str = ""
    address: str = ""

    def __str__(self) -> str:
        if self.name and self.name != self.address:
            return f"{self.name} <{self.address}>"
        return self.address or self.name


@dataclass
class MessageSummary:
    """
    Header-level view of one message.

    Attributes:
        account_id: Account this message belongs to.
        uid: Server-assigned UID. Monotonically increasing per mailbox and
             stable across sessions (unlike sequence numbers).
        sender: Parsed "From" header.
        recipient: Parsed "To" header.
        subject: Decoded subject line.
        date: Sent date (UTC). Falls back to fetch time when unparseable.
        is_read: Whether the \\Seen flag is set.
        has_attachments: Derived from the body structure; corrected later if
                         a full body parse finds attachments.
        preview_text: Short text for list views.
        size_bytes: RFC822 size reported by the server.
        message_id: RFC 5322 Message-ID header, may be empty.
        cached_at: When this row was produced.
    """

    # Identity
    account_id: str
    uid: int

    # Envelope
    sender: Address = field(default_factory=Address)
    recipient: Address = field(default_factory=Address)
    subject: str = ""
    date: datetime = field(default_factory=utcnow)

    # State
    is_read: bool = False
    has_attachments: bool = False

    # Metadata
    preview_text: str = ""
    size_bytes: int = 0
    message_id: str = ""
    cached_at: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        """Client-facing id, derived from the uid."""
        return synthetic_id(self.uid)


@dataclass
class AttachmentMeta:
    """Metadata for one attachment, in body order."""
    filename: str
    size_bytes: int
    content_type: str = "application/octet-stream"


@dataclass
class MessageContent:
    """
    A message summary together with its decoded body.

    Created lazily the first time a reader asks for the full message and
    persisted back into the cache so it is not fetched again.
    """
    summary: MessageSummary
    text_body: str = ""
    html_body: str | None = None
    attachments: list[AttachmentMeta] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.summary.id

    @property
    def has_body(self) -> bool:
        return bool(self.text_body or self.html_body)

    def with_summary(self, **changes) -> "MessageContent":
        """Return a copy with fields of the summary replaced."""
        return replace(self, summary=replace(self.summary, **changes))


@dataclass
class MailboxSnapshot:
    """Counters from a mailbox open. Recomputed every time, never stored."""
    total_messages: int = 0
    unseen_count: int = 0
    recent_count: int = 0
    flags: list[str] = field(default_factory=list)
    uid_validity: int | None = None
    uid_next: int | None = None


@dataclass
class SyncCursor:
    """
    Progress marker for one account.

    Only the orchestrator mutates it, and only after a fetch-and-merge cycle
    has completed.
    """
    last_sync_timestamp: datetime | None = None
    highest_known_uid: int = 0

    def advance(self, uids: list[int], when: datetime | None = None) -> None:
        """Record a completed cycle that saw the given uids."""
        if uids:
            self.highest_known_uid = max(self.highest_known_uid, max(uids))
        self.last_sync_timestamp = when or utcnow()
