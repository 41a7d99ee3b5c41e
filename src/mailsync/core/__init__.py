# =============================================================================
# mailsync Core Module
# =============================================================================
# Core domain models. Plain dataclasses with no I/O, importable from anywhere
# without circular dependency issues.
#
#   - Account / Credentials: what to connect to, and with what
#   - MessageSummary / MessageContent / AttachmentMeta: message data
#   - MailboxSnapshot, SyncCursor, ConnectionState: sync bookkeeping
# =============================================================================

from mailsync.core.account import Account, Credentials
from mailsync.core.message import (
    Address,
    AttachmentMeta,
    ConnectionState,
    MailboxSnapshot,
    MessageContent,
    MessageSummary,
    SyncCursor,
    synthetic_id,
    uid_from_id,
    utcnow,
)

__all__ = [
    "Account",
    "Credentials",
    "Address",
    "AttachmentMeta",
    "ConnectionState",
    "MailboxSnapshot",
    "MessageContent",
    "MessageSummary",
    "SyncCursor",
    "synthetic_id",
    "uid_from_id",
    "utcnow",
]
