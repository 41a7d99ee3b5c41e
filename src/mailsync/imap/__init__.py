# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Connecting to IMAP servers with SSL/STARTTLS
#   - Listing, fetching and searching messages by UID
#   - Managing message flags (read, deleted) and expunge
#   - IMAP IDLE for push notifications, with a polling fallback
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mailsync.imap.client import (
    ProtocolClient,
    RawContent,
    format_since_date,
    summary_from_header,
)
from mailsync.imap.idle import (
    IdleMonitor,
    IdleStatus,
    default_client_factory,
)

__all__ = [
    # Client
    "ProtocolClient",
    "RawContent",
    "format_since_date",
    "summary_from_header",
    # IDLE
    "IdleMonitor",
    "IdleStatus",
    "default_client_factory",
]
