# =============================================================================
# mailsync: A Cache-Aware IMAP Sync Engine
# =============================================================================
#
# mailsync keeps a local cache of one or more IMAP mailboxes and decides,
# per read, whether to answer from that cache, refresh in the background or
# go to the server.
#
# Features:
#   - IMAP over SSL/STARTTLS with bounded timeouts
#   - IMAP IDLE push with a polling fallback and reconnect backoff
#   - Incremental catch-up that never imports a message twice
#   - SQLite cache (or in-memory, for embedding and tests)
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__author__ = "Kord"
__app_name__ = "mailsync"

# Main entry point - this is what gets called by the 'mailsync' command
from mailsync.cli import main

__all__ = ["main", "__version__", "__app_name__"]
