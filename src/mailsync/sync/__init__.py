# =============================================================================
# Sync Module
# =============================================================================
# Cache-aware synchronization across accounts.
#
#   - SyncOrchestrator: freshness policy, catch-up, dual writes, search
#   - AccountSession / SessionRegistry: per-account state and lifecycle
# =============================================================================

from mailsync.sync.orchestrator import (
    AttachmentData,
    ContentResult,
    MessageListResult,
    SearchResult,
    Source,
    SyncOrchestrator,
    make_client_factory,
    sanitize_filename,
)
from mailsync.sync.session import AccountSession, SessionRegistry

__all__ = [
    # Orchestrator
    "SyncOrchestrator",
    "Source",
    "MessageListResult",
    "ContentResult",
    "AttachmentData",
    "SearchResult",
    "make_client_factory",
    "sanitize_filename",
    # Sessions
    "AccountSession",
    "SessionRegistry",
]
