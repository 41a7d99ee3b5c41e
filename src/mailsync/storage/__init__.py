# =============================================================================
# Storage Module
# =============================================================================
# The local message cache.
#
# Provides:
#   - CacheStore: the contract the orchestrator depends on
#   - MemoryCacheStore: dictionaries, for tests and embedding
#   - Database + CacheRepository: SQLite via aiosqlite, the default store
#
# The database is stored in the XDG data directory (~/.local/share/mailsync/).
# =============================================================================

from mailsync.storage.cache import CacheStats, CacheStore, MemoryCacheStore
from mailsync.storage.database import Database
from mailsync.storage.repository import CacheRepository

__all__ = [
    "CacheStats",
    "CacheStore",
    "MemoryCacheStore",
    "Database",
    "CacheRepository",
]
