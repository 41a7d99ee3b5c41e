# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite connection and schema for the message cache.
#
# Schema overview:
#   - messages: one row per (account_id, uid), header-level fields only
#   - message_content: decoded bodies, filled lazily on first read
#   - attachments: attachment metadata in body order (no payloads)
#
# Uses aiosqlite for async operations, with WAL mode so readers are not
# blocked by the background refresh writing to the same file.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from mailsync.errors import CacheError

logger = logging.getLogger(__name__)

# Bumped together with a new entry in MIGRATIONS
SCHEMA_VERSION = 1

# version -> statements that bring the previous version up to it
MIGRATIONS: dict[int, list[str]] = {}

# Special path for a private, throwaway database
MEMORY = ":memory:"


class Database:
    """
    One aiosqlite connection to the cache file, with the schema applied.

    Usage:
        >>> db = Database(Path("~/.local/share/mailsync/mailsync.db"))
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: Path | str) -> None:
        """
        Args:
            db_path: Cache file location. "~" is expanded; ":memory:" keeps
                     everything in RAM for the life of the connection.
        """
        self.db_path = db_path if str(db_path) == MEMORY else Path(db_path).expanduser()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open (creating if needed) the cache file and bring its schema current.

        Raises:
            CacheError: If the file can't be opened or initialized.
        """
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self.db_path)

            # Content and attachment rows cascade from messages
            await self._connection.execute("PRAGMA foreign_keys = ON")

            await self._connection.execute("PRAGMA journal_mode = WAL")

            await self._init_schema()
        except (aiosqlite.Error, OSError) as e:
            raise CacheError(f"Could not open cache database {self.db_path}: {e}") from e

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def conn(self) -> aiosqlite.Connection:
        """The open connection. Raises CacheError before connect() or after close()."""
        if self._connection is None:
            raise CacheError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """Create a fresh schema or migrate an older one."""
        try:
            async with self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] is not None else 0
        except aiosqlite.OperationalError:
            # No schema_version table yet
            current_version = 0

        if current_version == 0:
            await self._create_schema()
        elif current_version < SCHEMA_VERSION:
            await self._run_migrations(current_version)

    async def _create_schema(self) -> None:
        """Create every table at SCHEMA_VERSION."""
        schema = """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Message summaries
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            uid INTEGER NOT NULL,
            message_id TEXT NOT NULL DEFAULT '',
            subject TEXT NOT NULL DEFAULT '',
            sender_name TEXT NOT NULL DEFAULT '',
            sender_address TEXT NOT NULL DEFAULT '',
            recipient_name TEXT NOT NULL DEFAULT '',
            recipient_address TEXT NOT NULL DEFAULT '',
            date_sent TEXT NOT NULL,            -- ISO 8601, UTC
            is_read INTEGER NOT NULL DEFAULT 0,
            has_attachments INTEGER NOT NULL DEFAULT 0,
            preview_text TEXT NOT NULL DEFAULT '',
            size_bytes INTEGER NOT NULL DEFAULT 0,
            cached_at TEXT NOT NULL,
            UNIQUE(account_id, uid)
        );

        -- Decoded bodies
        CREATE TABLE IF NOT EXISTS message_content (
            message_rowid INTEGER PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
            body_text TEXT NOT NULL DEFAULT '',
            body_html TEXT,
            updated_at TEXT NOT NULL
        );

        -- Attachment metadata, in body order
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_rowid INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            filename TEXT NOT NULL,
            content_type TEXT NOT NULL,
            size INTEGER NOT NULL
        );

        -- Newest-first listing per account, retention cleanup, attachment order
        CREATE INDEX IF NOT EXISTS idx_messages_account_uid ON messages(account_id, uid DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date_sent DESC);
        CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_rowid, position);
        """

        await self.conn.executescript(schema)

        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()

    async def _run_migrations(self, from_version: int) -> None:
        """Apply MIGRATIONS newer than `from_version`, one version per commit."""
        for version in range(from_version + 1, SCHEMA_VERSION + 1):
            for statement in MIGRATIONS.get(version, []):
                await self.conn.execute(statement)
            await self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (version,)
            )
            await self.conn.commit()
            logger.info(f"Migrated cache schema to version {version}")
