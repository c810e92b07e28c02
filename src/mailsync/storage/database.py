# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages SQLite database connection and schema migrations.
#
# Schema overview:
#   - accounts: Email accounts, connection details and sync metadata
#   - messages: Synchronized messages, unique per (account, folder, uid)
#   - attachments: File attachments, deleted together with their message
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from mailsync.config import Config

logger = logging.getLogger(__name__)


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    This class handles:
        - A single shared connection
        - Schema creation and migrations
        - Enabling SQLite optimizations (WAL mode, foreign keys)

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        Runs any pending migrations.
        """
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Opening database at {self.db_path}")
        self._connection = await aiosqlite.connect(self.db_path)

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        # Initialize or migrate schema
        await self._init_schema()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """
        Initialize the database schema.

        Creates tables if they don't exist, runs migrations if needed.
        """
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()
            await self._run_migrations(current_version)

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Email accounts
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            email TEXT NOT NULL,
            username TEXT NOT NULL,
            imap_host TEXT NOT NULL,
            imap_port INTEGER NOT NULL DEFAULT 993,
            imap_security TEXT NOT NULL DEFAULT 'ssl',
            last_sync_uid INTEGER NOT NULL DEFAULT 0,
            last_sync_time TEXT,
            storage_used_kb INTEGER NOT NULL DEFAULT 0,
            storage_total_kb INTEGER NOT NULL DEFAULT 0,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        -- Email messages, keyed by canonical folder name
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            folder TEXT NOT NULL,
            uid INTEGER NOT NULL,
            sender TEXT,
            sender_name TEXT,
            subject TEXT,
            body_text TEXT,
            body_html TEXT,
            date TEXT,
            flags INTEGER NOT NULL DEFAULT 0,
            classification TEXT,
            UNIQUE(account_id, folder, uid)
        );

        -- Message attachments
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            filename TEXT NOT NULL,
            content_type TEXT NOT NULL,
            size INTEGER NOT NULL,
            data BLOB
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(account_id, folder);
        CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_flags ON messages(flags);
        CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id);
        """

        await self.conn.executescript(schema)

        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()

    async def _run_migrations(self, from_version: int) -> None:
        """
        Run schema migrations from the given version to current.

        Args:
            from_version: Version to migrate from.
        """
        # Nothing to migrate yet; version 1 is the first schema.
        if from_version:
            logger.info(f"Database schema at version {from_version}, current is {SCHEMA_VERSION}")
