# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# Provides the storage operations the sync core depends on, plus the
# supporting queries used by the CLI and the remote actions.
#
# It handles:
#   - Converting between domain models and database rows
#   - Idempotent message upserts keyed by (account, folder, uid)
#   - Batched orphan deletion
#   - Account sync metadata (last Inbox UID, last sync time, quota)
#
# Every write method commits its own transaction and rolls back on failure,
# so a crash mid-run never leaves a half-written record behind.
#
# All methods are async for non-blocking database access.
# =============================================================================

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from mailsync.core import Account, Attachment, Message, MessageFlags

if TYPE_CHECKING:
    from mailsync.storage.database import Database

logger = logging.getLogger(__name__)

# SQLite caps the number of host parameters per statement (999 on older
# builds), so large IN clauses are split.
_IN_CHUNK = 500


class Repository:
    """
    Data access layer for Mailsync.

    Usage:
        >>> repo = Repository(database)
        >>> account = await repo.get_account_by_name("personal")
        >>> await repo.upsert_message(message)
        >>> uids = await repo.get_local_uids(account.id, "Inbox")

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
        """
        self.db = db

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_all_accounts(self) -> list[Account]:
        """Get all stored accounts, ordered by name."""
        async with self.db.conn.execute(
            "SELECT * FROM accounts ORDER BY name"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_account(row) for row in rows]

    async def get_account(self, account_id: int) -> Account | None:
        """
        Get an account by ID.

        Returns:
            Account if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_account(row) if row else None

    async def get_account_by_name(self, name: str) -> Account | None:
        """
        Get an account by its unique name.

        Args:
            name: Account name (e.g., "personal", "work").
        """
        async with self.db.conn.execute(
            "SELECT * FROM accounts WHERE name = ?", (name,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_account(row) if row else None

    async def save_account(self, account: Account) -> Account:
        """
        Save an account's connection details (insert or update).

        Sync metadata (last_sync_uid, quota) is left alone on update; it
        belongs to the sync orchestrator and is written through
        update_account_sync_state / update_account_quota.

        Returns:
            Saved account with ID populated.
        """
        if account.id is None:
            cursor = await self.db.conn.execute(
                """INSERT INTO accounts
                   (name, email, username, imap_host, imap_port, imap_security, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (account.name, account.email, account.username,
                 account.imap_host, account.imap_port, account.imap_security,
                 account.enabled)
            )
            account.id = cursor.lastrowid
        else:
            await self.db.conn.execute(
                """UPDATE accounts SET
                   name=?, email=?, username=?, imap_host=?, imap_port=?,
                   imap_security=?, enabled=?
                   WHERE id=?""",
                (account.name, account.email, account.username,
                 account.imap_host, account.imap_port, account.imap_security,
                 account.enabled, account.id)
            )
        await self.db.conn.commit()
        return account

    async def delete_account(self, account_id: int) -> None:
        """Delete an account; its messages and attachments cascade."""
        await self.db.conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        await self.db.conn.commit()

    async def update_account_sync_state(
        self,
        account_id: int,
        max_inbox_uid: int,
        timestamp: datetime,
    ) -> None:
        """
        Record the outcome of a sync run.

        Args:
            account_id: Account that was synced.
            max_inbox_uid: Highest UID stored locally for the Inbox.
            timestamp: When the run finished.
        """
        await self.db.conn.execute(
            "UPDATE accounts SET last_sync_uid = ?, last_sync_time = ? WHERE id = ?",
            (max_inbox_uid, timestamp.isoformat(), account_id)
        )
        await self.db.conn.commit()

    async def update_account_quota(
        self,
        account_id: int,
        used_kb: int,
        total_kb: int,
    ) -> None:
        """Store server-reported storage usage, in kilobytes."""
        await self.db.conn.execute(
            "UPDATE accounts SET storage_used_kb = ?, storage_total_kb = ? WHERE id = ?",
            (used_kb, total_kb, account_id)
        )
        await self.db.conn.commit()

    def _row_to_account(self, row) -> Account:
        """Convert a database row to an Account object."""
        return Account(
            id=row[0],
            name=row[1],
            email=row[2],
            username=row[3] or "",
            imap_host=row[4],
            imap_port=row[5],
            imap_security=row[6],
            last_sync_uid=row[7] or 0,
            last_sync_time=datetime.fromisoformat(row[8]) if row[8] else None,
            storage_used_kb=row[9] or 0,
            storage_total_kb=row[10] or 0,
            enabled=bool(row[11]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def upsert_message(self, message: Message) -> Message:
        """
        Insert a message, or update it in place if (account, folder, uid)
        already exists.

        The message row and its attachments are written in one transaction.
        Attachments are replaced wholesale on update.

        Returns:
            The message with its ID populated.
        """
        conn = self.db.conn
        try:
            await conn.execute(
                """INSERT INTO messages
                   (account_id, folder, uid, sender, sender_name, subject,
                    body_text, body_html, date, flags, classification)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id, folder, uid) DO UPDATE SET
                    sender=excluded.sender,
                    sender_name=excluded.sender_name,
                    subject=excluded.subject,
                    body_text=excluded.body_text,
                    body_html=excluded.body_html,
                    date=excluded.date,
                    flags=excluded.flags,
                    classification=excluded.classification""",
                (message.account_id, message.folder, message.uid,
                 message.sender, message.sender_name, message.subject,
                 message.body_text, message.body_html,
                 message.date.isoformat() if message.date else None,
                 int(message.flags), message.classification)
            )

            # lastrowid is unreliable for the UPDATE branch, look it up
            async with conn.execute(
                "SELECT id FROM messages WHERE account_id = ? AND folder = ? AND uid = ?",
                (message.account_id, message.folder, message.uid)
            ) as cursor:
                row = await cursor.fetchone()
            message.id = row[0]

            await conn.execute(
                "DELETE FROM attachments WHERE message_id = ?", (message.id,)
            )
            for att in message.attachments:
                cursor = await conn.execute(
                    """INSERT INTO attachments
                       (message_id, filename, content_type, size, data)
                       VALUES (?, ?, ?, ?, ?)""",
                    (message.id, att.filename, att.content_type, att.size, att.data)
                )
                att.id = cursor.lastrowid
                att.message_id = message.id

            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        return message

    async def get_local_uids(self, account_id: int, folder: str) -> list[int]:
        """
        Get all UIDs stored locally for a folder, ascending.

        Used for new-message detection and orphan reconciliation.
        """
        async with self.db.conn.execute(
            "SELECT uid FROM messages WHERE account_id = ? AND folder = ? ORDER BY uid",
            (account_id, folder)
        ) as cursor:
            rows = await cursor.fetchall()
            return [row[0] for row in rows]

    async def get_max_uid(self, account_id: int, folder: str) -> int:
        """
        Get the highest UID stored for a folder.

        Returns:
            Highest UID, or 0 if the folder is empty.
        """
        async with self.db.conn.execute(
            "SELECT MAX(uid) FROM messages WHERE account_id = ? AND folder = ?",
            (account_id, folder)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row and row[0] else 0

    async def delete_messages_by_uids(
        self,
        account_id: int,
        folder: str,
        uids: Iterable[int],
    ) -> int:
        """
        Delete messages by their UIDs.

        Used to remove messages that disappeared from the server. All
        deletes run in one transaction; attachments go with them through
        ON DELETE CASCADE.

        Returns:
            Number of messages deleted.
        """
        uids = sorted(set(uids))
        if not uids:
            return 0

        conn = self.db.conn
        deleted = 0
        try:
            for i in range(0, len(uids), _IN_CHUNK):
                chunk = uids[i:i + _IN_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"DELETE FROM messages WHERE account_id = ? AND folder = ? "
                    f"AND uid IN ({placeholders})",
                    [account_id, folder, *chunk]
                )
                deleted += cursor.rowcount
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        return deleted

    async def get_messages(
        self,
        account_id: int,
        folder: str,
        *,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
    ) -> list[Message]:
        """
        Get messages from a folder, newest first.

        Args:
            account_id: Account to read from.
            folder: Canonical folder name.
            limit: Maximum number of messages to return.
            offset: Number of messages to skip (for pagination).
            unread_only: If True, only return unread messages.

        Returns:
            List of Message objects (attachments not loaded).
        """
        query = "SELECT * FROM messages WHERE account_id = ? AND folder = ?"
        params: list = [account_id, folder]

        if unread_only:
            # Check if SEEN flag is NOT set
            query += " AND (flags & ?) = 0"
            params.append(int(MessageFlags.SEEN))

        query += " ORDER BY datetime(date) DESC, uid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def get_message(self, message_id: int) -> Message | None:
        """
        Get a single message with its attachments.

        Returns:
            Message if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM messages WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None

        message = self._row_to_message(row)
        message.attachments = await self._get_attachments(message_id)
        return message

    async def get_message_by_uid(
        self,
        account_id: int,
        folder: str,
        uid: int,
    ) -> Message | None:
        """Get a message (with attachments) by its identity."""
        async with self.db.conn.execute(
            "SELECT id FROM messages WHERE account_id = ? AND folder = ? AND uid = ?",
            (account_id, folder, uid)
        ) as cursor:
            row = await cursor.fetchone()
        return await self.get_message(row[0]) if row else None

    async def get_message_count(self, account_id: int, folder: str | None = None) -> int:
        """Count stored messages for an account, optionally in one folder."""
        query = "SELECT COUNT(*) FROM messages WHERE account_id = ?"
        params: list = [account_id]
        if folder is not None:
            query += " AND folder = ?"
            params.append(folder)

        async with self.db.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def update_message_flags(
        self,
        account_id: int,
        folder: str,
        uid: int,
        flags: MessageFlags,
    ) -> None:
        """Update just the flags on a message."""
        await self.db.conn.execute(
            "UPDATE messages SET flags = ? WHERE account_id = ? AND folder = ? AND uid = ?",
            (int(flags), account_id, folder, uid)
        )
        await self.db.conn.commit()

    async def migrate_folder(self, account_id: int, old_name: str, new_name: str) -> int:
        """
        Move all records stored under `old_name` to `new_name`.

        Records whose UID already exists under `new_name` are duplicates
        and are dropped from the old folder. Nothing else is deleted.

        Returns:
            Number of records moved.
        """
        if old_name == new_name:
            return 0

        conn = self.db.conn
        try:
            cursor = await conn.execute(
                "UPDATE OR IGNORE messages SET folder = ? WHERE account_id = ? AND folder = ?",
                (new_name, account_id, old_name)
            )
            moved = cursor.rowcount
            await conn.execute(
                """DELETE FROM messages
                   WHERE account_id = ? AND folder = ?
                   AND uid IN (SELECT uid FROM messages WHERE account_id = ? AND folder = ?)""",
                (account_id, old_name, account_id, new_name)
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        if moved > 0:
            logger.info(f"Migrated {moved} messages from {old_name!r} to {new_name!r}")
        return moved

    async def _get_attachments(self, message_id: int) -> list[Attachment]:
        """Load attachments for a message."""
        async with self.db.conn.execute(
            "SELECT * FROM attachments WHERE message_id = ? ORDER BY id",
            (message_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_attachment(row) for row in rows]

    def _row_to_message(self, row) -> Message:
        """Convert a database row to a Message object."""
        return Message(
            id=row[0],
            account_id=row[1],
            folder=row[2],
            uid=row[3],
            sender=row[4] or "",
            sender_name=row[5] or "",
            subject=row[6] or "",
            body_text=row[7] or "",
            body_html=row[8],
            date=datetime.fromisoformat(row[9]) if row[9] else None,
            flags=MessageFlags(row[10]),
            classification=row[11],
        )

    def _row_to_attachment(self, row) -> Attachment:
        """Convert a database row to an Attachment object."""
        return Attachment(
            id=row[0],
            message_id=row[1],
            filename=row[2],
            content_type=row[3],
            size=row[4],
            data=row[5],
        )

    # =========================================================================
    # Unread Counts
    # =========================================================================

    async def get_unread_count(self, account_id: int, folder: str | None = None) -> int:
        """
        Get the number of unread messages for an account.

        Args:
            account_id: Account ID.
            folder: Restrict to one canonical folder, or None for all.
        """
        query = "SELECT COUNT(*) FROM messages WHERE account_id = ? AND (flags & ?) = 0"
        params: list = [account_id, int(MessageFlags.SEEN)]
        if folder is not None:
            query += " AND folder = ?"
            params.append(folder)

        async with self.db.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_aggregate_unread_count(self) -> int:
        """Get the number of unread messages across all accounts."""
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE (flags & ?) = 0",
            (int(MessageFlags.SEEN),)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
