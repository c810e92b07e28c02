# =============================================================================
# Remote Actions
# =============================================================================
# One-shot operations against the server outside a sync run: checking that
# an account can connect, deleting a message, and changing a flag.
#
# Each action opens its own connection and logs out afterwards. Callers
# refer to folders by their canonical local name; the server path is
# resolved from a fresh folder listing.
#
# Results are returned, not raised, so a caller can show the error without
# wrapping every call.
# =============================================================================

import logging
from dataclasses import dataclass

from mailsync.core import Account, CanonicalFolder, MessageFlags
from mailsync.imap.session import IMAPError, MailSession
from mailsync.storage.repository import Repository
from mailsync.sync.folders import resolve_server_path

logger = logging.getLogger(__name__)

# Flags set_remote_flag() also mirrors into the local record
_LOCAL_FLAGS = {
    "\\SEEN": MessageFlags.SEEN,
    "\\FLAGGED": MessageFlags.FLAGGED,
    "\\ANSWERED": MessageFlags.ANSWERED,
    "\\DRAFT": MessageFlags.DRAFT,
}


@dataclass
class ActionResult:
    """Outcome of a remote action."""
    success: bool
    error: str | None = None


async def _finish(session: MailSession, result: ActionResult) -> ActionResult:
    """Log out, folding a logout failure into an already failed result."""
    try:
        await session.logout()
    except IMAPError as e:
        if result.success:
            logger.warning(f"Logout failed: {e}")
        else:
            result.error = f"{result.error}; logout failed: {e}"
    return result


async def check_connection(session: MailSession) -> ActionResult:
    """
    Check that an account can connect, log in and open its Inbox.
    """
    try:
        await session.connect()
    except IMAPError as e:
        logger.error(f"Connection test failed: {e}")
        return ActionResult(success=False, error=str(e))

    result = ActionResult(success=True)
    try:
        async with session.lock_folder("INBOX"):
            pass
    except IMAPError as e:
        logger.error(f"Connection test failed: {e}")
        result = ActionResult(success=False, error=str(e))

    return await _finish(session, result)


async def _resolve(session: MailSession, folder: str) -> str:
    if folder == CanonicalFolder.INBOX:
        return "INBOX"

    path = resolve_server_path(folder, await session.list_folders())
    if path is None:
        logger.warning(f"Could not map {folder!r} to a server folder, using INBOX")
        return "INBOX"

    logger.debug(f"Mapped local folder {folder!r} to server folder {path!r}")
    return path


async def delete_remote_message(
    session: MailSession,
    account: Account,
    uid: int,
    folder: str = CanonicalFolder.INBOX,
    *,
    repo: Repository | None = None,
) -> ActionResult:
    """
    Delete one message on the server (flag \\Deleted and expunge).

    Args:
        session: Unconnected session for the account.
        account: Account the message belongs to.
        uid: Server UID of the message.
        folder: Canonical folder the message is stored under.
        repo: If given, the local record is removed too.
    """
    if not uid:
        return ActionResult(success=False, error="No UID")

    try:
        await session.connect()
    except IMAPError as e:
        return ActionResult(success=False, error=str(e))

    result = ActionResult(success=True)
    try:
        path = await _resolve(session, folder)
        async with session.lock_folder(path):
            await session.delete_messages([uid])
        logger.info(f"Deleted UID {uid} from {path!r}")
    except IMAPError as e:
        logger.error(f"Delete failed: {e}")
        result = ActionResult(success=False, error=str(e))

    result = await _finish(session, result)

    if result.success and repo is not None:
        await repo.delete_messages_by_uids(account.id, folder, [uid])
    return result


async def set_remote_flag(
    session: MailSession,
    account: Account,
    uid: int,
    flag: str,
    value: bool,
    folder: str = CanonicalFolder.INBOX,
    *,
    repo: Repository | None = None,
) -> ActionResult:
    """
    Add or remove one flag (e.g. "\\Seen") on a message on the server.

    Args:
        session: Unconnected session for the account.
        account: Account the message belongs to.
        uid: Server UID of the message.
        flag: IMAP flag to change.
        value: True to add the flag, False to remove it.
        folder: Canonical folder the message is stored under.
        repo: If given, the local record's flags are updated too.
    """
    if not uid:
        return ActionResult(success=False, error="No UID")

    try:
        await session.connect()
    except IMAPError as e:
        return ActionResult(success=False, error=str(e))

    result = ActionResult(success=True)
    try:
        path = await _resolve(session, folder)
        async with session.lock_folder(path):
            await session.set_flags([uid], [flag], add=value)
    except IMAPError as e:
        logger.error(f"Flag update failed: {e}")
        result = ActionResult(success=False, error=str(e))

    result = await _finish(session, result)

    local_flag = _LOCAL_FLAGS.get(flag.upper())
    if result.success and repo is not None and local_flag is not None:
        message = await repo.get_message_by_uid(account.id, folder, uid)
        if message is not None:
            flags = message.flags | local_flag if value else message.flags & ~local_flag
            await repo.update_message_flags(account.id, folder, uid, flags)
    return result
