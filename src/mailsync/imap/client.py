# =============================================================================
# IMAP Session
# =============================================================================
# Implements the MailSession contract on top of aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect, logout)
#   - Authentication (SSL or STARTTLS, password from the system keyring)
#   - Folder operations (list, lock/select)
#   - Metadata fetches by sequence range (UID + FLAGS only)
#   - Full message fetches by UID (BODY.PEEK[] so nothing gets marked \Seen)
#   - Quota queries (RFC 2087 GETQUOTAROOT)
#   - Flag mutation and deletion on the locked mailbox
#
# Design notes:
#   - All methods are async; nothing blocks the event loop
#   - aioimaplib returns the whole response at once; the fetch methods parse
#     it and hand items out through async generators so callers consume a
#     lazy, non-restartable stream
#   - Literal data (message sources) arrives as separate bytearray items
# =============================================================================

import asyncio
import logging
import re
import ssl
import sys
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING, AsyncIterator, Iterator

import keyring
import keyring.errors
from aioimaplib import aioimaplib

if TYPE_CHECKING:
    from mailsync.core import Account

from mailsync.core import FolderDescriptor
from mailsync.imap.session import (
    ChunkDownloadError,
    FetchedFlags,
    FetchedMessage,
    FolderLockError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    MailboxLock,
    QuotaError,
    QuotaUsage,
    RangeFetchError,
)

# Set up logging for this module
logger = logging.getLogger(__name__)


_LIST_LINE = re.compile(r'\(([^)]*)\)\s+(?:"([^"]*)"|NIL)\s+(.+)$', re.IGNORECASE)
_FETCH_START = re.compile(r"^\d+\s+FETCH\s*\(", re.IGNORECASE)
_UID = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(r"\bFLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_QUOTA = re.compile(r'^(?:QUOTA\s+)?(?:"[^"]*"|\S+)\s+\((.*)\)', re.IGNORECASE)

# Anything aioimaplib or the socket layer raises while a command is in flight
_TRANSPORT_ERRORS = (asyncio.TimeoutError, OSError, aioimaplib.AioImapException)

# SPECIAL-USE attributes (RFC 6154) we pass through on descriptors
_SPECIAL_USE = ("\\SENT", "\\TRASH", "\\JUNK", "\\DRAFTS", "\\ARCHIVE", "\\ALL", "\\FLAGGED")


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    IMAP folder names with spaces or special characters must be quoted.
    This function wraps folder names in double quotes and escapes
    any internal quotes or backslashes.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _to_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


@contextmanager
def _recursion_headroom(items: int) -> Iterator[None]:
    """
    Temporarily raise the recursion limit for very large responses.

    aioimaplib's response parser recurses per item and can hit Python's
    default limit on folders with thousands of messages.
    """
    old_limit = sys.getrecursionlimit()
    if items > 1000:
        sys.setrecursionlimit(max(old_limit, items + 1000))
    try:
        yield
    finally:
        if items > 1000:
            sys.setrecursionlimit(old_limit)


# =============================================================================
# Response parsing
# =============================================================================
# Kept as module-level functions so they can be tested without a server.

def parse_list_line(line: bytes | str) -> FolderDescriptor | None:
    """
    Parse a single LIST response line into a FolderDescriptor.

    LIST response format:
        (\\HasNoChildren) "/" "INBOX"
        (\\HasNoChildren \\Sent) "." "INBOX.Sent"

    Returns None for status lines, unparseable lines and \\Noselect
    containers (they can't be SELECTed, so there is nothing to sync).
    """
    text = _to_text(line).strip()
    if not text:
        return None

    match = _LIST_LINE.match(text)
    if not match:
        return None

    flags_str, delimiter, name = match.groups()
    attributes = [f.upper() for f in flags_str.split()]
    if "\\NOSELECT" in attributes or "\\NONEXISTENT" in attributes:
        return None

    path = name.strip().strip('"')
    if not path:
        return None

    special_use = next(
        (flag for flag in flags_str.split() if flag.upper() in _SPECIAL_USE),
        None,
    )
    return FolderDescriptor(
        path=path,
        delimiter=delimiter or "/",
        special_use=special_use,
    )


def parse_select_response(lines: list) -> dict[str, int]:
    """Parse SELECT/EXAMINE response lines into a status dictionary."""
    status: dict[str, int] = {}

    for line in lines:
        text = _to_text(line)

        match = re.search(r"(\d+)\s+EXISTS", text, re.IGNORECASE)
        if match:
            status["EXISTS"] = int(match.group(1))

        match = re.search(r"(\d+)\s+RECENT", text, re.IGNORECASE)
        if match:
            status["RECENT"] = int(match.group(1))

        match = re.search(r"UIDVALIDITY\s+(\d+)", text, re.IGNORECASE)
        if match:
            status["UIDVALIDITY"] = int(match.group(1))

        match = re.search(r"UIDNEXT\s+(\d+)", text, re.IGNORECASE)
        if match:
            status["UIDNEXT"] = int(match.group(1))

    return status


def _group_fetch_items(lines: list) -> list[tuple[str, bytes | None]]:
    """
    Group FETCH response items by message.

    aioimaplib returns text lines as bytes and literal payloads as bytearray.
    A message starts with an "N FETCH (" line; any literal that follows
    belongs to that message, and trailing text (some servers put UID/FLAGS
    after the literal) is appended to its text.
    """
    groups: list[tuple[str, bytes | None]] = []
    text: str | None = None
    source: bytes | None = None

    for item in lines:
        if isinstance(item, bytearray):
            if text is not None:
                source = bytes(item)
            continue

        line = _to_text(item)
        if _FETCH_START.match(line):
            if text is not None:
                groups.append((text, source))
            text, source = line, None
        elif text is not None:
            text += " " + line.strip()

    if text is not None:
        groups.append((text, source))

    return groups


def _parse_flags(text: str) -> frozenset[str]:
    match = _FLAGS.search(text)
    if not match:
        return frozenset()
    return frozenset(match.group(1).split())


def parse_flags_response(lines: list) -> list[FetchedFlags]:
    """Parse a "(UID FLAGS)" FETCH response."""
    items = []
    for text, _ in _group_fetch_items(lines):
        uid_match = _UID.search(text)
        if uid_match:
            items.append(FetchedFlags(uid=int(uid_match.group(1)), flags=_parse_flags(text)))
    return items


def parse_message_response(lines: list) -> list[FetchedMessage]:
    """Parse a "(UID FLAGS BODY.PEEK[])" UID FETCH response."""
    items = []
    for text, source in _group_fetch_items(lines):
        uid_match = _UID.search(text)
        if not uid_match:
            continue
        items.append(FetchedMessage(
            uid=int(uid_match.group(1)),
            flags=_parse_flags(text),
            source=source or None,
        ))
    return items


def parse_quota_response(lines: list) -> QuotaUsage | None:
    """
    Parse a GETQUOTAROOT response.

    Format:
        QUOTAROOT INBOX ""
        QUOTA "" (STORAGE 10 512)

    aioimaplib strips the leading "QUOTA" from untagged lines it routes to
    the command, so both forms are accepted.

    STORAGE figures are in units of 1024 octets (RFC 2087).
    """
    for line in lines:
        match = _QUOTA.match(_to_text(line).strip())
        if not match:
            continue
        parts = match.group(1).split()
        for i in range(0, len(parts) - 2, 3):
            if parts[i].upper() == "STORAGE":
                try:
                    return QuotaUsage(used=int(parts[i + 1]), limit=int(parts[i + 2]), unit=1024)
                except ValueError:
                    return None
    return None


# =============================================================================
# Session
# =============================================================================

class IMAPSession:
    """
    Async IMAP session for Mailsync.

    This class wraps aioimaplib and implements the MailSession contract
    used by the sync core.

    Usage:
        >>> session = IMAPSession(account)
        >>> await session.connect()
        >>> async with session.lock_folder("INBOX") as lock:
        ...     async for item in session.fetch_identifiers_and_flags(f"1:{lock.exists}"):
        ...         print(item.uid, item.flags)
        >>> await session.logout()

    Attributes:
        account: The Account configuration for this connection.
        selected_folder: Path of the currently locked folder, if any.
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: "Account", password: str | None = None) -> None:
        """
        Initialize the IMAP session.

        Args:
            account: Account configuration with IMAP server details.
            password: Explicit password. If None, it is read from the keyring.
        """
        self.account = account
        self.selected_folder: str | None = None
        self._password = password
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._capabilities: set[str] = set()
        # One selected mailbox per session
        self._mailbox_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish connection to the IMAP server and authenticate.

        Raises:
            IMAPConnectionError: If unable to connect to server.
            IMAPAuthenticationError: If login fails.
        """
        host, port = self.account.imap_host, self.account.imap_port
        logger.info(f"Connecting to {host}:{port}")

        try:
            if self.account.imap_security == "ssl":
                # Direct SSL connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(host=host, port=port, timeout=self.TIMEOUT)
            else:
                # Plain connection, will upgrade with STARTTLS (usually port 143)
                self._client = aioimaplib.IMAP4(host=host, port=port, timeout=self.TIMEOUT)

            await self._client.wait_hello_from_server()
            self._capabilities = {c.upper() for c in self._client.protocol.capabilities}
            logger.debug(f"Server capabilities: {sorted(self._capabilities)}")

            if self.account.imap_security == "starttls":
                if not self._client.has_capability("STARTTLS"):
                    raise IMAPConnectionError("Server does not support STARTTLS")
                await self._starttls()

            await self._authenticate()

        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            self._drop()
            raise IMAPConnectionError(f"Connection timed out to {host}:{port}") from e
        except (OSError, aioimaplib.AioImapException) as e:
            self._drop()
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e
        except IMAPError:
            self._drop()
            raise

        logger.info(f"Successfully connected to {host}")

    async def _starttls(self) -> None:
        """
        Upgrade the plain connection to TLS.

        aioimaplib knows the STARTTLS command but has no helper for it, so
        the transport is upgraded here with loop.start_tls().
        """
        logger.debug("Upgrading to TLS via STARTTLS")
        protocol = self._client.protocol

        response = await asyncio.wait_for(protocol.simple_command("STARTTLS"), self.TIMEOUT)
        if response.result != "OK":
            raise IMAPConnectionError(f"STARTTLS rejected: {response.lines}")

        loop = asyncio.get_running_loop()
        protocol.transport = await loop.start_tls(
            protocol.transport,
            protocol,
            ssl.create_default_context(ssl.Purpose.SERVER_AUTH),
            server_hostname=self.account.imap_host,
        )

        # Capabilities advertised before TLS must be discarded (RFC 3501 6.2.1)
        await asyncio.wait_for(protocol.capability(), self.TIMEOUT)
        self._capabilities = {c.upper() for c in protocol.capabilities}

    async def _authenticate(self) -> None:
        """
        Authenticate with the IMAP server.

        Raises:
            IMAPAuthenticationError: If login fails or password not found.
        """
        try:
            password = self._password or keyring.get_password(
                self.account.keyring_service,
                self.account.email,
            )
        except keyring.errors.KeyringError as e:
            raise IMAPAuthenticationError(f"Cannot read password from keyring: {e}") from e

        if not password:
            raise IMAPAuthenticationError(
                f"No password found in keyring for {self.account.email}. "
                f"Set it with: keyring set {self.account.keyring_service} {self.account.email}"
            )

        logger.debug(f"Authenticating as {self.account.username}")
        response = await self._client.login(self.account.username, password)

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.username}: {response.lines}"
            )

        # Capabilities often change after login
        self._capabilities |= {c.upper() for c in self._client.protocol.capabilities}

    async def logout(self) -> None:
        """
        Send LOGOUT and drop the connection.

        Raises:
            IMAPError: If LOGOUT fails. The session is closed either way.
        """
        if self._client is None:
            return
        try:
            logger.debug("Sending LOGOUT")
            await self._client.logout()
        except _TRANSPORT_ERRORS as e:
            raise IMAPError(f"Logout failed: {e}") from e
        finally:
            self._client = None
            self.selected_folder = None

    def _drop(self) -> None:
        """Close the socket without LOGOUT (used when connect fails halfway)."""
        protocol = self._client.protocol if self._client is not None else None
        if protocol is not None and protocol.transport is not None:
            protocol.transport.close()
        self._client = None
        self.selected_folder = None

    def has_capability(self, capability: str) -> bool:
        return capability.upper() in self._capabilities

    def _require_client(self) -> aioimaplib.IMAP4:
        if self._client is None:
            raise IMAPConnectionError("Not connected. Call connect() first.")
        return self._client

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[FolderDescriptor]:
        """
        Fetch the list of selectable folders.

        Raises:
            IMAPError: If the LIST command fails.
        """
        client = self._require_client()
        logger.debug("Listing folders")

        try:
            response = await client.list('""', "*")
        except _TRANSPORT_ERRORS as e:
            raise IMAPError(f"Failed to list folders: {e}") from e
        if response.result != "OK":
            raise IMAPError(f"Failed to list folders: {response.lines}")

        folders = []
        for line in response.lines:
            folder = parse_list_line(line)
            if folder:
                folders.append(folder)

        logger.debug(f"Found {len(folders)} folders")
        return folders

    @asynccontextmanager
    async def lock_folder(self, path: str) -> AsyncIterator[MailboxLock]:
        """
        Select a folder and hold it for the duration of the block.

        Raises:
            FolderLockError: If the folder can't be selected.
        """
        client = self._require_client()

        async with self._mailbox_lock:
            logger.debug(f"Selecting folder: {path}")
            try:
                response = await client.select(_quote_folder_name(path))
            except _TRANSPORT_ERRORS as e:
                raise FolderLockError(path, f"SELECT failed: {e}") from e

            if response.result != "OK":
                reason = " ".join(_to_text(line) for line in response.lines)
                missing = "NONEXISTENT" in reason.upper() or "DOESN'T EXIST" in reason.upper()
                raise FolderLockError(path, reason, missing=missing)

            status = parse_select_response(response.lines)
            self.selected_folder = path
            try:
                yield MailboxLock(
                    path=path,
                    exists=status.get("EXISTS", 0),
                    uidnext=status.get("UIDNEXT"),
                )
            finally:
                self.selected_folder = None

    # =========================================================================
    # Message Fetching
    # =========================================================================

    async def fetch_identifiers_and_flags(self, seq_range: str) -> AsyncIterator[FetchedFlags]:
        """
        Fetch UID and FLAGS for a sequence range (e.g. "1:5000").

        Raises:
            RangeFetchError: If the FETCH command fails.
        """
        client = self._require_client()
        start, _, end = seq_range.partition(":")
        size = int(end) - int(start) + 1 if end.isdigit() and start.isdigit() else 0

        with _recursion_headroom(size):
            try:
                response = await client.fetch(seq_range, "(UID FLAGS)")
            except _TRANSPORT_ERRORS as e:
                raise RangeFetchError(f"FETCH {seq_range} failed: {e}") from e

        if response.result != "OK":
            raise RangeFetchError(f"FETCH {seq_range} failed: {response.lines}")

        for item in parse_flags_response(response.lines):
            yield item

    async def fetch_full_messages(self, uids: list[int]) -> AsyncIterator[FetchedMessage]:
        """
        Fetch full sources plus flags for specific UIDs.

        Uses BODY.PEEK[] so fetching never sets \\Seen on the server.

        Raises:
            ChunkDownloadError: If the UID FETCH command fails.
        """
        if not uids:
            return
        client = self._require_client()
        uid_set = ",".join(str(u) for u in uids)

        try:
            response = await client.uid("fetch", uid_set, "(UID FLAGS BODY.PEEK[])")
        except _TRANSPORT_ERRORS as e:
            raise ChunkDownloadError(f"UID FETCH of {len(uids)} messages failed: {e}") from e

        if response.result != "OK":
            raise ChunkDownloadError(f"UID FETCH failed: {response.lines}")

        for item in parse_message_response(response.lines):
            yield item

    # =========================================================================
    # Quota
    # =========================================================================

    async def query_quota(self, folder: str) -> QuotaUsage | None:
        """
        Query storage quota for the quota root of `folder`.

        Returns:
            QuotaUsage, or None if the server reported no STORAGE resource.

        Raises:
            QuotaError: If the server lacks QUOTA or the command fails.
        """
        client = self._require_client()
        if not self.has_capability("QUOTA"):
            raise QuotaError("Server does not advertise QUOTA")

        try:
            # IMAP4.getquotaroot() always asks for INBOX, so build the command here
            command = aioimaplib.Command(
                "GETQUOTAROOT",
                client.protocol.new_tag(),
                _quote_folder_name(folder),
                untagged_resp_name="QUOTA",
            )
            response = await asyncio.wait_for(client.protocol.execute(command), self.TIMEOUT)
        except _TRANSPORT_ERRORS as e:
            raise QuotaError(f"GETQUOTAROOT failed: {e}") from e

        if response.result != "OK":
            raise QuotaError(f"GETQUOTAROOT failed: {response.lines}")

        return parse_quota_response(response.lines)

    # =========================================================================
    # Mutations (on the locked mailbox)
    # =========================================================================

    async def set_flags(
        self,
        uids: list[int],
        flags: list[str],
        *,
        add: bool = True,
    ) -> None:
        """
        Add or remove flags on messages in the locked folder.

        Args:
            uids: UIDs of messages to modify.
            flags: Flags to add/remove (e.g., ["\\Seen", "\\Flagged"]).
            add: If True, add flags. If False, remove flags.
        """
        client = self._require_client()
        if self.selected_folder is None:
            raise IMAPError("No folder locked")

        uid_set = ",".join(str(u) for u in uids)
        command = f"{'+' if add else '-'}FLAGS ({' '.join(flags)})"

        logger.debug(f"Setting flags on {uid_set}: {command}")
        try:
            response = await client.uid("store", uid_set, command)
        except _TRANSPORT_ERRORS as e:
            raise IMAPError(f"Failed to set flags: {e}") from e
        if response.result != "OK":
            raise IMAPError(f"Failed to set flags: {response.lines}")

    async def delete_messages(self, uids: list[int]) -> None:
        """
        Mark messages in the locked folder as deleted and expunge.

        Processes in batches of 100 to avoid command size limits.
        """
        client = self._require_client()
        if self.selected_folder is None:
            raise IMAPError("No folder locked")

        batch_size = 100
        for i in range(0, len(uids), batch_size):
            await self.set_flags(uids[i:i + batch_size], ["\\Deleted"], add=True)

        logger.debug(f"Expunging {len(uids)} deleted messages in {self.selected_folder}")
        try:
            response = await client.expunge()
        except _TRANSPORT_ERRORS as e:
            raise IMAPError(f"Expunge failed: {e}") from e
        if response.result != "OK":
            raise IMAPError(f"Expunge failed: {response.lines}")
