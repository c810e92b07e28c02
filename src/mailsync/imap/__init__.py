# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - The session contract the sync core depends on (session.py)
#   - Connecting to IMAP servers with SSL/STARTTLS (client.py)
#   - Fetching folder lists, UID/flag metadata and full messages
#   - Quota queries
#   - Managing message flags and deletion
#
# This module uses aioimaplib for async IMAP operations, so a sync run never
# blocks the event loop on the network.
# =============================================================================

from mailsync.imap.client import IMAPSession
from mailsync.imap.providers import PROVIDERS, Provider, get_provider
from mailsync.imap.session import (
    ChunkDownloadError,
    FetchedFlags,
    FetchedMessage,
    FolderLockError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    MailboxLock,
    MailSession,
    QuotaError,
    QuotaUsage,
    RangeFetchError,
)

__all__ = [
    # Session contract
    "MailSession",
    "MailboxLock",
    "FetchedFlags",
    "FetchedMessage",
    "QuotaUsage",
    # Client
    "IMAPSession",
    # Providers
    "PROVIDERS",
    "Provider",
    "get_provider",
    # Errors
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "FolderLockError",
    "RangeFetchError",
    "ChunkDownloadError",
    "QuotaError",
]
