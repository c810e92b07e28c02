# =============================================================================
# Mailsync: IMAP Mailbox Synchronization
# =============================================================================
#
# Mailsync keeps a local SQLite mail store in sync with one or more IMAP
# mailboxes, including very large ones.
#
# Features:
#   - IMAP support with SSL and STARTTLS, passwords in the system keyring
#   - Windowed UID scanning that scales to hundreds of thousands of messages
#   - Incremental download of new messages only
#   - Removal of messages deleted on the server
#   - Canonical local folder names across providers
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailsync"

# Main entry point - this is what gets called by the 'mailsync' command
from mailsync.cli import main

__all__ = ["main", "__version__", "__app_name__"]
