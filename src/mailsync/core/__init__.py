# =============================================================================
# Mailsync Core Module
# =============================================================================
# This module contains the core domain models for Mailsync. These are pure
# Python dataclasses with no external dependencies, so they can be imported
# anywhere without causing circular dependency issues.
#
# The core models represent the fundamental concepts of a mailbox sync:
#   - Account: An email account (IMAP connection + sync metadata)
#   - FolderDescriptor: A remote mailbox as listed by the server
#   - CanonicalFolder: The local names well-known folders map to
#   - Message: A synchronized email message
#   - Attachment: A file attached to a message
# =============================================================================

from mailsync.core.account import Account
from mailsync.core.folder import CanonicalFolder, FolderDescriptor
from mailsync.core.message import Attachment, Message, MessageFlags

__all__ = [
    "Account",
    "CanonicalFolder",
    "FolderDescriptor",
    "Message",
    "MessageFlags",
    "Attachment",
]
