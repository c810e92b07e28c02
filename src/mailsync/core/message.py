# =============================================================================
# Message Model
# =============================================================================
# Represents a synchronized email message. A record combines:
#   - Identity: IMAP UID + canonical folder + account
#   - Envelope information (sender, subject, date)
#   - Body in plain text and (optionally) HTML
#   - Attachments
#   - Flags (read, flagged) mirrored from the server
#   - A classification slot filled in by a downstream categorizer
#
# The same UID may legitimately exist in two folders of the same account
# (UIDs are only unique per mailbox), which is why identity always includes
# the folder.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntFlag
from typing import Iterable


class MessageFlags(IntFlag):
    """
    Email message flags, stored as a bitmask for efficient storage.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft (not yet sent)

    Usage:
        msg.flags = MessageFlags.SEEN | MessageFlags.FLAGGED
        if msg.flags & MessageFlags.SEEN:
            ...
    """
    NONE = 0            # No flags set
    SEEN = 1 << 0       # Message has been read (\\Seen)
    ANSWERED = 1 << 1   # Message has been replied to (\\Answered)
    FLAGGED = 1 << 2    # User-flagged / starred (\\Flagged)
    DELETED = 1 << 3    # Marked for deletion (\\Deleted)
    DRAFT = 1 << 4      # Is a draft (\\Draft)

    @classmethod
    def from_imap(cls, flags: Iterable[str]) -> "MessageFlags":
        """
        Convert IMAP system flags (e.g. ["\\Seen", "\\Flagged"]) to a bitmask.

        Unknown and custom keywords ($Forwarded, $Junk, ...) are ignored.
        """
        result = cls.NONE
        for flag in flags:
            upper = flag.upper()
            if upper == "\\SEEN":
                result |= cls.SEEN
            elif upper == "\\ANSWERED":
                result |= cls.ANSWERED
            elif upper == "\\FLAGGED":
                result |= cls.FLAGGED
            elif upper == "\\DELETED":
                result |= cls.DELETED
            elif upper == "\\DRAFT":
                result |= cls.DRAFT
        return result


@dataclass
class Attachment:
    """
    Represents a file attached to an email message.

    Attachments are owned by their message and are deleted together with it.

    Attributes:
        filename: Original filename of the attachment.
        content_type: MIME type (e.g., "application/pdf", "image/png").
        size: Size in bytes.
        data: The raw attachment bytes.
        id: Database primary key.
        message_id: Foreign key to the parent message row.
    """
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    data: bytes | None = None

    # Database fields
    id: int | None = None
    message_id: int | None = None

    def __post_init__(self) -> None:
        if not self.filename:
            self.filename = "attachment"
        if not self.size and self.data:
            self.size = len(self.data)


@dataclass
class Message:
    """
    Represents a synchronized email message.

    Attributes:
        account_id: The Account this message belongs to.
        folder: Canonical folder name (e.g., "Inbox", "Inbox/Archive").
        uid: IMAP UID, unique within the remote folder.

        sender: The "From" address.
        sender_name: Display name of the sender (e.g., "John Doe").
        subject: Email subject line.
        body_text: Plain text version of the body.
        body_html: HTML version of the body, if the message has one.
        date: When the message was sent (from the Date header), in UTC.

        flags: Message flags mirrored from the server.
        classification: Category assigned after sync by an external
                        classifier. Placeholder records use "System Error".
        attachments: File attachments.

        id: Database primary key.

    Example:
        >>> message = Message(
        ...     account_id=1,
        ...     folder="Inbox",
        ...     uid=12345,
        ...     subject="Hello World",
        ...     sender="alice@example.com",
        ... )
        >>> message.key
        '12345-Inbox-1'
    """

    # Identity
    account_id: int
    folder: str
    uid: int

    # Envelope information
    sender: str = ""
    sender_name: str = ""
    subject: str = ""

    # Body
    body_text: str = ""
    body_html: str | None = None

    date: datetime | None = None

    # Flags and classification
    flags: MessageFlags = MessageFlags.NONE
    classification: str | None = None

    attachments: list[Attachment] = field(default_factory=list)

    # Database field
    id: int | None = None

    def __post_init__(self) -> None:
        if self.uid <= 0:
            raise ValueError(f"Message UID must be positive, got {self.uid}")
        if not self.folder:
            raise ValueError("Message folder must not be empty")

    @property
    def key(self) -> str:
        """Stable identity string: UID, folder and account combined."""
        return f"{self.uid}-{self.folder}-{self.account_id}"

    @property
    def is_read(self) -> bool:
        """Returns True if the message has been read (SEEN flag)."""
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_flagged(self) -> bool:
        """Returns True if the message is starred/flagged."""
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    @property
    def display_sender(self) -> str:
        """Prefers sender_name if available, falls back to the address."""
        return self.sender_name or self.sender

    def __str__(self) -> str:
        read_marker = " " if self.is_read else "*"
        flag_marker = "!" if self.is_flagged else " "
        return f"{read_marker}{flag_marker} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(key={self.key!r}, subject={self.subject!r}, "
            f"from={self.sender!r}, flags={self.flags!r})"
        )
