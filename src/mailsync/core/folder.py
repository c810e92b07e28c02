# =============================================================================
# Folder Model
# =============================================================================
# Represents a remote mailbox as reported by the server on every sync run,
# and the small set of canonical local folder names it is mapped to.
#
# IMAP allows arbitrary folder hierarchies and every server picks its own
# delimiter ("." on Dovecot/Courier, "/" on most others), so the same
# logical folder may show up as "INBOX.Archive" or "INBOX/Archive". Locally
# we always store "/"-joined canonical names.
# =============================================================================

from dataclasses import dataclass


class CanonicalFolder:
    """Canonical local names for the well-known folders."""
    INBOX = "Inbox"
    SENT = "Sent"
    TRASH = "Trash"
    SPAM = "Spam"


@dataclass(frozen=True)
class FolderDescriptor:
    """
    A remote folder as listed by the server.

    Descriptors are supplied fresh by the protocol session on every run and
    are never persisted.

    Attributes:
        path: Full server path (e.g., "INBOX.Archive"). Used for SELECT.
        name: Leaf name (e.g., "Archive"). Derived from path if omitted.
        delimiter: Server hierarchy delimiter ("/" or ".").
        special_use: SPECIAL-USE attribute (RFC 6154) such as "\\Sent",
                     or None if the server didn't advertise one.

    Example:
        >>> FolderDescriptor(path="INBOX.Archive", delimiter=".").name
        'Archive'
    """
    path: str
    name: str = ""
    delimiter: str = "/"
    special_use: str | None = None

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("Folder path must not be empty")
        # frozen dataclass: assign derived defaults through object.__setattr__
        if not self.delimiter:
            object.__setattr__(self, "delimiter", "/")
        if not self.name:
            object.__setattr__(self, "name", self.path.split(self.delimiter)[-1])

    @property
    def segments(self) -> list[str]:
        """Path split on the server delimiter."""
        return self.path.split(self.delimiter)

    def __str__(self) -> str:
        return self.path
