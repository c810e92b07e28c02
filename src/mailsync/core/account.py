# =============================================================================
# Account Model
# =============================================================================
# Represents an email account that can be synchronized. This includes the
# IMAP connection details plus the sync metadata the orchestrator updates
# after every run (last-known Inbox UID, last sync time, storage quota).
#
# IMPORTANT: Passwords are NOT stored here. They are retrieved from the system
# keyring at runtime using the 'keyring' library. This keeps credentials secure
# and out of config files and the database.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime


VALID_SECURITY = ("ssl", "starttls")


@dataclass
class Account:
    """
    Represents an email account with IMAP configuration and sync state.

    Attributes:
        name: A unique identifier for this account (e.g., "personal", "work").
              Used as the key in config files and for keyring lookups.
        email: The email address associated with this account.
        username: Login name for the IMAP server. Defaults to the email
                  address when not specified (most providers use it).

        imap_host: Hostname of the IMAP server (e.g., "imap.gmx.net").
        imap_port: Port for IMAP connection. Standard ports:
                   - 993 for IMAP with SSL/TLS (recommended)
                   - 143 for IMAP with STARTTLS
        imap_security: Connection security method ("ssl" or "starttls").

        last_sync_uid: Highest UID seen in the Inbox after the last sync.
        last_sync_time: When the last sync run finished.
        storage_used_kb: Server-reported storage usage in kilobytes.
        storage_total_kb: Server-reported storage limit in kilobytes.

        id: Database primary key. None until the account is saved to storage.
        enabled: Whether this account is active. Disabled accounts won't sync.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ... )
    """

    # Account identification
    name: str                           # Unique account identifier
    email: str                          # Email address
    username: str = ""                  # Login name (defaults to email)

    # IMAP configuration
    imap_host: str = ""
    imap_port: int = 993                # Default to SSL port
    imap_security: str = "ssl"          # "ssl" or "starttls"

    # Sync metadata (written by the sync orchestrator only)
    last_sync_uid: int = 0
    last_sync_time: datetime | None = None
    storage_used_kb: int = 0
    storage_total_kb: int = 0

    # Database fields
    id: int | None = None               # Primary key (None until saved)
    enabled: bool = True                # Whether account is active

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Account name must not be empty")
        if self.imap_security not in VALID_SECURITY:
            raise ValueError(
                f"Invalid imap_security {self.imap_security!r}, "
                f"expected one of {VALID_SECURITY}"
            )
        if not self.username:
            self.username = self.email

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        We use a consistent naming scheme so passwords can be easily
        managed via the keyring CLI if needed:
            keyring set mailsync:personal user@example.com
        """
        return f"mailsync:{self.name}"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(name={self.name!r}, email={self.email!r}, "
            f"imap={self.imap_host}:{self.imap_port})"
        )
