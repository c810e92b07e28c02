# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Mailsync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailsync/  (default: ~/.config/mailsync/)
#   - Data:    $XDG_DATA_HOME/mailsync/    (default: ~/.local/share/mailsync/)
#
# Files:
#   - config.toml: User configuration (accounts, sync tuning, logging)
#   - mailsync.db: SQLite database (in data directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailsync.core import Account
from mailsync.imap.providers import PROVIDERS, get_provider


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailsync"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for Mailsync.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailsync/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for Mailsync.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/mailsync/
    This is where the SQLite database lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """Creates the config and data directories if they don't exist."""
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class LoggingConfig:
    """
    Configuration for log output.

    Attributes:
        level: Minimum level for the console sink.
        file: Optional path of a log file (empty = console only).
    """
    level: str = "INFO"
    file: str = ""


@dataclass
class SyncConfig:
    """
    Configuration for email synchronization.

    Attributes:
        scan_window_size: Sequence numbers per UID/FLAGS fetch window.
        download_chunk_size: UIDs per full-message fetch.
        reconcile_on_partial_scan: Delete orphans even when some scan windows
                                   failed. Off by default, because UIDs from a
                                   failed window look deleted.
        quota_folder: Folder whose quota root is queried.
    """
    scan_window_size: int = 5000
    download_chunk_size: int = 50
    reconcile_on_partial_scan: bool = False
    quota_folder: str = "INBOX"

    def __post_init__(self) -> None:
        if self.scan_window_size <= 0:
            raise ConfigError(f"scan_window_size must be positive, got {self.scan_window_size}")
        if self.download_chunk_size <= 0:
            raise ConfigError(f"download_chunk_size must be positive, got {self.download_chunk_size}")


@dataclass
class Config:
    """
    Main configuration container for Mailsync.

    Attributes:
        default_account: Name of the account used when none is given.
        accounts: Dictionary of configured email accounts, keyed by name.
        logging: Log output configuration.
        sync: Synchronization configuration.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].email)
        'user@example.com'
    """
    # General settings
    default_account: str = ""

    # Account configurations (name -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Subsystem configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite database."""
        return get_xdg_data_home() / "mailsync.db"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            # No config file yet - return defaults
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to the config file.

        Creates the config directory if it doesn't exist.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        This handles the nested structure of the config file and
        converts account entries into Account objects.
        """
        config = cls()

        # General settings
        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        # Logging settings
        log = data.get("logging", {})
        level = str(log.get("level", "INFO")).upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"Invalid logging level {level!r}, expected one of {LOG_LEVELS}")
        config.logging = LoggingConfig(level=level, file=log.get("file", ""))

        # Sync settings
        sync = data.get("sync", {})
        config.sync = SyncConfig(
            scan_window_size=sync.get("scan_window_size", 5000),
            download_chunk_size=sync.get("download_chunk_size", 50),
            reconcile_on_partial_scan=sync.get("reconcile_on_partial_scan", False),
            quota_folder=sync.get("quota_folder", "INBOX"),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            config.accounts[name] = _account_from_dict(name, acct_data)

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {}

        data["general"] = {
            "default_account": self.default_account,
        }

        data["logging"] = {
            "level": self.logging.level,
            "file": self.logging.file,
        }

        data["sync"] = {
            "scan_window_size": self.sync.scan_window_size,
            "download_chunk_size": self.sync.download_chunk_size,
            "reconcile_on_partial_scan": self.sync.reconcile_on_partial_scan,
            "quota_folder": self.sync.quota_folder,
        }

        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "username": account.username,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "enabled": account.enabled,
            }

        return data

    def enabled_accounts(self) -> list[Account]:
        return [a for a in self.accounts.values() if a.enabled]


def _account_from_dict(name: str, acct_data: dict[str, Any]) -> Account:
    """Build an Account from a config entry, applying a provider preset first."""
    host, port, security = "", 993, "ssl"

    provider_name = acct_data.get("provider")
    if provider_name:
        provider = get_provider(provider_name)
        if provider is None:
            raise ConfigError(
                f"Account {name!r}: unknown provider {provider_name!r}, "
                f"expected one of {sorted(PROVIDERS)}"
            )
        host, port, security = provider.host, provider.port, provider.security

    # Explicit values override the preset
    try:
        account = Account(
            name=name,
            email=acct_data.get("email", ""),
            username=acct_data.get("username", ""),
            imap_host=acct_data.get("imap_host", host),
            imap_port=acct_data.get("imap_port", port),
            imap_security=acct_data.get("imap_security", security),
            enabled=acct_data.get("enabled", True),
        )
    except ValueError as e:
        raise ConfigError(f"Account {name!r}: {e}") from e

    if not account.imap_host:
        raise ConfigError(f"Account {name!r}: imap_host or provider is required")
    return account


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
