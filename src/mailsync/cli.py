# =============================================================================
# Mailsync Command Line
# =============================================================================
# The `mailsync` command:
#
#   mailsync sync [--account NAME]   Sync one or all enabled accounts
#   mailsync test [--account NAME]   Check that accounts can connect
#   mailsync paths                   Print config/data locations
#
# Accounts are synced one after another, each with its own session. Result
# lines go to stdout; log output goes to stderr (and optionally a file).
# =============================================================================

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from mailsync import __app_name__, __version__
from mailsync.config import Config, ConfigError, print_paths
from mailsync.core import Account
from mailsync.imap.client import IMAPSession
from mailsync.storage import Database, Repository
from mailsync.sync.actions import check_connection
from mailsync.sync.manager import SyncManager, SyncResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """
    Configure the root logger with a console handler and an optional file.

    Library modules only create loggers; handlers are attached here.
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # aioimaplib logs every command at DEBUG, including LOGIN
    logging.getLogger("aioimaplib").setLevel(max(logging.INFO, root.level))


def select_accounts(config: Config, name: str | None = None) -> list[Account]:
    """
    Pick the accounts a command should act on.

    Raises:
        ConfigError: If the named account doesn't exist or none are enabled.
    """
    if name:
        account = config.accounts.get(name)
        if account is None:
            raise ConfigError(f"Unknown account {name!r}")
        return [account]

    accounts = config.enabled_accounts()
    if not accounts:
        raise ConfigError(f"No enabled accounts in {Config.config_file_path()}")
    return accounts


# =============================================================================
# Commands
# =============================================================================

async def sync_accounts(
    config: Config,
    accounts: list[Account],
    db_path: Path | None = None,
) -> list[tuple[Account, SyncResult]]:
    """Sync each account in turn against one shared database."""
    results = []

    async with Database(db_path) as db:
        repo = Repository(db)

        for account in accounts:
            # Keep the stored connection details in step with the config
            stored = await repo.get_account_by_name(account.name)
            if stored:
                account.id = stored.id
            await repo.save_account(account)

            manager = SyncManager(IMAPSession(account), repo, account, config=config.sync)
            results.append((account, await manager.sync_account()))

    return results


async def check_accounts(accounts: list[Account]) -> list[tuple[Account, bool, str | None]]:
    results = []
    for account in accounts:
        outcome = await check_connection(IMAPSession(account))
        results.append((account, outcome.success, outcome.error))
    return results


def format_result(account: Account, result: SyncResult) -> str:
    """One summary line per account."""
    if not result.success:
        return f"{account.name}: FAILED ({result.error})"

    line = (
        f"{account.name}: {result.new_messages} new, "
        f"{result.deleted_messages} removed, {result.unread_count} unread "
        f"({result.duration_seconds:.1f}s)"
    )
    problems = []
    if result.placeholders:
        problems.append(f"{result.placeholders} unreadable")
    if result.skipped_folders:
        problems.append(f"{result.skipped_folders} folders skipped")
    if result.failed_windows or result.failed_chunks:
        problems.append(f"{result.failed_windows + result.failed_chunks} fetches failed")
    if problems:
        line += " [" + ", ".join(problems) + "]"
    return line


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Mailsync: keep a local mail store in sync with IMAP mailboxes",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync accounts")
    sync_parser.add_argument("--account", help="Only sync this account")

    test_parser = subparsers.add_parser("test", help="Check account connections")
    test_parser.add_argument("--account", help="Only test this account")

    subparsers.add_parser("paths", help="Print configuration paths and exit")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Mailsync.

    Returns:
        Exit code (0 for success, 1 if any account failed or the
        configuration is invalid).
    """
    args = parse_args(argv)

    if args.command == "paths":
        print_paths()
        return 0

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging("DEBUG" if args.debug else config.logging.level, config.logging.file)

    try:
        accounts = select_accounts(config, args.account)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.command == "test":
        failed = False
        for account, ok, error in asyncio.run(check_accounts(accounts)):
            print(f"{account.name}: OK" if ok else f"{account.name}: FAILED ({error})")
            failed = failed or not ok
        return 1 if failed else 0

    results = asyncio.run(sync_accounts(config, accounts))
    for account, result in results:
        print(format_result(account, result))
    return 0 if all(result.success for _, result in results) else 1


if __name__ == "__main__":
    sys.exit(main())
