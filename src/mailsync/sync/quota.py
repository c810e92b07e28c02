# =============================================================================
# Quota Inspection
# =============================================================================
# Best-effort storage quota lookup (RFC 2087). Quota is informational only,
# so nothing here is allowed to fail a sync run.
# =============================================================================

import logging
from dataclasses import dataclass

from mailsync.core import Account
from mailsync.imap.session import MailSession, QuotaError
from mailsync.storage.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaReport:
    """Storage usage normalized to kilobytes."""
    used_kb: int
    total_kb: int

    @property
    def percent_used(self) -> float:
        if self.total_kb <= 0:
            return 0.0
        return self.used_kb / self.total_kb * 100


def _to_kb(value: int, unit: int) -> int:
    return round(value * unit / 1024)


async def inspect_quota(
    session: MailSession,
    account: Account,
    repo: Repository,
    folder: str = "INBOX",
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> QuotaReport | None:
    """
    Query storage quota and store it on the account.

    Skips the query when the server doesn't advertise QUOTA. A limit of
    zero is treated as "no data" and not stored.

    Returns:
        The stored QuotaReport, or None if nothing was stored. Never raises.
    """
    log = log or logger

    if not session.has_capability("QUOTA"):
        log.debug("Server does not advertise QUOTA, skipping quota check")
        return None

    try:
        usage = await session.query_quota(folder)
    except QuotaError as e:
        log.warning(f"Quota query failed: {e}")
        return None
    except Exception as e:
        log.warning(f"Quota query failed unexpectedly: {e}")
        return None

    if usage is None:
        log.debug("Server returned no STORAGE quota")
        return None

    report = QuotaReport(
        used_kb=_to_kb(usage.used, usage.unit),
        total_kb=_to_kb(usage.limit, usage.unit),
    )
    if report.total_kb <= 0:
        log.debug("Quota limit is zero, ignoring")
        return None

    try:
        await repo.update_account_quota(account.id, report.used_kb, report.total_kb)
    except Exception as e:
        log.warning(f"Failed to store quota: {e}")
        return None

    account.storage_used_kb = report.used_kb
    account.storage_total_kb = report.total_kb
    log.info(f"Quota: {report.used_kb}KB of {report.total_kb}KB ({report.percent_used:.1f}%)")
    return report
