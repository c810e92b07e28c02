# =============================================================================
# Canonical Folder Mapping
# =============================================================================
# Every server names its folders differently: "Sent", "Sent Items",
# "INBOX.Gesendet", "[Gmail]/Sent Mail" with a \Sent attribute, and so on.
# Locally every message is stored under a canonical folder name, so the
# mapping has to be a pure function of what the server reports this run.
#
# Resolution order:
#   1. SPECIAL-USE attribute (\Sent, \Trash, \Junk)
#   2. Well-known leaf names, English and German
#   3. INBOX-rooted paths become "Inbox/..."
#   4. Anything else keeps its path, with "/" as the delimiter
#
# Step 2 looks at the leaf only, so "INBOX.Sent" maps to Sent, not
# Inbox/Sent.
# =============================================================================

import logging
import re
from typing import Iterable, Iterator

from mailsync.core import CanonicalFolder, FolderDescriptor

logger = logging.getLogger(__name__)


# Substrings of the SPECIAL-USE attribute, checked in order
_SPECIAL_USE_MAP = (
    ("sent", CanonicalFolder.SENT),
    ("trash", CanonicalFolder.TRASH),
    ("junk", CanonicalFolder.SPAM),
)

# Exact leaf names (lowercased)
_LEAF_NAME_MAP = {
    "sent": CanonicalFolder.SENT,
    "gesendet": CanonicalFolder.SENT,
    "trash": CanonicalFolder.TRASH,
    "papierkorb": CanonicalFolder.TRASH,
    "junk": CanonicalFolder.SPAM,
    "spam": CanonicalFolder.SPAM,
    "inbox": CanonicalFolder.INBOX,
    "posteingang": CanonicalFolder.INBOX,
}


def map_folder(descriptor: FolderDescriptor) -> str:
    """
    Map a remote folder to its canonical local name.

    Args:
        descriptor: The folder as listed by the server.

    Returns:
        "Inbox", "Sent", "Trash", "Spam", or a "/"-joined hierarchical name.
        Never empty.

    Example:
        >>> map_folder(FolderDescriptor(path="INBOX.Archive", delimiter="."))
        'Inbox/Archive'
    """
    if descriptor.special_use:
        special_use = descriptor.special_use.lower()
        for needle, canonical in _SPECIAL_USE_MAP:
            if needle in special_use:
                return canonical

    canonical = _LEAF_NAME_MAP.get(descriptor.name.lower())
    if canonical:
        return canonical

    segments = [s for s in descriptor.segments if s] or [descriptor.path]
    if segments[0].upper() == "INBOX":
        segments[0] = CanonicalFolder.INBOX
    return "/".join(segments)


def build_folder_map(
    descriptors: Iterable[FolderDescriptor],
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> dict[str, str]:
    """
    Map every listed folder, keyed by server path.

    Two server folders can land on the same canonical name (say "Sent"
    with \\Sent and "INBOX/Sent"). Both are kept and synced into the same
    local folder; a warning is logged. See group_folder_map.
    """
    log = log or logger
    mapping: dict[str, str] = {}
    seen: dict[str, str] = {}

    for descriptor in descriptors:
        canonical = map_folder(descriptor)
        if canonical in seen:
            log.warning(
                f"Folders {seen[canonical]!r} and {descriptor.path!r} "
                f"both map to {canonical!r}"
            )
        else:
            seen[canonical] = descriptor.path
        mapping[descriptor.path] = canonical

    return mapping


def group_folder_map(mapping: dict[str, str]) -> dict[str, list[str]]:
    """
    Invert a folder map: canonical name -> server paths, in listing order.

    A canonical folder fed by several server folders has to be reconciled
    against the union of what they all report, so the orchestrator syncs
    each group as one unit.

    Example:
        >>> group_folder_map({"Sent": "Sent", "INBOX/Sent": "Sent", "INBOX": "Inbox"})
        {'Sent': ['Sent', 'INBOX/Sent'], 'Inbox': ['INBOX']}
    """
    groups: dict[str, list[str]] = {}
    for path, canonical in mapping.items():
        groups.setdefault(canonical, []).append(path)
    return groups


def resolve_server_path(
    canonical: str,
    descriptors: Iterable[FolderDescriptor],
) -> str | None:
    """
    Reverse lookup: find the server path that maps to a canonical name.

    Returns:
        The first matching server path. "INBOX" for the Inbox if nothing
        matched, None for anything else.
    """
    for descriptor in descriptors:
        if map_folder(descriptor) == canonical:
            return descriptor.path

    if canonical == CanonicalFolder.INBOX:
        return "INBOX"
    return None


def legacy_leaf_migrations(mapping: dict[str, str]) -> Iterator[tuple[str, str]]:
    """
    Yield (old_name, new_name) pairs for INBOX subfolders.

    Older versions stored INBOX subfolders under their bare leaf name
    ("Archive" instead of "Inbox/Archive"). Records under the old name
    need to move before syncing, or the orphan pass would never see them
    and the downloader would fetch them again.

    A leaf name that is itself a live canonical folder this run (a
    top-level "Archive" next to "INBOX/Archive") holds that folder's own
    records and is left alone.
    """
    live = set(mapping.values())
    prefix = CanonicalFolder.INBOX + "/"
    for path, canonical in mapping.items():
        leaf = re.split(r"[./]", path)[-1]
        if leaf and leaf != canonical and canonical.startswith(prefix) and leaf not in live:
            yield leaf, canonical
