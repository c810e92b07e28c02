# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database initialization and migrations
#   - Account and message CRUD, idempotent upserts, batched deletes
#   - Async operations via aiosqlite
#
# The database is stored in the XDG data directory (~/.local/share/mailsync/).
# =============================================================================

from mailsync.storage.database import Database
from mailsync.storage.repository import Repository

__all__ = ["Database", "Repository"]
