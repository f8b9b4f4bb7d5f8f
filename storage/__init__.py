"""Reputation card claims — storage package.

SQLite mirror of contract state (templates, claims, roles) with versioned
migrations, and the syncer that keeps it current.
"""

from .state_cache import StateSyncCache
from .template_sync import SyncReport, TemplateSyncer, TemplateSyncResult

__all__ = ["StateSyncCache", "SyncReport", "TemplateSyncResult", "TemplateSyncer"]
