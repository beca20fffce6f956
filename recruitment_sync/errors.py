"""
Error taxonomy for the synchronization engine.

- ConfigError: malformed criteria, unknown mapping/source types, bad source keys
- ExternalLookupError: study system or confidential data lookups failed
- PersistenceError: recruitment list datastore read/write failed
- OverlapError: a sync run was requested while a recent one is still considered active
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base error with optional structured details."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(SyncError):
    """Recruitment list configuration cannot be interpreted."""


class ExternalLookupError(SyncError):
    """The external study system failed or returned unusable data."""


class PersistenceError(SyncError):
    """The recruitment list datastore failed."""


class NotFoundError(PersistenceError):
    """Requested record does not exist."""


class OverlapError(SyncError):
    """A sync of the same kind started too recently for this list."""

    def __init__(self, message: str, recruitment_list_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.recruitment_list_id = recruitment_list_id
