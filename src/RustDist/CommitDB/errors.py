# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.errors",
#   "purpose": "Exception hierarchy shared by the build, dist and commit-resolution caches",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "transport", "name": "Transport Errors", "anchor": "TRN", "kind": "api"},
#     {"id": "records", "name": "Record & Resolution Errors", "anchor": "REC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared across the commit database.

The commit database talks to two remote feeds, parses records from both, and
expands abbreviated commit identifiers through an external resolver.  Each of
those steps fails differently: a transport failure aborts one channel's update,
a malformed record is skipped, and a resolution failure is reported to the
caller of ``lookup``.  Grouping them under :class:`CommitDBError` lets callers
isolate per-channel failures without catching unrelated exceptions.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "CommitDBError",
    "ConfigError",
    "FetchError",
    "RecordParseError",
    "CommitResolutionError",
]


class CommitDBError(RuntimeError):
    """Base exception for commit database failures."""


class ConfigError(CommitDBError):
    """Raised when settings or command line inputs are invalid."""


class FetchError(CommitDBError):
    """Raised when a remote feed is unreachable or returns no usable body."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RecordParseError(CommitDBError):
    """Raised when a single cached or fetched record cannot be parsed."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class CommitResolutionError(CommitDBError):
    """Raised when a commit identifier cannot be expanded to a full hash."""

    def __init__(self, message: str, *, identifier: Optional[str] = None) -> None:
        super().__init__(message)
        self.identifier = identifier
