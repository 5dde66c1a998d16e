# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB",
#   "purpose": "Package initialization for RustDist.CommitDB",
#   "sections": []
# }
# === /NAVMAP ===

"""Local database mapping Rust release artifacts to the commits they were built from.

Two independently sourced stores are mirrored per channel: finished builds from
the CI builder feed (:mod:`.builds`) and published release manifests from the
distribution bucket (:mod:`.dists`).  Abbreviated commit hashes are expanded
through a shared, persisted :class:`CommitResolutionCache`, and
:class:`CommitDB` merges both stores into answers for "which artifacts were
built from commit X" and "which commits are valid on channel Y".
"""

from __future__ import annotations

from .aggregator import CommitDB, UpdateReport
from .builds import BuildProvenanceCache, BuildRecord, BuildStatus
from .commits import CommitResolutionCache, GitCommitResolver, GitHubCommitResolver
from .dists import DistManifestRecord, DistReleaseCache
from .errors import (
    CommitDBError,
    CommitResolutionError,
    ConfigError,
    FetchError,
    RecordParseError,
)
from .settings import Channel, CommitDBSettings, get_settings

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Channel",
    "CommitDB",
    "CommitDBSettings",
    "UpdateReport",
    "BuildProvenanceCache",
    "BuildRecord",
    "BuildStatus",
    "CommitResolutionCache",
    "GitCommitResolver",
    "GitHubCommitResolver",
    "DistManifestRecord",
    "DistReleaseCache",
    "CommitDBError",
    "CommitResolutionError",
    "ConfigError",
    "FetchError",
    "RecordParseError",
    "get_settings",
]
