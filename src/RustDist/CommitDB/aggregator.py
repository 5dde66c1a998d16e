# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.aggregator",
#   "purpose": "Merge build provenance and release manifests into per-commit and per-channel answers",
#   "sections": [
#     {"id": "channelupdate", "name": "ChannelUpdate", "anchor": "class-channelupdate", "kind": "class"},
#     {"id": "updatereport", "name": "UpdateReport", "anchor": "class-updatereport", "kind": "class"},
#     {"id": "commitdb", "name": "CommitDB", "anchor": "class-commitdb", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Aggregated queries over both record stores.

:class:`CommitDB` owns one :class:`~RustDist.CommitDB.builds.BuildProvenanceCache`
and one :class:`~RustDist.CommitDB.dists.DistReleaseCache` per channel, built
lazily, and the :class:`~RustDist.CommitDB.commits.CommitResolutionCache` they
share.  Use it as a context manager so the resolution cache is flushed once
when the command completes::

    with CommitDB.from_settings(get_settings()) as db:
        print(db.lookup("fbfbdd7f1"))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import httpx

from .builds import BuildProvenanceCache
from .commits import CommitResolutionCache, build_resolver, normalize_identifier
from .dists import DistReleaseCache
from .errors import CommitDBError
from .network import get_http_client
from .settings import Channel, CommitDBSettings
from .storage import RefreshOutcome

__all__ = [
    "UPDATE_ORDER",
    "LOOKUP_ORDER",
    "ChannelUpdate",
    "UpdateReport",
    "CommitDB",
]

logger = logging.getLogger(__name__)

UPDATE_ORDER = (Channel.BETA, Channel.STABLE, Channel.NIGHTLY)
LOOKUP_ORDER = (Channel.NIGHTLY, Channel.BETA, Channel.STABLE)


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


@dataclass
class ChannelUpdate:
    """Outcome of updating both stores of one channel."""

    channel: Channel
    builds: Optional[RefreshOutcome] = None
    dists: Optional[RefreshOutcome] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class UpdateReport:
    channels: List[ChannelUpdate] = field(default_factory=list)
    latest_nightly: Optional[str] = None

    @property
    def ok(self) -> bool:
        return all(entry.ok for entry in self.channels)

    @property
    def failed_channels(self) -> List[Channel]:
        return [entry.channel for entry in self.channels if not entry.ok]


class CommitDB:
    """Per-channel caches plus the shared commit resolution cache.

    Args:
        settings: Configuration for every cache.
        commits: Shared resolution cache.
        client: HTTP client handed to the caches; the shared client when omitted.
    """

    def __init__(
        self,
        settings: CommitDBSettings,
        commits: CommitResolutionCache,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings
        self.commits = commits
        self.client = client
        self._builds: Dict[Channel, BuildProvenanceCache] = {}
        self._dists: Dict[Channel, DistReleaseCache] = {}

    @classmethod
    def from_settings(
        cls, settings: CommitDBSettings, client: Optional[httpx.Client] = None
    ) -> "CommitDB":
        """Wire a database with the resolver selected by ``settings``."""

        http_client = client or get_http_client(settings)
        commits = CommitResolutionCache(settings.commits_file, build_resolver(settings, http_client))
        return cls(settings, commits, http_client)

    def __enter__(self) -> "CommitDB":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()

    def flush(self) -> bool:
        """Persist the resolution cache if it changed; return whether it was written."""

        return self.commits.save()

    # --- per-channel caches ---

    def builds(self, channel: Channel) -> BuildProvenanceCache:
        channel = Channel.parse(channel)
        if channel not in self._builds:
            self._builds[channel] = BuildProvenanceCache(channel, self.settings, self.client)
        return self._builds[channel]

    def dists(self, channel: Channel) -> DistReleaseCache:
        channel = Channel.parse(channel)
        if channel not in self._dists:
            self._dists[channel] = DistReleaseCache(channel, self.commits, self.settings, self.client)
        return self._dists[channel]

    # --- operations ---

    def update(
        self, channels: Sequence[Channel] = UPDATE_ORDER, force: bool = False
    ) -> UpdateReport:
        """Refresh both stores of every channel.

        A failure in one store is logged and recorded in the report; the
        remaining stores and channels are still attempted.
        """

        report = UpdateReport()
        for channel in channels:
            channel = Channel.parse(channel)
            entry = ChannelUpdate(channel)
            try:
                entry.builds = self.builds(channel).update(force)
            except (CommitDBError, OSError) as exc:
                entry.errors["builds"] = str(exc)
                logger.error(
                    "Build update failed for %s: %s",
                    channel,
                    exc,
                    extra={"channel": channel.value, "stage": "update"},
                )
            try:
                entry.dists = self.dists(channel).update(force)
            except (CommitDBError, OSError) as exc:
                entry.errors["dists"] = str(exc)
                logger.error(
                    "Dist update failed for %s: %s",
                    channel,
                    exc,
                    extra={"channel": channel.value, "stage": "update"},
                )
            report.channels.append(entry)
            if channel is Channel.NIGHTLY and "builds" not in entry.errors:
                report.latest_nightly = self.builds(channel).latest()
                logger.info("Latest nightly: %s", report.latest_nightly)
        return report

    def lookup(self, commit: str, channels: Sequence[Channel] = LOOKUP_ORDER) -> List[str]:
        """Return every artifact label built from ``commit``, in channel priority order.

        Raises:
            CommitResolutionError: If ``commit`` cannot be resolved.
        """

        commit = normalize_identifier(commit)
        labels: List[str] = []
        for channel in channels:
            labels.extend(self.builds(channel).lookup_by_commit(commit))
            labels.extend(self.dists(channel).lookup_by_commit(commit))
        return _dedupe(labels)

    def list_valid(self, channel: Channel) -> List[str]:
        """Return the distinct commits with a complete artifact on ``channel``."""

        channel = Channel.parse(channel)
        return _dedupe(
            [*self.builds(channel).valid_revisions(), *self.dists(channel).valid_revisions()]
        )

    def latest(self, channel: Channel) -> Optional[str]:
        """Return the newest label for ``channel``, preferring the builder feed."""

        channel = Channel.parse(channel)
        return self.builds(channel).latest() or self.dists(channel).latest()
