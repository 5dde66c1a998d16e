# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.builds",
#   "purpose": "Builder-feed records, fixup overlays and the per-channel build provenance cache",
#   "sections": [
#     {"id": "buildstatus", "name": "BuildStatus", "anchor": "class-buildstatus", "kind": "class"},
#     {"id": "buildproperty", "name": "BuildProperty", "anchor": "class-buildproperty", "kind": "class"},
#     {"id": "buildrecord", "name": "BuildRecord", "anchor": "class-buildrecord", "kind": "class"},
#     {"id": "load-fixups", "name": "load_fixups", "anchor": "function-load-fixups", "kind": "function"},
#     {"id": "buildprovenancecache", "name": "BuildProvenanceCache", "anchor": "class-buildprovenancecache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Build provenance from the CI builder feed.

Each channel has a ``<channel>-dist-rustc-linux`` builder whose finished builds
record which commit was built (``got_revision``) and what was published
(``archive_date`` for dated channels, ``package_name`` for stable).  Finished
builds are mirrored verbatim, one JSON file per build id, and never rewritten.
Curated fixups are layered on top in memory at load time by appending
``FIXUP`` properties, so that property lookups, which take the last match,
see the override while the original value stays available for diagnostics.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

import httpx

from .commits import normalize_identifier
from .errors import ConfigError, FetchError, RecordParseError
from .network import fetch_json, get_http_client
from .settings import Channel, CommitDBSettings, get_settings
from .storage import RefreshOutcome, is_stale, preserve_marker, touch_marker, write_json_atomic

__all__ = [
    "BuildStatus",
    "PropertySource",
    "BuildProperty",
    "BuildRecord",
    "Fixups",
    "load_fixups",
    "BuildProvenanceCache",
]

logger = logging.getLogger(__name__)

_BUILD_FILE_PATTERN = re.compile(r"^\d+$")

Fixups = Dict[str, List[Tuple[str, Any]]]


class BuildStatus(str, Enum):
    """Outcome of one builder run."""

    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    EXCEPTION = "exception"

    @classmethod
    def from_text(cls, text: Any) -> "BuildStatus":
        """Derive the status from buildbot's ``text`` field, e.g. ``["build", "successful"]``."""

        if not isinstance(text, (list, tuple)):
            return cls.PENDING
        words = [str(word) for word in text]
        if words == ["build", "successful"]:
            return cls.SUCCESSFUL
        if "failed" in words:
            return cls.FAILED
        if "exception" in words:
            return cls.EXCEPTION
        if "successful" in words:
            # e.g. ["build", "successful", "warnings"]: finished, but not a clean success
            return cls.FAILED
        return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self is not BuildStatus.PENDING


class PropertySource(str, Enum):
    ORIGINAL = "original"
    FIXUP = "FIXUP"


@dataclass(frozen=True)
class BuildProperty:
    """One ``(key, value, source)`` property entry.

    ``origin`` keeps the builder's own source label (``"Git"``, ``"SetProperty Step"``...)
    for entries from the feed.
    """

    key: str
    value: Any
    source: PropertySource = PropertySource.ORIGINAL
    origin: Optional[str] = None


@dataclass
class BuildRecord:
    """A single finished or pending build for one channel.

    Attributes:
        id: Build number assigned by the builder; unique per channel.
        channel: Channel the builder belongs to.
        status: Outcome derived from the build's ``text``.
        properties: Ordered properties; fixups are appended after originals.
        raw: The payload exactly as persisted.
    """

    id: int
    channel: Channel
    status: BuildStatus
    properties: List[BuildProperty] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, build_id: int, channel: Channel, payload: Any) -> "BuildRecord":
        """Build a record from a builder JSON payload.

        Property entries that are not ``[key, value, ...]`` sequences are ignored.

        Raises:
            RecordParseError: If ``payload`` is not a JSON object.
        """

        if not isinstance(payload, dict):
            raise RecordParseError(f"Build {build_id} payload is not an object", source=str(build_id))
        properties: List[BuildProperty] = []
        raw_properties = payload.get("properties")
        if isinstance(raw_properties, list):
            for entry in raw_properties:
                if not isinstance(entry, (list, tuple)) or len(entry) < 2:
                    continue
                origin = str(entry[2]) if len(entry) > 2 and entry[2] is not None else None
                properties.append(BuildProperty(str(entry[0]), entry[1], origin=origin))
        return cls(
            id=build_id,
            channel=channel,
            status=BuildStatus.from_text(payload.get("text")),
            properties=properties,
            raw=payload,
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value of the last property named ``key``."""

        for prop in reversed(self.properties):
            if prop.key == key:
                return prop.value
        return default

    def _text(self, key: str) -> Optional[str]:
        value = self.get(key)
        if value is None or value == "":
            return None
        return str(value)

    @property
    def got_revision(self) -> Optional[str]:
        return self._text("got_revision")

    @property
    def archive_date(self) -> Optional[str]:
        return self._text("archive_date")

    @property
    def package_name(self) -> Optional[str]:
        return self._text("package_name")

    @property
    def is_successful(self) -> bool:
        return self.status is BuildStatus.SUCCESSFUL

    @property
    def is_complete(self) -> bool:
        """Whether the record carries the field its channel publishes under."""

        if self.channel is Channel.STABLE:
            return self.package_name is not None
        return self.archive_date is not None

    def label(self) -> Optional[str]:
        """Return the published artifact label, or ``None`` if incomplete."""

        if self.channel is Channel.STABLE:
            return self.package_name
        if self.archive_date is None:
            return None
        return f"{self.channel.value}-{self.archive_date}"

    def apply_fixups(self, overrides: Sequence[Tuple[str, Any]]) -> None:
        for key, value in overrides:
            self.properties.append(BuildProperty(str(key), value, PropertySource.FIXUP))

    @property
    def fixup_keys(self) -> List[str]:
        return [prop.key for prop in self.properties if prop.source is PropertySource.FIXUP]


def load_fixups(path: Path) -> Fixups:
    """Load the ``commit -> [[key, value], ...]`` overlay for one channel.

    A missing file means no fixups.

    Raises:
        ConfigError: If the file exists but is not a mapping of pair lists.
    """

    if not path.exists():
        logger.debug("No fixups at %s", path)
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise ConfigError(f"Fixups file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Fixups file {path} must contain an object keyed by commit")
    fixups: Fixups = {}
    for commit, pairs in payload.items():
        if not isinstance(pairs, list) or not all(
            isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in pairs
        ):
            raise ConfigError(f"Fixups for {commit} in {path} must be a list of [key, value] pairs")
        fixups[str(commit).lower()] = [(str(key), value) for key, value in pairs]
    return fixups


class BuildProvenanceCache:
    """Mirror of one channel's builder feed.

    Args:
        channel: Channel whose builder is mirrored.
        settings: Settings providing the store location and feed URL.
        client: HTTP client used by :meth:`update`; defaults to the shared client.
        fixups: Overlay to apply; read from the channel's fixups file when omitted.
    """

    def __init__(
        self,
        channel: Channel,
        settings: Optional[CommitDBSettings] = None,
        client: Optional[httpx.Client] = None,
        *,
        fixups: Optional[Mapping[str, Sequence[Tuple[str, Any]]]] = None,
    ) -> None:
        self.channel = Channel.parse(channel)
        self.settings = settings or get_settings()
        self._client = client
        self.cache_dir = self.settings.build_cache_dir(self.channel)
        if fixups is None:
            fixups = load_fixups(self.settings.fixups_file(self.channel))
        self.fixups: Dict[str, Sequence[Tuple[str, Any]]] = {
            commit.lower(): pairs for commit, pairs in fixups.items()
        }
        self.builds: Dict[int, BuildRecord] = self._load()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = get_http_client(self.settings)
        return self._client

    @property
    def builder_url(self) -> str:
        return f"{self.settings.buildbot_url}/json/builders/{self.channel.builder_name}"

    # --- loading ---

    def _load(self) -> Dict[int, BuildRecord]:
        builds: Dict[int, BuildRecord] = {}
        if not self.cache_dir.is_dir():
            return builds
        for entry in self.cache_dir.iterdir():
            if not _BUILD_FILE_PATTERN.match(entry.name):
                continue
            build_id = int(entry.name)
            try:
                payload = json.loads(entry.read_text(encoding="utf-8"))
                record = BuildRecord.from_payload(build_id, self.channel, payload)
            except (OSError, ValueError, RecordParseError) as exc:
                logger.warning(
                    "Skipping unreadable build %s for %s: %s",
                    build_id,
                    self.channel,
                    exc,
                    extra={"channel": self.channel.value, "stage": "load"},
                )
                continue
            builds[build_id] = self._with_fixups(record)
        return dict(sorted(builds.items()))

    def _with_fixups(self, record: BuildRecord) -> BuildRecord:
        commit = record.got_revision
        if commit is not None:
            overrides = self.fixups.get(commit.lower())
            if overrides:
                record.apply_fixups(overrides)
        return record

    # --- remote refresh ---

    def is_stale(self) -> bool:
        return is_stale(self.cache_dir, self.settings.staleness_seconds)

    def remote_build_ids(self) -> Set[int]:
        """Return the build ids the builder currently knows about.

        Raises:
            FetchError: If the builder info cannot be obtained.
        """

        info = fetch_json(self.client, self.builder_url)
        cached = info.get("cachedBuilds") if isinstance(info, dict) else None
        if not isinstance(cached, list):
            raise FetchError("Unable to obtain builder info", url=self.builder_url)
        ids: Set[int] = set()
        for value in cached:
            try:
                ids.add(int(value))
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric build id %r from %s", value, self.channel)
        return ids

    def update(self, force: bool = False) -> RefreshOutcome:
        """Fetch builds the builder knows about but the store does not.

        Skipped unless ``force`` is set or the store is stale.  Only builds in a
        terminal state are persisted; pending builds are fetched again on a
        later pass.

        Raises:
            FetchError: If either builder request fails or returns no data.
            OSError: If a build cannot be written; the store is left stale.
        """

        if not force and not self.is_stale():
            return RefreshOutcome(skipped=True)

        logger.info("Checking for updates on %s", self.channel, extra={"channel": self.channel.value})
        missing = sorted(self.remote_build_ids() - set(self.builds))
        fetched = 0
        if missing:
            logger.info(
                "Retrieving build(s) %s from %s",
                ",".join(str(build_id) for build_id in missing),
                self.channel,
                extra={"channel": self.channel.value, "stage": "fetch"},
            )
            url = f"{self.builder_url}/builds/"
            data = fetch_json(self.client, url, params=[("select", build_id) for build_id in missing])
            if not isinstance(data, dict):
                raise FetchError("Unable to obtain build info", url=url)
            with preserve_marker(self.cache_dir):
                try:
                    for key, payload in data.items():
                        try:
                            record = BuildRecord.from_payload(int(key), self.channel, payload)
                        except (ValueError, RecordParseError) as exc:
                            logger.warning("Skipping malformed build %s from %s: %s", key, self.channel, exc)
                            continue
                        if not record.status.is_terminal:
                            continue
                        write_json_atomic(self.cache_dir / str(record.id), payload)
                        self.builds[record.id] = self._with_fixups(record)
                        fetched += 1
                finally:
                    self.builds = dict(sorted(self.builds.items()))

        touch_marker(self.cache_dir)
        return RefreshOutcome(fetched=fetched)

    # --- queries ---

    def successful(self) -> Iterator[BuildRecord]:
        return (record for record in self.builds.values() if record.is_successful)

    def valid_revisions(self) -> List[str]:
        """Return the commits of successful builds that published an artifact."""

        return [
            record.got_revision
            for record in self.successful()
            if record.is_complete and record.got_revision is not None
        ]

    def lookup_by_commit(self, commit: str, *, prefix: bool = True) -> List[str]:
        """Return labels of successful builds of ``commit``.

        Args:
            commit: Full or abbreviated commit hash.
            prefix: Match builds whose revision starts with ``commit`` rather
                than requiring equality.

        Raises:
            CommitResolutionError: If ``commit`` is not a valid identifier.
        """

        needle = normalize_identifier(commit)
        labels: List[str] = []
        for record in self.successful():
            revision = record.got_revision
            if revision is None:
                continue
            revision = revision.lower()
            matched = revision.startswith(needle) if prefix else revision == needle
            if not matched:
                continue
            label = record.label()
            if label is not None:
                labels.append(label)
        return labels

    def latest(self) -> Optional[str]:
        """Return the label of the newest complete successful build, if any."""

        for build_id in sorted(self.builds, reverse=True):
            record = self.builds[build_id]
            if record.is_successful and record.is_complete:
                return record.label()
        return None

    def describe(self) -> Iterator[Dict[str, Any]]:
        """Yield the extracted properties of every successful build."""

        for record in self.successful():
            yield {
                "id": record.id,
                "channel": record.channel.value,
                "got_revision": record.got_revision,
                "archive_date": record.archive_date,
                "package_name": record.package_name,
                "fixups": record.fixup_keys,
            }
