# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.dists",
#   "purpose": "Release manifest mirror and per-channel key -> commit index",
#   "sections": [
#     {"id": "distmanifestrecord", "name": "DistManifestRecord", "anchor": "class-distmanifestrecord", "kind": "class"},
#     {"id": "parse-version-description", "name": "parse_version_description", "anchor": "function-parse-version-description", "kind": "function"},
#     {"id": "parse-manifest", "name": "parse_manifest", "anchor": "function-parse-manifest", "kind": "function"},
#     {"id": "parse-listing", "name": "parse_listing", "anchor": "function-parse-listing", "kind": "function"},
#     {"id": "distreleasecache", "name": "DistReleaseCache", "anchor": "class-distreleasecache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Published release manifests.

The distribution bucket publishes one ``channel-rust-<channel>.toml`` manifest
per channel and day under ``dist/YYYY-MM-DD/``.  The manifest's rustc version
line (``1.8.0-nightly (fbfbdd7f1 2016-02-24)``) names the abbreviated commit the
release was built from.  :class:`DistReleaseCache` mirrors those manifests into
a local directory tree shaped like the bucket and indexes them by release key
(the version for stable, ``<channel>-<date>`` otherwise), with every commit
expanded through the shared :class:`~RustDist.CommitDB.commits.CommitResolutionCache`.
"""

from __future__ import annotations

import logging
import re
import tomllib
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import httpx

from .commits import CommitResolutionCache
from .errors import CommitResolutionError, FetchError, RecordParseError
from .network import fetch_bytes, get_http_client
from .settings import Channel, CommitDBSettings, get_settings
from .storage import RefreshOutcome, is_stale, preserve_marker, touch_marker, write_bytes_atomic

__all__ = [
    "DIST_PREFIX",
    "EPOCH_MARKER",
    "DistManifestRecord",
    "ListingPage",
    "parse_version_description",
    "parse_manifest",
    "parse_listing",
    "DistReleaseCache",
]

logger = logging.getLogger(__name__)

DIST_PREFIX = "dist/"
EPOCH_MARKER = "dist/1970-01-01"

_DATED_KEY_PATTERN = re.compile(r"^dist/\d{4}-\d{2}-\d{2}/")
_VERSION_DESCRIPTION_PATTERN = re.compile(
    r"^(?P<version>\S+) \((?P<commit>[0-9a-fA-F]{7,40}) (?P<date>\d{4}-\d{2}-\d{2})\)$"
)


def _manifest_key_pattern(channel: Channel) -> "re.Pattern[str]":
    return re.compile(
        rf"^dist/(?P<date>\d{{4}}-\d{{2}}-\d{{2}})/channel-rust-{re.escape(channel.value)}\.toml$"
    )


@dataclass(frozen=True)
class DistManifestRecord:
    """One published manifest and the commit it was built from."""

    key: str
    object_key: str
    version: str
    short_commit: str
    commit_date: str
    resolved_commit: str


def parse_version_description(line: str) -> Tuple[str, str, str]:
    """Split ``<version> (<short-commit> <date>)`` into its three parts.

    Examples:
        >>> parse_version_description("1.8.0-nightly (fbfbdd7f1 2016-02-24)")
        ('1.8.0-nightly', 'fbfbdd7f1', '2016-02-24')

    Raises:
        RecordParseError: If ``line`` does not have that shape.
    """

    match = _VERSION_DESCRIPTION_PATTERN.match(line.strip())
    if match is None:
        raise RecordParseError(f"Unrecognized version description '{line}'")
    return match.group("version"), match.group("commit").lower(), match.group("date")


def parse_manifest(content: bytes) -> str:
    """Return the rustc version description line of a channel manifest.

    Raises:
        RecordParseError: If the manifest is not TOML or has no ``pkg.rustc.version``.
    """

    try:
        document = tomllib.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise RecordParseError(f"Manifest is not valid TOML: {exc}") from exc
    try:
        version = document["pkg"]["rustc"]["version"]
    except (KeyError, TypeError) as exc:
        raise RecordParseError("Manifest has no pkg.rustc.version") from exc
    if not isinstance(version, str):
        raise RecordParseError("Manifest pkg.rustc.version is not a string")
    return version


@dataclass(frozen=True)
class ListingPage:
    keys: List[str]
    is_truncated: bool
    next_marker: Optional[str] = None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_listing(content: bytes) -> ListingPage:
    """Parse an S3 ``ListBucketResult`` document.

    Raises:
        RecordParseError: If ``content`` is not a listing document.
    """

    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise RecordParseError(f"Bucket listing is not valid XML: {exc}") from exc
    if _local_name(root.tag) != "ListBucketResult":
        raise RecordParseError(f"Unexpected listing root element <{_local_name(root.tag)}>")
    keys: List[str] = []
    is_truncated = False
    next_marker: Optional[str] = None
    for child in root:
        name = _local_name(child.tag)
        if name == "Contents":
            for item in child:
                if _local_name(item.tag) == "Key" and item.text:
                    keys.append(item.text)
        elif name == "IsTruncated":
            is_truncated = (child.text or "").strip().lower() == "true"
        elif name == "NextMarker" and child.text:
            next_marker = child.text
    return ListingPage(keys=keys, is_truncated=is_truncated, next_marker=next_marker)


class DistReleaseCache:
    """Mirror of one channel's published manifests.

    Args:
        channel: Channel whose manifests are mirrored.
        commits: Shared commit resolution cache.
        settings: Settings providing the store location and bucket URL.
        client: HTTP client used by :meth:`update`; defaults to the shared client.
    """

    def __init__(
        self,
        channel: Channel,
        commits: CommitResolutionCache,
        settings: Optional[CommitDBSettings] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.channel = Channel.parse(channel)
        self.commits = commits
        self.settings = settings or get_settings()
        self._client = client
        self.cache_dir = self.settings.dist_cache_dir(self.channel)
        self._key_pattern = _manifest_key_pattern(self.channel)
        self.records: Dict[str, DistManifestRecord] = {}
        self.reload()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = get_http_client(self.settings)
        return self._client

    # --- loading ---

    def manifest_keys(self) -> List[str]:
        """Return the object keys of every manifest mirrored for this channel, sorted."""

        root = self.cache_dir / "dist"
        if not root.is_dir():
            return []
        keys = []
        for path in root.glob(f"*/channel-rust-{self.channel.value}.toml"):
            object_key = path.relative_to(self.cache_dir).as_posix()
            if self._key_pattern.match(object_key):
                keys.append(object_key)
        return sorted(keys)

    def _record_key(self, version: str, date: str) -> str:
        if self.channel is Channel.STABLE:
            return version.split("-", 1)[0]
        return f"{self.channel.value}-{date}"

    def _load_record(self, object_key: str, path: Path) -> DistManifestRecord:
        match = self._key_pattern.match(object_key)
        if match is None:
            raise RecordParseError(f"{object_key} is not a {self.channel} manifest", source=object_key)
        version, short_commit, commit_date = parse_version_description(parse_manifest(path.read_bytes()))
        return DistManifestRecord(
            key=self._record_key(version, match.group("date")),
            object_key=object_key,
            version=version,
            short_commit=short_commit,
            commit_date=commit_date,
            resolved_commit=self.commits.resolve(short_commit),
        )

    def reload(self) -> None:
        """Rebuild the in-memory index from the mirrored manifests."""

        records: Dict[str, DistManifestRecord] = {}
        for object_key in self.manifest_keys():
            try:
                record = self._load_record(object_key, self.cache_dir / object_key)
            except (OSError, RecordParseError, CommitResolutionError) as exc:
                logger.warning(
                    "Dropping manifest %s: %s",
                    object_key,
                    exc,
                    extra={"channel": self.channel.value, "stage": "load"},
                )
                continue
            records[record.key] = record
        self.records = records

    @property
    def revisions(self) -> Dict[str, str]:
        return {key: record.resolved_commit for key, record in self.records.items()}

    # --- remote refresh ---

    def is_stale(self) -> bool:
        return is_stale(self.cache_dir, self.settings.staleness_seconds)

    def iter_remote_keys(self, marker: str) -> Iterator[str]:
        """Yield bucket keys after ``marker`` until the dated ``dist/`` slice ends.

        Raises:
            FetchError: If a listing page cannot be fetched or parsed.
        """

        url = f"{self.settings.dist_url}/"
        while True:
            body = fetch_bytes(self.client, url, params={"prefix": DIST_PREFIX, "marker": marker})
            try:
                page = parse_listing(body)
            except RecordParseError as exc:
                raise FetchError(f"Unusable bucket listing: {exc}", url=url) from exc
            for key in page.keys:
                if not _DATED_KEY_PATTERN.match(key):
                    return
                yield key
            if not page.is_truncated or not page.keys:
                return
            marker = page.next_marker or page.keys[-1]

    def update(self, force: bool = False) -> RefreshOutcome:
        """Download manifests published after the newest mirrored one.

        Raises:
            FetchError: If the listing or a manifest download fails.  Manifests
                mirrored before the failure are indexed and the store is left
                stale so the next pass retries.
        """

        if not force and not self.is_stale():
            return RefreshOutcome(skipped=True)

        existing = self.manifest_keys()
        marker = EPOCH_MARKER if force or not existing else existing[-1]
        logger.info(
            "Listing %s manifests after %s",
            self.channel,
            marker,
            extra={"channel": self.channel.value, "stage": "list"},
        )
        fetched = 0
        with preserve_marker(self.cache_dir):
            try:
                for object_key in self.iter_remote_keys(marker):
                    if not self._key_pattern.match(object_key):
                        continue
                    path = self.cache_dir / object_key
                    if path.exists():
                        continue
                    logger.info(
                        "Retrieving %s", object_key, extra={"channel": self.channel.value, "stage": "fetch"}
                    )
                    body = fetch_bytes(self.client, f"{self.settings.dist_url}/{object_key}")
                    write_bytes_atomic(path, body)
                    fetched += 1
            finally:
                # manifests mirrored before a failure are indexed all the same
                if fetched:
                    self.reload()
        touch_marker(self.cache_dir)
        return RefreshOutcome(fetched=fetched)

    # --- queries ---

    def valid_revisions(self) -> List[str]:
        return [record.resolved_commit for record in self.records.values()]

    def lookup_by_commit(self, commit: str) -> List[str]:
        """Return keys of manifests built from ``commit``.

        Raises:
            CommitResolutionError: If ``commit`` cannot be resolved.
        """

        if not self.records:
            return []
        full_hash = self.commits.resolve(commit)
        return [key for key, record in self.records.items() if record.resolved_commit == full_hash]

    def latest(self) -> Optional[str]:
        return max(self.records) if self.records else None
