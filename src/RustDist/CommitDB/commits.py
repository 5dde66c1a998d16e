# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.commits",
#   "purpose": "Sorted, lazily loaded memo of full commit hashes with external short-hash resolution",
#   "sections": [
#     {"id": "normalize-identifier", "name": "normalize_identifier", "anchor": "function-normalize-identifier", "kind": "function"},
#     {"id": "commitresolver", "name": "CommitResolver", "anchor": "class-commitresolver", "kind": "class"},
#     {"id": "gitcommitresolver", "name": "GitCommitResolver", "anchor": "class-gitcommitresolver", "kind": "class"},
#     {"id": "githubcommitresolver", "name": "GitHubCommitResolver", "anchor": "class-githubcommitresolver", "kind": "class"},
#     {"id": "build-resolver", "name": "build_resolver", "anchor": "function-build-resolver", "kind": "function"},
#     {"id": "commitresolutioncache", "name": "CommitResolutionCache", "anchor": "class-commitresolutioncache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Commit identifier resolution.

Release manifests only carry abbreviated commit hashes while the builder feed
reports full ones.  :class:`CommitResolutionCache` canonicalizes identifiers by
binary-searching a sorted list of every full hash seen so far and only asks an
external :class:`CommitResolver` (a local git checkout or the GitHub commits
API) when the list has no unambiguous match.  The list is loaded on first use
and written back once, by :meth:`CommitResolutionCache.save`, when it changed.
"""

from __future__ import annotations

import logging
import re
import subprocess
from bisect import bisect_left
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Tuple

import httpx

from .errors import CommitResolutionError, FetchError
from .network import fetch_json
from .settings import CommitDBSettings
from .storage import write_lines_atomic

__all__ = [
    "FULL_HASH_LENGTH",
    "normalize_identifier",
    "is_full_hash",
    "CommitResolver",
    "GitCommitResolver",
    "GitHubCommitResolver",
    "build_resolver",
    "CommitResolutionCache",
]

logger = logging.getLogger(__name__)

FULL_HASH_LENGTH = 40
_IDENTIFIER_PATTERN = re.compile(r"^[0-9a-f]{4,40}$")
_FULL_HASH_PATTERN = re.compile(r"^[0-9a-f]{40}$")


def normalize_identifier(identifier: str) -> str:
    """Return ``identifier`` stripped and lower-cased.

    Raises:
        CommitResolutionError: If the result is not 4-40 hexadecimal characters.
    """

    candidate = identifier.strip().lower()
    if not _IDENTIFIER_PATTERN.match(candidate):
        raise CommitResolutionError(
            f"'{identifier}' is not a valid commit identifier", identifier=identifier
        )
    return candidate


def is_full_hash(value: str) -> bool:
    return bool(_FULL_HASH_PATTERN.match(value))


class CommitResolver(Protocol):
    """Expands an abbreviated commit identifier to its full hash."""

    def resolve(self, identifier: str) -> str:
        """Return the full hash for ``identifier`` or raise :class:`CommitResolutionError`."""


class GitCommitResolver:
    """Resolve identifiers with ``git rev-parse`` inside a local checkout."""

    def __init__(self, git_dir: Path, *, git_executable: str = "git") -> None:
        self.git_dir = git_dir
        self.git_executable = git_executable

    def resolve(self, identifier: str) -> str:
        command = [
            self.git_executable,
            "-C",
            str(self.git_dir),
            "rev-parse",
            "--verify",
            "--quiet",
            f"{identifier}^{{commit}}",
        ]
        try:
            completed = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise CommitResolutionError(
                f"Unable to run git to resolve {identifier}: {exc}", identifier=identifier
            ) from exc
        if completed.returncode != 0:
            raise CommitResolutionError(
                f"git could not resolve {identifier} in {self.git_dir}", identifier=identifier
            )
        return completed.stdout.strip()


class GitHubCommitResolver:
    """Resolve identifiers through the GitHub commits API."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_url: str = "https://api.github.com",
        repo: str = "rust-lang/rust",
        token: Optional[str] = None,
    ) -> None:
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.repo = repo
        self.token = token

    def resolve(self, identifier: str) -> str:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        url = f"{self.api_url}/repos/{self.repo}/commits/{identifier}"
        try:
            payload = fetch_json(self.client, url, headers=headers)
        except FetchError as exc:
            raise CommitResolutionError(
                f"GitHub could not resolve {identifier}: {exc}", identifier=identifier
            ) from exc
        sha = payload.get("sha") if isinstance(payload, dict) else None
        if not isinstance(sha, str):
            raise CommitResolutionError(
                f"GitHub response for {identifier} has no commit sha", identifier=identifier
            )
        return sha


def build_resolver(settings: CommitDBSettings, client: httpx.Client) -> CommitResolver:
    """Pick the resolver configured by ``settings``: a git checkout if set, else GitHub."""

    if settings.git_dir is not None:
        return GitCommitResolver(settings.git_dir)
    token = settings.github_token.get_secret_value() if settings.github_token else None
    return GitHubCommitResolver(
        client, api_url=settings.github_api_url, repo=settings.github_repo, token=token
    )


class CommitResolutionCache:
    """Sorted memo of full commit hashes.

    Attributes:
        path: Store holding one full hash per line, or ``None`` for a purely
            in-memory cache.
        resolver: External resolver consulted on cache misses.
        dirty: ``True`` once a hash was added since the last :meth:`save`.

    Examples:
        >>> cache = CommitResolutionCache(None, hashes=["fbfbdd7f1" + "0" * 31])
        >>> cache.resolve("FBFBDD7")
        'fbfbdd7f10000000000000000000000000000000'
    """

    def __init__(
        self,
        path: Optional[Path],
        resolver: Optional[CommitResolver] = None,
        *,
        hashes: Optional[Iterable[str]] = None,
    ) -> None:
        self.path = path
        self.resolver = resolver
        self.dirty = False
        self._hashes: Optional[List[str]] = None
        if hashes is not None:
            self._hashes = []
            for value in hashes:
                self.add(value)
            self.dirty = False

    # --- loading & persistence ---

    def _ensure_loaded(self) -> List[str]:
        if self._hashes is None:
            self._hashes = self._load()
        return self._hashes

    def _load(self) -> List[str]:
        if self.path is None or not self.path.exists():
            return []
        entries = set()
        with self.path.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                value = line.strip().lower()
                if not value:
                    continue
                if not is_full_hash(value):
                    logger.warning(
                        "Ignoring malformed commit hash",
                        extra={"extra_fields": {"path": str(self.path), "line": lineno}},
                    )
                    continue
                entries.add(value)
        logger.debug("Loaded %d known commits from %s", len(entries), self.path)
        return sorted(entries)

    def save(self) -> bool:
        """Write the store if it changed since loading; return whether it was written."""

        if not self.dirty or self.path is None:
            return False
        write_lines_atomic(self.path, self._ensure_loaded())
        self.dirty = False
        logger.debug("Saved %d known commits to %s", len(self._hashes or ()), self.path)
        return True

    def __enter__(self) -> "CommitResolutionCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.save()

    # --- queries ---

    @property
    def hashes(self) -> Tuple[str, ...]:
        return tuple(self._ensure_loaded())

    def __len__(self) -> int:
        return len(self._ensure_loaded())

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, str):
            return False
        hashes = self._ensure_loaded()
        index = bisect_left(hashes, value)
        return index < len(hashes) and hashes[index] == value

    def add(self, full_hash: str) -> bool:
        """Insert ``full_hash`` at its sorted position; return whether it was new."""

        value = full_hash.strip().lower()
        if not is_full_hash(value):
            raise CommitResolutionError(f"'{full_hash}' is not a full commit hash", identifier=full_hash)
        hashes = self._ensure_loaded()
        index = bisect_left(hashes, value)
        if index < len(hashes) and hashes[index] == value:
            return False
        hashes.insert(index, value)
        self.dirty = True
        return True

    def lookup(self, identifier: str) -> Optional[str]:
        """Return the cached full hash for ``identifier`` without consulting the resolver.

        The smallest entry not below ``identifier`` is the only candidate: any
        entry starting with the prefix sorts before every larger entry that
        does not.  When the following entry shares the prefix too, the prefix
        is ambiguous within the cache and ``None`` is returned.
        """

        prefix = normalize_identifier(identifier)
        hashes = self._ensure_loaded()
        index = bisect_left(hashes, prefix)
        if index >= len(hashes) or not hashes[index].startswith(prefix):
            return None
        if index + 1 < len(hashes) and hashes[index + 1].startswith(prefix):
            logger.debug("Commit prefix %s is ambiguous in the local cache", prefix)
            return None
        return hashes[index]

    def resolve(self, identifier: str) -> str:
        """Return the full hash for a possibly abbreviated ``identifier``.

        Raises:
            CommitResolutionError: If the identifier is malformed, no resolver is
                configured for a cache miss, or the resolver fails.
        """

        prefix = normalize_identifier(identifier)
        cached = self.lookup(prefix)
        if cached is not None:
            return cached
        if self.resolver is None:
            raise CommitResolutionError(
                f"Commit {identifier} is unknown and no resolver is configured",
                identifier=identifier,
            )
        logger.debug("Resolving commit %s externally", prefix)
        full_hash = self.resolver.resolve(prefix).strip().lower()
        if not is_full_hash(full_hash) or not full_hash.startswith(prefix):
            raise CommitResolutionError(
                f"Resolver returned '{full_hash}' for {identifier}", identifier=identifier
            )
        self.add(full_hash)
        return full_hash
