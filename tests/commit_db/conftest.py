"""Shared fixtures for the commit database test suite.

Every remote collaborator is faked behind one ``httpx.MockTransport``:

* ``buildbot.test`` serves the builder feed (``/json/builders/...``),
* ``dist.test`` serves an S3-style bucket listing and the manifest objects,
* ``api.github.test`` serves the commits API used for short-hash resolution.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

import httpx
import pytest

from RustDist.CommitDB.errors import CommitResolutionError
from RustDist.CommitDB.logging_utils import LOGGER_NAME
from RustDist.CommitDB.network import reset_http_client
from RustDist.CommitDB.settings import Channel, CommitDBSettings, reset_settings_cache

BUILDBOT_URL = "https://buildbot.test"
DIST_URL = "https://dist.test"
GITHUB_URL = "https://api.github.test"


def build_payload(
    properties: Sequence[Tuple[str, Any]],
    text: Sequence[str] = ("build", "successful"),
) -> Dict[str, Any]:
    """Return a builder JSON payload with ``properties`` tagged as feed entries."""

    return {
        "text": list(text),
        "results": 0,
        "properties": [[key, value, "Build"] for key, value in properties],
    }


def manifest_toml(version_line: str) -> bytes:
    return (
        'manifest-version = "2"\n'
        'date = "2016-02-24"\n'
        "\n"
        "[pkg.rustc]\n"
        f'version = "{version_line}"\n'
    ).encode("utf-8")


class FakeRemote:
    """In-memory builder feed, bucket and commits API."""

    def __init__(self) -> None:
        self.cached_builds: Dict[str, List[int]] = {}
        self.builds: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.objects: Dict[str, bytes] = {}
        self.commits: List[str] = []
        self.page_size = 1000
        self.requests: List[httpx.Request] = []
        self.fail_hosts: set[str] = set()
        self.fail_paths: set[str] = set()

    # --- population helpers ---

    def add_build(self, channel: Channel, build_id: int, payload: Dict[str, Any]) -> None:
        builder = channel.builder_name
        self.builds.setdefault(builder, {})[build_id] = payload
        ids = self.cached_builds.setdefault(builder, [])
        if build_id not in ids:
            ids.append(build_id)

    def add_manifest(self, channel: Channel, date: str, version_line: str) -> str:
        key = f"dist/{date}/channel-rust-{channel.value}.toml"
        self.objects[key] = manifest_toml(version_line)
        return key

    # --- request accounting ---

    def paths(self, host: Optional[str] = None) -> List[str]:
        return [
            request.url.path
            for request in self.requests
            if host is None or request.url.host == host
        ]

    # --- routing ---

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.fail_hosts or request.url.path in self.fail_paths:
            return httpx.Response(503)
        if host == "buildbot.test":
            return self._buildbot(request)
        if host == "dist.test":
            return self._bucket(request)
        if host == "api.github.test":
            return self._github(request)
        return httpx.Response(404)

    def _buildbot(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if len(parts) < 3 or parts[:2] != ["json", "builders"]:
            return httpx.Response(404)
        builder = parts[2]
        if len(parts) == 3:
            return httpx.Response(200, json={"cachedBuilds": self.cached_builds.get(builder, [])})
        selected = [int(value) for value in request.url.params.get_list("select")]
        known = self.builds.get(builder, {})
        payload = {str(build_id): known[build_id] for build_id in selected if build_id in known}
        return httpx.Response(200, json=payload)

    def _bucket(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            prefix = request.url.params.get("prefix", "")
            marker = request.url.params.get("marker", "")
            keys = sorted(key for key in self.objects if key.startswith(prefix) and key > marker)
            page = keys[: self.page_size]
            truncated = len(keys) > self.page_size
            contents = "".join(f"<Contents><Key>{escape(key)}</Key></Contents>" for key in page)
            body = (
                '<?xml version="1.0" encoding="UTF-8"?>'
                '<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
                f"<Name>static</Name><Prefix>{escape(prefix)}</Prefix>"
                f"<Marker>{escape(marker)}</Marker>"
                f"<IsTruncated>{'true' if truncated else 'false'}</IsTruncated>"
                f"{contents}</ListBucketResult>"
            )
            return httpx.Response(200, content=body.encode("utf-8"))
        key = request.url.path.lstrip("/")
        if key in self.objects:
            return httpx.Response(200, content=self.objects[key])
        return httpx.Response(404)

    def _github(self, request: httpx.Request) -> httpx.Response:
        short = request.url.path.rsplit("/", 1)[-1]
        matches = [commit for commit in self.commits if commit.startswith(short)]
        if len(matches) != 1:
            return httpx.Response(422, json={"message": "No commit found for SHA"})
        return httpx.Response(200, json={"sha": matches[0]})


class StubResolver:
    """Resolver answering from a fixed list of full hashes, recording every call."""

    def __init__(self, commits: Sequence[str] = ()) -> None:
        self.commits = list(commits)
        self.calls: List[str] = []

    def resolve(self, identifier: str) -> str:
        self.calls.append(identifier)
        matches = [commit for commit in self.commits if commit.startswith(identifier)]
        if len(matches) != 1:
            raise CommitResolutionError(f"cannot resolve {identifier}", identifier=identifier)
        return matches[0]


@pytest.fixture(autouse=True)
def _isolated_globals(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop cached settings, the shared HTTP client and CLI log handlers around every test."""

    for name in ("COMMITDB_DATA_DIR", "COMMITDB_GIT_DIR", "COMMITDB_LOG_LEVEL", "COMMITDB_GITHUB_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    reset_http_client()
    yield
    reset_settings_cache()
    reset_http_client()
    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(package_logger.handlers):
        if getattr(handler, "_commitdb_managed", False):
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.propagate = True


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def settings(data_dir: Path) -> CommitDBSettings:
    return CommitDBSettings(
        data_dir=data_dir,
        buildbot_url=BUILDBOT_URL,
        dist_url=DIST_URL,
        github_api_url=GITHUB_URL,
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def client(remote: FakeRemote) -> Iterator[httpx.Client]:
    http_client = httpx.Client(transport=httpx.MockTransport(remote.handler))
    yield http_client
    http_client.close()


@pytest.fixture
def stub_resolver() -> StubResolver:
    return StubResolver()


def _backdate(store: Path) -> None:
    """Age a hand-written store past any staleness window."""

    os.utime(store, (0, 0))


@pytest.fixture
def write_build(settings: CommitDBSettings):
    """Persist a builder payload straight into a channel's build store."""

    def _write(channel: Channel, build_id: int, payload: Any) -> Path:
        directory = settings.build_cache_dir(channel)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / str(build_id)
        if isinstance(payload, (bytes, str)):
            path.write_bytes(payload if isinstance(payload, bytes) else payload.encode("utf-8"))
        else:
            path.write_text(json.dumps(payload), encoding="utf-8")
        _backdate(directory)
        return path

    return _write


@pytest.fixture
def write_manifest(settings: CommitDBSettings):
    """Persist a channel manifest straight into a channel's dist store."""

    def _write(channel: Channel, date: str, version_line: Optional[str] = None, *, raw: bytes = b"") -> Path:
        path = settings.dist_cache_dir(channel) / "dist" / date / f"channel-rust-{channel.value}.toml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(manifest_toml(version_line) if version_line is not None else raw)
        _backdate(settings.dist_cache_dir(channel))
        return path

    return _write


@pytest.fixture
def write_fixups(settings: CommitDBSettings):
    def _write(channel: Channel, overlay: Dict[str, List[List[Any]]]) -> Path:
        path = settings.fixups_file(channel)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(overlay), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_build():
    return build_payload
