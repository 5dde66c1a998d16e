"""Commit resolution cache: sorted memo, prefix hits, external resolution and persistence."""

from __future__ import annotations

import subprocess
from pathlib import Path

import httpx
import pytest

from RustDist.CommitDB.commits import (
    CommitResolutionCache,
    GitCommitResolver,
    GitHubCommitResolver,
    normalize_identifier,
)
from RustDist.CommitDB.errors import CommitResolutionError

FULL_A = "abc123def456" + "0" * 28
FULL_B = "abc1999" + "1" * 33
FULL_C = "0fe1" + "2" * 36
FULL_D = "fbfbdd7f1" + "3" * 31


def test_hashes_stay_sorted_after_every_insertion(stub_resolver) -> None:
    cache = CommitResolutionCache(None, stub_resolver)
    for value in (FULL_D, FULL_A, FULL_C, FULL_B, FULL_A):
        cache.add(value)
        assert list(cache.hashes) == sorted(cache.hashes)
    assert len(cache) == 4


def test_prefix_hit_does_not_consult_resolver(stub_resolver) -> None:
    cache = CommitResolutionCache(None, stub_resolver, hashes=[FULL_A, FULL_C, FULL_D])

    assert cache.resolve("abc123") == FULL_A
    assert cache.resolve("FBFBDD7") == FULL_D
    assert cache.resolve(FULL_C) == FULL_C
    assert stub_resolver.calls == []
    assert cache.dirty is False


def test_miss_resolves_externally_and_inserts_in_order(tmp_path: Path, stub_resolver) -> None:
    stub_resolver.commits = [FULL_B]
    cache = CommitResolutionCache(tmp_path / "commits", stub_resolver, hashes=[FULL_A, FULL_D])

    assert cache.resolve("abc1999") == FULL_B
    assert stub_resolver.calls == ["abc1999"]
    assert list(cache.hashes) == [FULL_A, FULL_B, FULL_D]
    assert cache.dirty is True


def test_resolve_is_idempotent_and_store_does_not_grow(tmp_path: Path, stub_resolver) -> None:
    store = tmp_path / "commits"
    stub_resolver.commits = [FULL_B]

    first = CommitResolutionCache(store, stub_resolver)
    assert first.resolve("abc1999") == FULL_B
    assert first.save() is True
    assert store.read_text().splitlines() == [FULL_B]

    second = CommitResolutionCache(store, stub_resolver)
    assert second.resolve("abc1999") == FULL_B
    assert second.save() is False
    assert store.read_text().splitlines() == [FULL_B]
    assert stub_resolver.calls == ["abc1999"]


def test_save_without_mutation_writes_nothing(tmp_path: Path) -> None:
    store = tmp_path / "commits"
    cache = CommitResolutionCache(store, hashes=[FULL_A])

    cache.resolve("abc1")
    assert cache.save() is False
    assert not store.exists()


def test_context_manager_flushes_once_on_normal_exit(tmp_path: Path, stub_resolver) -> None:
    store = tmp_path / "commits"
    stub_resolver.commits = [FULL_D]
    with CommitResolutionCache(store, stub_resolver) as cache:
        cache.resolve("fbfbdd7")
    assert store.read_text() == f"{FULL_D}\n"


def test_load_sorts_and_skips_malformed_lines(tmp_path: Path) -> None:
    store = tmp_path / "commits"
    store.write_text(f"{FULL_D}\nnot-a-hash\n\n{FULL_A.upper()}\n{FULL_C}\n")

    cache = CommitResolutionCache(store)
    assert list(cache.hashes) == [FULL_C, FULL_A, FULL_D]
    assert FULL_A in cache


def test_ambiguous_prefix_defers_to_resolver(stub_resolver) -> None:
    cache = CommitResolutionCache(None, stub_resolver, hashes=[FULL_A, FULL_B])

    assert cache.lookup("abc12") == FULL_A
    assert cache.lookup("abc1") is None
    with pytest.raises(CommitResolutionError):
        cache.resolve("abc1")
    assert stub_resolver.calls == ["abc1"]


@pytest.mark.parametrize("identifier", ["", "xyz123", "abc", "a" * 41, "abc 123"])
def test_invalid_identifiers_are_rejected(identifier: str, stub_resolver) -> None:
    cache = CommitResolutionCache(None, stub_resolver)
    with pytest.raises(CommitResolutionError):
        cache.resolve(identifier)
    assert stub_resolver.calls == []


def test_normalize_identifier_lowercases_and_strips() -> None:
    assert normalize_identifier("  ABC123\n") == "abc123"


def test_seed_hashes_are_validated_and_normalized() -> None:
    cache = CommitResolutionCache(None, hashes=[FULL_D.upper(), FULL_A, FULL_A])

    assert cache.hashes == (FULL_A, FULL_D)
    assert cache.dirty is False
    with pytest.raises(CommitResolutionError):
        CommitResolutionCache(None, hashes=[FULL_A, "abc"])


def test_miss_without_resolver_is_a_resolution_error() -> None:
    cache = CommitResolutionCache(None, hashes=[FULL_A])
    with pytest.raises(CommitResolutionError):
        cache.resolve("fbfbdd7")


def test_resolver_answer_must_extend_the_prefix() -> None:
    class WrongResolver:
        def resolve(self, identifier: str) -> str:
            return FULL_D

    cache = CommitResolutionCache(None, WrongResolver())
    with pytest.raises(CommitResolutionError):
        cache.resolve("abc123")
    assert len(cache) == 0


def test_github_resolver_reads_sha_and_sends_token(remote, client) -> None:
    remote.commits = [FULL_D]
    resolver = GitHubCommitResolver(client, api_url="https://api.github.test", token="s3cret")

    assert resolver.resolve("fbfbdd7") == FULL_D
    request = remote.requests[-1]
    assert request.url.path == "/repos/rust-lang/rust/commits/fbfbdd7"
    assert request.headers["Authorization"] == "token s3cret"


def test_github_resolver_wraps_http_failures(remote, client) -> None:
    remote.commits = [FULL_A, FULL_B]
    resolver = GitHubCommitResolver(client, api_url="https://api.github.test")

    with pytest.raises(CommitResolutionError):
        resolver.resolve("abc1")


def test_github_resolver_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        resolver = GitHubCommitResolver(client, api_url="https://api.github.test")
        with pytest.raises(CommitResolutionError):
            resolver.resolve("abc123")


def test_git_resolver_uses_rev_parse(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen = {}

    def fake_run(command, **kwargs):
        seen["command"] = command
        return subprocess.CompletedProcess(command, 0, stdout=f"{FULL_D}\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    resolver = GitCommitResolver(tmp_path)

    assert resolver.resolve("fbfbdd7") == FULL_D
    assert seen["command"][-1] == "fbfbdd7^{commit}"
    assert seen["command"][1:3] == ["-C", str(tmp_path)]


def test_git_resolver_failure_is_a_resolution_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda command, **kwargs: subprocess.CompletedProcess(command, 1, stdout="", stderr=""),
    )
    with pytest.raises(CommitResolutionError):
        GitCommitResolver(tmp_path).resolve("fbfbdd7")
