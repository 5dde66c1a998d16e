# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.network",
#   "purpose": "Shared HTTPX client factory and fetch helpers for the remote feeds",
#   "sections": [
#     {"id": "get-http-client", "name": "get_http_client", "anchor": "function-get-http-client", "kind": "function"},
#     {"id": "configure-http-client", "name": "configure_http_client", "anchor": "function-configure-http-client", "kind": "function"},
#     {"id": "close-http-client", "name": "close_http_client", "anchor": "function-close-http-client", "kind": "function"},
#     {"id": "fetch-bytes", "name": "fetch_bytes", "anchor": "function-fetch-bytes", "kind": "function"},
#     {"id": "fetch-json", "name": "fetch_json", "anchor": "function-fetch-json", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""HTTPX client factory and fetch helpers.

Provides one lazily-created ``httpx.Client`` per process plus two helpers that
turn every transport failure into :class:`~RustDist.CommitDB.errors.FetchError`.

Key design:
- **Lazy initialization**: the client is created on first use, not at import time.
- **Injectable**: :func:`configure_http_client` swaps in a caller-supplied client,
  which is how tests route requests through ``httpx.MockTransport``.
- **No automatic retries**: a failed request fails the calling ``update`` pass;
  the next invocation simply tries again.

Example:
    >>> from RustDist.CommitDB.network import get_http_client, fetch_json
    >>> client = get_http_client()
    >>> info = fetch_json(client, "https://buildbot.rust-lang.org/json/builders/nightly-dist-rustc-linux")
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

import certifi
import httpx

from .errors import FetchError
from .settings import CommitDBSettings, get_settings

__all__ = [
    "get_http_client",
    "configure_http_client",
    "close_http_client",
    "reset_http_client",
    "fetch_bytes",
    "fetch_json",
]

logger = logging.getLogger(__name__)

QueryParams = Union[Mapping[str, Any], Sequence[Tuple[str, Any]], None]

_client: Optional[httpx.Client] = None
_client_lock = threading.Lock()


def get_http_client(settings: Optional[CommitDBSettings] = None) -> httpx.Client:
    """Get or create the shared HTTPX client.

    Args:
        settings: Settings used when the client has to be created; defaults
            to :func:`~RustDist.CommitDB.settings.get_settings`.

    Returns:
        httpx.Client: the process-wide client.
    """

    global _client

    if _client is not None:
        return _client
    with _client_lock:
        if _client is None:
            _client = _create_http_client(settings or get_settings())
            logger.debug("HTTP client initialized")
        return _client


def configure_http_client(client: httpx.Client) -> None:
    """Install ``client`` as the shared client, closing any previous one."""

    global _client

    with _client_lock:
        if _client is not None and _client is not client:
            _client.close()
        _client = client


def close_http_client() -> None:
    """Close the shared client. Safe to call when none was created."""

    global _client

    with _client_lock:
        if _client is not None:
            try:
                _client.close()
                logger.debug("HTTP client closed")
            finally:
                _client = None


def reset_http_client() -> None:
    """Drop the shared client so the next call rebuilds it (test isolation)."""

    close_http_client()


def _create_ssl_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context(cafile=certifi.where())
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def _create_http_client(settings: CommitDBSettings) -> httpx.Client:
    http = settings.http
    return httpx.Client(
        timeout=httpx.Timeout(http.timeout_read, connect=http.timeout_connect),
        headers={"User-Agent": http.user_agent},
        follow_redirects=True,
        trust_env=http.trust_env,
        verify=_create_ssl_context(),
    )


def fetch_bytes(
    client: httpx.Client,
    url: str,
    *,
    params: QueryParams = None,
    headers: Optional[Mapping[str, str]] = None,
) -> bytes:
    """Return the body of ``GET url``.

    Raises:
        FetchError: On connection failures, non-2xx responses, or an empty body.
    """

    try:
        response = client.get(url, params=params, headers=headers)
    except httpx.HTTPError as exc:
        raise FetchError(f"Request to {url} failed: {exc}", url=url) from exc
    if not response.is_success:
        raise FetchError(
            f"Request to {url} returned HTTP {response.status_code}",
            url=url,
            status_code=response.status_code,
        )
    if not response.content:
        raise FetchError(f"Request to {url} returned no data", url=url, status_code=response.status_code)
    return response.content


def fetch_json(
    client: httpx.Client,
    url: str,
    *,
    params: QueryParams = None,
    headers: Optional[Mapping[str, str]] = None,
) -> Any:
    """Return the decoded JSON body of ``GET url``.

    Raises:
        FetchError: On transport failure or when the body is not valid JSON.
    """

    body = fetch_bytes(client, url, params=params, headers=headers)
    try:
        return json.loads(body)
    except ValueError as exc:
        raise FetchError(f"Response from {url} is not valid JSON: {exc}", url=url) from exc
