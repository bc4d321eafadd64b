"""HTTP helpers used to discover and verify kernel header packages."""

from __future__ import annotations

import contextlib
import http.client
import logging
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Iterable

from cancellation import BuildContext
from errors import DownloadError, HeadersNotFoundError
from progress import ProgressUpdate

LOG = logging.getLogger("driverkit.resolver")

USER_AGENT = "driverkit"
HEAD_TIMEOUT = 15
GET_TIMEOUT = 60
CHUNK_SIZE = 64 * 1024

NETWORK_ERRORS = (urllib.error.URLError, http.client.HTTPException, OSError, ValueError)


def _request(url: str, method: str = "GET") -> urllib.request.Request:
    return urllib.request.Request(url, method=method, headers={"User-Agent": USER_AGENT})


def url_exists(url: str, *, timeout: float = HEAD_TIMEOUT) -> bool:
    """Return ``True`` if a HEAD request for *url* answers 200."""

    try:
        with contextlib.closing(urllib.request.urlopen(_request(url, "HEAD"), timeout=timeout)) as response:
            status = response.status
    except urllib.error.HTTPError as exc:
        LOG.debug("HEAD %s -> %s", url, exc.code)
        return False
    except NETWORK_ERRORS as exc:
        LOG.debug("HEAD %s failed: %s", url, exc)
        return False
    LOG.debug("HEAD %s -> %s", url, status)
    return status == 200


def resolve_urls(
    candidates: Iterable[str],
    minimum: int = 1,
    *,
    context: BuildContext | None = None,
) -> list[str]:
    """Return the candidates answering 200, preserving their order.

    Raises :class:`HeadersNotFoundError` when nothing resolves or fewer than
    *minimum* URLs do.
    """

    resolved: list[str] = []
    for url in candidates:
        if context is not None:
            context.check()
        if url_exists(url):
            LOG.info("Found kernel headers package %s", url)
            resolved.append(url)
    if not resolved:
        raise HeadersNotFoundError("kernel headers not found")
    if len(resolved) < minimum:
        raise HeadersNotFoundError(
            f"kernel headers not found: expected at least {minimum} packages, found {len(resolved)}"
        )
    return resolved


def fetch_bytes(url: str, *, timeout: float = GET_TIMEOUT) -> bytes:
    """GET *url* and return the body.

    HTTP and network failures raise :class:`HeadersNotFoundError`, so a
    mirror that cannot be listed reads like one that lacks the package.
    """

    LOG.debug("GET %s", url)
    try:
        with contextlib.closing(urllib.request.urlopen(_request(url), timeout=timeout)) as response:
            return response.read()
    except NETWORK_ERRORS as exc:
        LOG.debug("GET %s failed: %s", url, exc)
        raise HeadersNotFoundError(f"unable to fetch {url}: {exc}") from exc


def fetch_text(url: str, *, timeout: float = GET_TIMEOUT) -> str:
    return fetch_bytes(url, timeout=timeout).decode("utf-8", errors="replace")


def download_with_progress(
    url: str,
    destination: Path,
    emit_progress: Callable[[ProgressUpdate], None],
    *,
    context: BuildContext | None = None,
) -> int:
    """Download *url* to *destination* while emitting progress updates.

    HTTP and network failures raise :class:`DownloadError`.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)

    start_time = time.monotonic()
    downloaded = 0
    last_report_time = start_time
    last_percent: int | None = None

    try:
        response = urllib.request.urlopen(_request(url), timeout=GET_TIMEOUT)
    except NETWORK_ERRORS as exc:
        raise DownloadError(f"unable to download {url}: {exc}") from exc

    with contextlib.closing(response):
        total_header = response.getheader("Content-Length")
        try:
            total_bytes = int(total_header) if total_header is not None else None
        except (TypeError, ValueError):
            total_bytes = None
        with destination.open("wb") as file_obj:
            while True:
                if context is not None:
                    context.check()
                try:
                    chunk = response.read(CHUNK_SIZE)
                except NETWORK_ERRORS as exc:
                    raise DownloadError(f"unable to download {url}: {exc}") from exc
                if not chunk:
                    break
                file_obj.write(chunk)
                downloaded += len(chunk)
                now = time.monotonic()
                percent = None
                if total_bytes:
                    percent = (downloaded / total_bytes) * 100
                elapsed = max(now - start_time, 1e-6)
                should_emit = False
                if percent is not None:
                    percent_int = int(percent)
                    if percent_int != last_percent or now - last_report_time >= 1.0:
                        last_percent = percent_int
                        should_emit = percent_int % 10 == 0 or now - last_report_time >= 1.0
                elif now - last_report_time >= 1.0:
                    should_emit = True
                if should_emit:
                    emit_progress(
                        ProgressUpdate(
                            label=f"download {Path(url).name}",
                            percent=percent,
                            size_bytes=downloaded,
                            total_size_bytes=total_bytes,
                            speed_bytes_per_sec=downloaded / elapsed,
                        )
                    )
                    last_report_time = now

    elapsed_total = max(time.monotonic() - start_time, 1e-6)
    emit_progress(
        ProgressUpdate(
            label=f"download {Path(url).name}",
            percent=100.0 if downloaded and total_bytes else None,
            size_bytes=downloaded,
            total_size_bytes=total_bytes,
            speed_bytes_per_sec=downloaded / elapsed_total if downloaded else None,
        )
    )
    return downloaded
