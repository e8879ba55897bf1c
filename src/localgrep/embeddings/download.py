"""
Cancellable model artifact download.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import httpx

from ..cancellation import CancelToken
from ..errors import InitializationError

logger = logging.getLogger(__name__)

_CHUNK_BYTES = 1024 * 1024

DownloadProgress = Callable[[int, int], None]


def download_model_archive(
    url: str,
    destination: str | Path,
    *,
    cancel: CancelToken | None = None,
    on_progress: DownloadProgress | None = None,
    client: httpx.Client | None = None,
    timeout: float = 60.0,
) -> Path:
    """
    Stream *url* to *destination*.

    Bytes land in ``<destination>.part`` first and are renamed on success.
    The partial file is removed on cancellation or any failure, so an aborted
    download never leaves a half-written artifact behind.
    """
    target = Path(destination).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(target.name + ".part")

    owns_client = client is None
    http = client or httpx.Client(follow_redirects=True, timeout=timeout)
    try:
        with http.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0) or 0)
            received = 0
            with partial.open("wb") as handle:
                for chunk in response.iter_bytes(chunk_size=_CHUNK_BYTES):
                    if cancel is not None:
                        cancel.raise_if_cancelled("model download")
                    handle.write(chunk)
                    received += len(chunk)
                    if on_progress is not None:
                        on_progress(received, total)
        partial.replace(target)
    except httpx.HTTPError as exc:
        partial.unlink(missing_ok=True)
        raise InitializationError(f"Failed to download model from {url}: {exc}") from exc
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            http.close()

    logger.info("Downloaded model artifact to %s", target)
    return target
