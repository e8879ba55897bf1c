"""
Shared batching and retry logic for embedding APIs reached over the network.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Callable, Literal

from ..cancellation import CancelToken
from ..config import EmbedderConfig
from ..errors import EmbeddingError, InitializationError
from .base import BaseEmbedder, ProgressCallback

logger = logging.getLogger(__name__)

FailureKind = Literal["auth", "rate_limit", "transient"]

_AUTH_MARKERS = ("401", "403", "invalid_api_key", "unauthorized", "permission_denied")
_RATE_LIMIT_MARKERS = ("429", "rate_limit", "rate limit", "resource_exhausted")


def classify_failure(exc: BaseException) -> FailureKind:
    """Bucket an API error into auth, rate-limit or transient."""
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    if isinstance(status, int):
        if status in (401, 403):
            return "auth"
        if status == 429:
            return "rate_limit"
    message = str(exc).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return "auth"
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return "rate_limit"
    return "transient"


class RemoteEmbedder(BaseEmbedder):
    """
    Base for API-backed embedders.

    ``embed_batch`` splits input into sub-batches of ``config.batch_size`` and
    runs at most ``config.concurrency`` of them at once. Each result is written
    back at its sub-batch offset, so output order matches input order no
    matter which request finishes first.
    """

    def __init__(
        self,
        config: EmbedderConfig,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(config, on_progress=on_progress)
        self._cancel = cancel
        self._sleep = sleep
        self._usage_lock = threading.Lock()
        self._total_tokens = 0

    # -- subclass hooks -------------------------------------------------

    def _connect(self) -> None:
        """Validate credentials and construct the API client."""
        raise NotImplementedError

    def _request(self, texts: list[str], *, query: bool) -> list[list[float]]:
        """Issue a single API call for *texts*."""
        raise NotImplementedError

    def _classify(self, exc: BaseException) -> FailureKind:
        return classify_failure(exc)

    # -- lifecycle ------------------------------------------------------

    def _load(self) -> None:
        self._report("loading", 0.0)
        self._connect()
        try:
            self._call_with_retry(["test"], query=False)
        except EmbeddingError as exc:
            raise InitializationError(
                f"Failed to initialize {self.get_model_info().name}: {exc}"
            ) from exc
        self._report("ready", 100.0)

    def _unload(self) -> None:
        logger.info(
            "%s disposed, total tokens used: %d",
            self.get_model_info().name,
            self._total_tokens,
        )

    # -- embedding ------------------------------------------------------

    def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        size = self.config.batch_size
        batches = [(start, texts[start : start + size]) for start in range(0, len(texts), size)]
        if len(batches) == 1:
            return self._call_with_retry(batches[0][1], query=query)

        logger.debug(
            "Embedding %d texts in %d batches (concurrency=%d)",
            len(texts),
            len(batches),
            self.config.concurrency,
        )
        results: list[list[float] | None] = [None] * len(texts)
        workers = min(self.config.concurrency, len(batches))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed")
        try:
            futures = {
                executor.submit(self._call_with_retry, batch, query=query): start
                for start, batch in batches
            }
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in done:
                error = future.exception()
                if error is not None:
                    raise error
            for future, start in futures.items():
                vectors = future.result()
                results[start : start + len(vectors)] = vectors
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return [vector for vector in results if vector is not None]

    def _call_with_retry(self, texts: list[str], *, query: bool) -> list[list[float]]:
        attempts = self.config.retries
        last_error: BaseException | None = None
        for attempt in range(attempts):
            if self._cancel is not None:
                self._cancel.raise_if_cancelled("embedding batch")
            try:
                vectors = self._request(texts, query=query)
            except Exception as exc:
                last_error = exc
                kind = self._classify(exc)
                if kind == "auth":
                    raise EmbeddingError(f"Authentication failed: {exc}") from exc
                if attempt == attempts - 1:
                    break
                if kind == "rate_limit":
                    delay = self.config.backoff_base * (2**attempt)
                    logger.warning(
                        "Rate limited, waiting %.1fs before retry %d/%d",
                        delay,
                        attempt + 1,
                        attempts,
                    )
                else:
                    delay = self.config.backoff_base * (attempt + 1)
                    logger.warning(
                        "Embedding request failed (%s), waiting %.1fs before retry %d/%d",
                        exc,
                        delay,
                        attempt + 1,
                        attempts,
                    )
                self._sleep(delay)
                continue
            if len(vectors) != len(texts):
                raise EmbeddingError(
                    f"API returned {len(vectors)} vectors for {len(texts)} inputs"
                )
            return vectors
        raise EmbeddingError(
            f"Embedding request failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _record_usage(self, tokens: int | None) -> None:
        if not tokens:
            return
        with self._usage_lock:
            self._total_tokens += tokens

    def usage_stats(self) -> dict[str, Any]:
        with self._usage_lock:
            return {"total_tokens": self._total_tokens}
