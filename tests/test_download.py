"""Tests for streaming model downloads."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from localgrep.cancellation import CancelToken
from localgrep.embeddings.download import download_model_archive
from localgrep.errors import InitializationError, OperationCancelledError

PAYLOAD = b"m" * (3 * 1024 * 1024)


def _client(status: int = 200, body: bytes = PAYLOAD) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_download_writes_target_and_reports_progress(tmp_path: Path) -> None:
    target = tmp_path / "models" / "model.zip"
    progress: list[tuple[int, int]] = []

    result = download_model_archive(
        "https://example.com/model.zip",
        target,
        client=_client(),
        on_progress=lambda received, total: progress.append((received, total)),
    )

    assert result == target
    assert target.read_bytes() == PAYLOAD
    assert not (tmp_path / "models" / "model.zip.part").exists()
    assert progress[-1] == (len(PAYLOAD), len(PAYLOAD))
    assert len(progress) == 3


def test_http_error_removes_partial_file(tmp_path: Path) -> None:
    target = tmp_path / "model.zip"

    with pytest.raises(InitializationError, match="Failed to download"):
        download_model_archive(
            "https://example.com/model.zip", target, client=_client(status=404, body=b"")
        )

    assert not target.exists()
    assert not (tmp_path / "model.zip.part").exists()


def test_cancellation_mid_stream_removes_partial_file(tmp_path: Path) -> None:
    target = tmp_path / "model.zip"
    token = CancelToken()

    def cancel_after_first_chunk(received: int, total: int) -> None:
        token.cancel()

    with pytest.raises(OperationCancelledError):
        download_model_archive(
            "https://example.com/model.zip",
            target,
            client=_client(),
            cancel=token,
            on_progress=cancel_after_first_chunk,
        )

    assert not target.exists()
    assert not (tmp_path / "model.zip.part").exists()


def test_cancel_token_wait_returns_early_once_cancelled() -> None:
    token = CancelToken()
    token.cancel()

    assert token.cancelled
    assert token.wait(5.0) is True
