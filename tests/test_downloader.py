from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

import pytest
import requests

from gen_studio.downloader import DownloadError, build_video_filename, download_video


class FakeStreamResponse:
    def __init__(self, status_code: int, chunks: list[bytes]) -> None:
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self._chunks = chunks

    def __enter__(self) -> FakeStreamResponse:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def iter_content(self, chunk_size: int) -> list[bytes]:
        return self._chunks


class FakeDownloadSession:
    def __init__(self, status_code: int = 200, chunks: list[bytes] | None = None) -> None:
        self.status_code = status_code
        self.chunks = chunks if chunks is not None else [b"video-", b"", b"bytes"]
        self.urls: list[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeStreamResponse:
        self.urls.append(url)
        assert kwargs["stream"] is True
        return FakeStreamResponse(self.status_code, self.chunks)


def test_filename_contains_number_timestamp_and_mp4_suffix() -> None:
    assert build_video_filename("https://cdn.test/v/clip.mp4?sig=1", "12", 1700000000000) == (
        "12_1700000000000_clip.mp4"
    )
    assert build_video_filename("https://cdn.test/v/clip.webm", "a/b", 5) == "a_b_5_clip.webm.mp4"
    assert build_video_filename("https://cdn.test/", "3", 9) == "3_9_3-9.mp4"


def test_download_writes_bytes_and_returns_public_relative_path(tmp_path: Path) -> None:
    public_root = tmp_path / "public"
    save_dir = public_root / "generated_videos"
    session = FakeDownloadSession()

    result = asyncio.run(
        download_video("https://cdn.test/out/final.mp4", "7", save_dir, public_root, session=session)
    )

    assert re.fullmatch(r"7_\d+_final\.mp4", result.actual_filename)
    assert result.local_path == f"generated_videos/{result.actual_filename}"
    assert (save_dir / result.actual_filename).read_bytes() == b"video-bytes"
    assert session.urls == ["https://cdn.test/out/final.mp4"]


def test_download_failure_surfaces_status_and_leaves_no_file(tmp_path: Path) -> None:
    save_dir = tmp_path / "public" / "videos"

    with pytest.raises(DownloadError, match="下载视频失败: 404"):
        asyncio.run(
            download_video(
                "https://cdn.test/missing.mp4",
                "1",
                save_dir,
                tmp_path / "public",
                session=FakeDownloadSession(status_code=404),
            )
        )

    assert save_dir.is_dir()
    assert list(save_dir.iterdir()) == []


class ClosingDownloadSession(FakeDownloadSession):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def __enter__(self) -> ClosingDownloadSession:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.closed = True


def test_download_without_session_closes_the_one_it_opens(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    opened: list[ClosingDownloadSession] = []

    def make_session() -> ClosingDownloadSession:
        session = ClosingDownloadSession()
        opened.append(session)
        return session

    monkeypatch.setattr(requests, "Session", make_session)

    result = asyncio.run(
        download_video("https://cdn.test/a.mp4", "1", tmp_path / "public" / "v", tmp_path / "public")
    )

    assert result.actual_filename.endswith("_a.mp4")
    assert len(opened) == 1
    assert opened[0].closed is True
