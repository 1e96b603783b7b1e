from __future__ import annotations

import asyncio
import os
import re
import time
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

import requests

from .models import DownloadedVideo


CHUNK_SIZE = 256 * 1024
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]+')


class DownloadError(RuntimeError):
    pass


def _sanitize(name: str, fallback: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name.strip()).rstrip(" .")
    return cleaned or fallback


def build_video_filename(url: str, number: str, timestamp_ms: int) -> str:
    safe_number = _sanitize(number, "task")
    base_name = _sanitize(unquote(PurePosixPath(urlparse(url).path).name), f"{safe_number}-{timestamp_ms}")
    suffix = "" if base_name.lower().endswith(".mp4") else ".mp4"
    return f"{safe_number}_{timestamp_ms}_{base_name}{suffix}"


def public_relative_path(path: Path, public_root: Path) -> str:
    relative = os.path.relpath(path.resolve(), public_root.resolve())
    return Path(relative).as_posix()


async def download_video(
    url: str,
    number: str,
    save_dir: Path,
    public_root: Path,
    *,
    session: requests.Session | None = None,
    timeout_sec: float = 900,
) -> DownloadedVideo:
    if session is None:
        with requests.Session() as own_session:
            return await download_video(
                url, number, save_dir, public_root, session=own_session, timeout_sec=timeout_sec
            )

    save_dir.mkdir(parents=True, exist_ok=True)
    filename = build_video_filename(url, number, int(time.time() * 1000))
    destination = save_dir / filename

    try:
        await asyncio.to_thread(
            _download_once,
            session=session,
            url=url,
            destination=destination,
            timeout_sec=timeout_sec,
        )
    except Exception:
        destination.unlink(missing_ok=True)
        raise

    return DownloadedVideo(
        local_path=public_relative_path(destination, public_root),
        actual_filename=filename,
    )


def _download_once(
    session: requests.Session,
    url: str,
    destination: Path,
    timeout_sec: float,
) -> None:
    with session.get(url, stream=True, timeout=(10, timeout_sec), allow_redirects=True) as response:
        if not response.ok:
            raise DownloadError(f"下载视频失败: {response.status_code}")

        with destination.open("wb") as out_file:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    out_file.write(chunk)
