from __future__ import annotations

import csv
import io
import zipfile
from datetime import datetime
from pathlib import Path

from .models import TaskPhase, VideoTask


CSV_COLUMNS = ["number", "prompt", "image_url", "status", "progress", "error", "local_path", "remote_url"]


def _sort_key(task: VideoTask) -> tuple[int, int, str]:
    try:
        return 0, int(task.number), task.number
    except ValueError:
        return 1, 0, task.number


def build_tasks_csv(tasks: list[VideoTask]) -> bytes:
    sio = io.StringIO(newline="")
    writer = csv.writer(sio)
    writer.writerow(CSV_COLUMNS)

    for task in sorted(tasks, key=_sort_key):
        writer.writerow(
            [
                task.number,
                task.prompt,
                task.image_urls[0] if task.image_urls else "",
                task.status,
                task.progress,
                task.error_msg,
                task.local_path,
                task.remote_url,
            ]
        )

    return sio.getvalue().encode("utf-8-sig")


def _finished_file(task: VideoTask, public_root: Path) -> Path | None:
    if task.phase is not TaskPhase.SUCCEEDED or not task.local_path:
        return None
    path = public_root / task.local_path
    return path if path.is_file() else None


def build_download_artifact(tasks: list[VideoTask], public_root: Path) -> tuple[str, str, bytes]:
    ordered = sorted(tasks, key=_sort_key)
    tasks_csv = build_tasks_csv(ordered)

    if not ordered:
        return "text/csv", "tasks.csv", tasks_csv

    if len(ordered) == 1:
        single = ordered[0]
        path = _finished_file(single, public_root)
        if path is not None:
            return "video/mp4", single.actual_filename or path.name, path.read_bytes()
        return "text/csv", "tasks.csv", tasks_csv

    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for task in ordered:
            path = _finished_file(task, public_root)
            if path is None:
                continue
            archive.write(path, arcname=task.actual_filename or path.name)

        archive.writestr("tasks.csv", tasks_csv)

    timestamp = datetime.now().strftime("%m-%d-%H-%M")
    return "application/zip", f"videos-{timestamp}.zip", zip_buffer.getvalue()
