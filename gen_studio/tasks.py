from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from .models import ELIGIBLE_PHASES, TaskPhase, VideoTask
from .storage import TASKS_DOC, DocumentStore


STATUS_LABELS: dict[TaskPhase, str] = {
    TaskPhase.WAITING: "等待中",
    TaskPhase.QUEUED: "排队中",
    TaskPhase.SUBMITTING: "生成中",
    TaskPhase.SUBMITTED: "任务已提交，等待处理...",
    TaskPhase.POLLING: "生成中...",
    TaskPhase.DOWNLOADING: "生成完成，开始下载...",
    TaskPhase.SUCCEEDED: "成功",
    TaskPhase.FAILED: "失败",
}

_FIELD_KEYS = {
    "number": "number",
    "prompt": "prompt",
    "image_urls": "imageUrls",
    "aspect_ratio": "aspectRatio",
    "watermark": "watermark",
    "callback_url": "callbackUrl",
    "seeds": "seeds",
    "enable_fallback": "enableFallback",
    "enable_translation": "enableTranslation",
    "phase": "phase",
    "status": "status",
    "progress": "progress",
    "error_msg": "errorMsg",
    "local_path": "localPath",
    "actual_filename": "actualFilename",
    "remote_url": "remoteUrl",
    "provider_task_id": "providerTaskId",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


class DuplicateTaskError(ValueError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def status_label(phase: TaskPhase, attempt: int | None = None) -> str:
    if phase is TaskPhase.POLLING and attempt is not None:
        return f"生成中... (轮询 {attempt})"
    return STATUS_LABELS[phase]


def phase_from_status(status: str) -> TaskPhase:
    text = (status or "").strip()
    for phase, label in STATUS_LABELS.items():
        if text == label:
            return phase
    if text.startswith("生成中..."):
        return TaskPhase.POLLING
    return TaskPhase.WAITING


def task_from_dict(data: dict[str, Any]) -> VideoTask:
    status = str(data.get("status") or "")
    raw_phase = data.get("phase")
    try:
        phase = TaskPhase(raw_phase) if raw_phase else phase_from_status(status)
    except ValueError:
        phase = phase_from_status(status)

    seeds = data.get("seeds")
    try:
        progress = int(data.get("progress") or 0)
    except (TypeError, ValueError):
        progress = 0

    return VideoTask(
        number=str(data.get("number") or ""),
        prompt=str(data.get("prompt") or ""),
        image_urls=[str(url) for url in data.get("imageUrls") or []],
        aspect_ratio=str(data.get("aspectRatio") or ""),
        watermark=str(data.get("watermark") or ""),
        callback_url=str(data.get("callbackUrl") or ""),
        seeds="" if seeds is None else str(seeds),
        enable_fallback=bool(data.get("enableFallback", False)),
        enable_translation=data.get("enableTranslation", True) is not False,
        phase=phase,
        status=status or status_label(phase),
        progress=progress,
        error_msg=str(data.get("errorMsg") or ""),
        local_path=str(data.get("localPath") or ""),
        actual_filename=str(data.get("actualFilename") or ""),
        remote_url=str(data.get("remoteUrl") or ""),
        provider_task_id=str(data.get("providerTaskId") or ""),
        created_at=str(data.get("createdAt") or ""),
        updated_at=str(data.get("updatedAt") or ""),
    )


def task_to_dict(task: VideoTask) -> dict[str, Any]:
    payload = {key: getattr(task, attr) for attr, key in _FIELD_KEYS.items()}
    payload["phase"] = task.phase.value
    payload["imageUrls"] = list(task.image_urls)
    return payload


def to_patch(**fields: Any) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for attr, value in fields.items():
        if isinstance(value, TaskPhase):
            value = value.value
        patch[_FIELD_KEYS[attr]] = value
    return patch


def select_eligible(tasks: Iterable[VideoTask], numbers: Iterable[str] | None = None) -> list[VideoTask]:
    requested = set(numbers or [])
    candidates = [task for task in tasks if task.number in requested] if requested else list(tasks)
    return [task for task in candidates if task.phase in ELIGIBLE_PHASES]


def _next_number(records: list[dict[str, Any]]) -> str:
    highest = 0
    for record in records:
        try:
            highest = max(highest, int(str(record.get("number", "")).strip()))
        except ValueError:
            continue
    return str(highest + 1)


class VideoTaskStore:
    """Video task records inside ``tasks.json``, keyed by ``number``.

    Lookups return the first record with a matching number. New records get
    a unique number, so duplicates only appear in hand-edited files.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _records(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        return data.setdefault("videoTasks", [])

    def list_tasks(self) -> list[VideoTask]:
        data = self.store.read(TASKS_DOC)
        return [task_from_dict(item) for item in data.get("videoTasks", [])]

    def get_task(self, number: str) -> VideoTask | None:
        for task in self.list_tasks():
            if task.number == number:
                return task
        return None

    def add_task(self, task: VideoTask) -> VideoTask:
        return self.add_tasks([task])[0]

    def add_tasks(self, tasks: list[VideoTask]) -> list[VideoTask]:
        def mutate(data: dict[str, Any]) -> list[VideoTask]:
            records = self._records(data)
            existing = {str(item.get("number", "")) for item in records}
            created: list[VideoTask] = []
            for task in tasks:
                number = task.number.strip() or _next_number(records)
                if number in existing:
                    raise DuplicateTaskError(f"任务编号已存在: {number}")
                stamp = now_iso()
                record = task_to_dict(task)
                record.update(
                    number=number,
                    phase=TaskPhase.WAITING.value,
                    status=status_label(TaskPhase.WAITING),
                    progress=0,
                    errorMsg="",
                    createdAt=task.created_at or stamp,
                    updatedAt=stamp,
                )
                records.append(record)
                existing.add(number)
                created.append(task_from_dict(record))
            return created

        return self.store.update(TASKS_DOC, mutate)

    def update_task(self, number: str, patch: dict[str, Any]) -> VideoTask | None:
        def mutate(data: dict[str, Any]) -> VideoTask | None:
            for record in self._records(data):
                if record.get("number") == number:
                    record.update(patch)
                    record["updatedAt"] = now_iso()
                    return task_from_dict(record)
            return None

        return self.store.update(TASKS_DOC, mutate)

    def claim_tasks(self, numbers: Iterable[str] | None = None) -> list[VideoTask]:
        """Select the eligible tasks and mark them queued in one write.

        Only the first record per number is considered, matching ``update_task``.
        """

        def mutate(data: dict[str, Any]) -> list[VideoTask]:
            firsts: dict[str, dict[str, Any]] = {}
            for record in self._records(data):
                firsts.setdefault(str(record.get("number") or ""), record)

            claimed: list[VideoTask] = []
            for task in select_eligible([task_from_dict(record) for record in firsts.values()], numbers):
                record = firsts[task.number]
                record.update(to_patch(phase=TaskPhase.QUEUED, status=status_label(TaskPhase.QUEUED)))
                record["updatedAt"] = now_iso()
                claimed.append(task_from_dict(record))
            return claimed

        return self.store.update(TASKS_DOC, mutate)

    def reset_task(self, number: str) -> VideoTask | None:
        return self.update_task(
            number,
            to_patch(
                phase=TaskPhase.WAITING,
                status=status_label(TaskPhase.WAITING),
                progress=0,
                error_msg="",
            ),
        )

    def remove_task(self, number: str) -> bool:
        def mutate(data: dict[str, Any]) -> bool:
            records = self._records(data)
            for index, record in enumerate(records):
                if record.get("number") == number:
                    del records[index]
                    return True
            return False

        return self.store.update(TASKS_DOC, mutate)

    def clear_tasks(self) -> None:
        self.store.write(TASKS_DOC, {"videoTasks": []})
