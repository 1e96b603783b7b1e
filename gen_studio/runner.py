from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import requests

from .config import resolve_directory, settings_from_dict
from .credentials import resolve_video_api_key
from .downloader import download_video
from .http_client import HttpClient
from .kie_client import KieVideoClient, build_generate_payload, extract_result_urls, extract_task_id
from .models import AppSettings, BatchResult, Config, DownloadedVideo, ResolvedCredential, TaskPhase, VideoTask
from .storage import CONFIG_DOC, KEYS_DOC, DocumentStore
from .tasks import VideoTaskStore, select_eligible, status_label, to_patch


logger = logging.getLogger(__name__)

NO_TASKS_MESSAGE = "没有需要生成的视频任务"

SUBMITTING_PROGRESS = 5
SUBMITTED_PROGRESS = 15
POLLING_PROGRESS_CEILING = 90
POLLING_PROGRESS_STEP = 2
DOWNLOADING_PROGRESS = 95


class VideoApi(Protocol):
    async def submit(self, payload: dict[str, Any]) -> Any: ...

    async def query(self, task_id: str) -> Any: ...


LogCallback = Callable[[str], None]
ClientFactory = Callable[[str], VideoApi]
DownloadFn = Callable[[str, str, Path], Awaitable[DownloadedVideo]]


class ProviderResponseError(RuntimeError):
    pass


class ProviderTaskFailed(RuntimeError):
    pass


class PollTimeoutError(RuntimeError):
    pass


@dataclass
class BatchPlan:
    targets: list[VideoTask]
    credential: ResolvedCredential
    settings: AppSettings
    save_dir: Path


def resolve_save_dir(settings: AppSettings, config: Config) -> Path:
    return resolve_directory(settings.video.save_path, config, config.public_dir / "generated_videos")


def prepare_batch(store: DocumentStore, numbers: list[str] | None, config: Config) -> BatchPlan | None:
    """Claim the eligible tasks and resolve the credential; ``None`` when there is nothing to do.

    Raises ``MissingCredentialError`` before any task is touched. Claimed
    tasks move to ``queued`` so an overlapping batch cannot pick them again.
    """
    task_store = VideoTaskStore(store)
    if not select_eligible(task_store.list_tasks(), numbers):
        return None

    settings = settings_from_dict(store.read(CONFIG_DOC))
    keys = store.read(KEYS_DOC).get("keys", [])
    credential = resolve_video_api_key(settings.video, keys, config.env_api_key)

    targets = task_store.claim_tasks(numbers)
    if not targets:
        return None
    return BatchPlan(
        targets=targets,
        credential=credential,
        settings=settings,
        save_dir=resolve_save_dir(settings, config),
    )


async def generate_videos(
    store: DocumentStore,
    numbers: list[str] | None = None,
    *,
    config: Config,
    client_factory: ClientFactory | None = None,
    download_fn: DownloadFn | None = None,
    log_cb: LogCallback | None = None,
) -> BatchResult:
    plan = prepare_batch(store, numbers, config)
    if plan is None:
        return BatchResult(success=False, message=NO_TASKS_MESSAGE)
    return await run_batch(
        plan,
        store,
        config=config,
        client_factory=client_factory,
        download_fn=download_fn,
        log_cb=log_cb,
    )


async def run_batch(
    plan: BatchPlan,
    store: DocumentStore,
    *,
    config: Config,
    client_factory: ClientFactory | None = None,
    download_fn: DownloadFn | None = None,
    log_cb: LogCallback | None = None,
) -> BatchResult:
    task_store = VideoTaskStore(store)
    worker_count = max(1, min(plan.settings.thread_count, len(plan.targets)))
    _log(
        log_cb,
        f"批次开始，共 {len(plan.targets)} 个视频任务，并发 {worker_count}，密钥来源: {plan.credential.source}",
    )

    with requests.Session() as session:
        if client_factory is None:
            http = HttpClient(
                session=session,
                timeout_sec=config.request_timeout_sec,
                retries=config.request_retries,
            )
            client: VideoApi = KieVideoClient(
                plan.credential.api_key, http, config.generate_url, config.record_url
            )
        else:
            client = client_factory(plan.credential.api_key)

        download = download_fn or functools.partial(
            download_video,
            public_root=config.public_dir,
            session=session,
            timeout_sec=config.request_timeout_sec,
        )

        pending: asyncio.Queue[VideoTask] = asyncio.Queue()
        for task in plan.targets:
            pending.put_nowait(task)

        async def worker() -> None:
            while True:
                try:
                    task = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await process_video_task(
                    task,
                    task_store=task_store,
                    client=client,
                    download=download,
                    save_dir=plan.save_dir,
                    config=config,
                    log_cb=log_cb,
                )

        await asyncio.gather(*(worker() for _ in range(worker_count)))

    _log(log_cb, "批次处理完成")
    return BatchResult(success=True, total=len(plan.targets))


async def process_video_task(
    task: VideoTask,
    *,
    task_store: VideoTaskStore,
    client: VideoApi,
    download: DownloadFn,
    save_dir: Path,
    config: Config,
    log_cb: LogCallback | None = None,
) -> VideoTask | None:
    number = task.number
    progress = 0

    async def persist(phase: TaskPhase, attempt: int | None = None, **fields: Any) -> VideoTask | None:
        nonlocal progress
        if "progress" in fields:
            progress = max(progress, fields["progress"])
            fields["progress"] = progress
        patch = to_patch(phase=phase, status=status_label(phase, attempt), **fields)
        return await asyncio.to_thread(task_store.update_task, number, patch)

    try:
        await persist(TaskPhase.SUBMITTING, progress=SUBMITTING_PROGRESS, error_msg="")
        payload = build_generate_payload(task)
        logger.info("[视频任务 %s] 开始生成，提示词: %s...", number, task.prompt[:50])
        logger.info("[视频任务 %s] 图片URL: %s", number, task.image_urls[0] if task.image_urls else "无")
        _log(log_cb, f"[{number}] 提交生成请求")

        response = await client.submit(payload)
        logger.info("[视频任务 %s] API 响应: %s", number, _preview(response, 200))

        provider_task_id = extract_task_id(response)
        if not provider_task_id:
            raise ProviderResponseError(f"生成接口未返回 taskId。响应结构: {_preview(response, 500)}")

        await persist(TaskPhase.SUBMITTED, progress=SUBMITTED_PROGRESS, provider_task_id=provider_task_id)
        _log(log_cb, f"[{number}] 已提交，taskId={provider_task_id}")

        result_url = ""
        for attempt in range(1, config.max_poll_attempts + 1):
            await asyncio.sleep(config.poll_interval_sec)
            poll = await client.query(provider_task_id)

            if not isinstance(poll, dict) or str(poll.get("code")) != "200":
                await persist(TaskPhase.POLLING, attempt)
                continue

            data = poll.get("data") if isinstance(poll.get("data"), dict) else {}
            flag = data.get("successFlag")
            if flag == 1:
                result_urls = extract_result_urls(data)
                if not result_urls:
                    raise ProviderResponseError("查询接口未返回视频链接")
                result_url = result_urls[0]
                break
            if data.get("errorMessage"):
                raise ProviderTaskFailed(str(data["errorMessage"]))
            if flag in (2, 3):
                raise ProviderTaskFailed(f"视频生成失败 (successFlag={flag})")

            await persist(
                TaskPhase.POLLING,
                attempt,
                progress=min(POLLING_PROGRESS_CEILING, SUBMITTED_PROGRESS + attempt * POLLING_PROGRESS_STEP),
            )

        if not result_url:
            raise PollTimeoutError("轮询超时，未在预期时间内完成视频生成")

        await persist(TaskPhase.DOWNLOADING, progress=DOWNLOADING_PROGRESS)
        downloaded = await download(result_url, number, save_dir)

        finished = await persist(
            TaskPhase.SUCCEEDED,
            progress=100,
            local_path=downloaded.local_path,
            remote_url=result_url,
            actual_filename=downloaded.actual_filename,
            error_msg="",
        )
        _log(log_cb, f"[{number}] 成功 -> {downloaded.actual_filename}")
        return finished
    except Exception as exc:  # noqa: BLE001
        message = str(exc) or exc.__class__.__name__
        logger.error("[视频任务 %s] 失败: %s", number, message, exc_info=True)
        _log(log_cb, f"[{number}] 失败 -> {message}")

    try:
        return await persist(TaskPhase.FAILED, error_msg=message)
    except Exception:  # noqa: BLE001
        logger.exception("[视频任务 %s] 写入失败状态时出错", number)
        _log(log_cb, f"[{number}] 无法保存失败状态，请手动重置该任务")
        return None


def start_batch_in_background(
    store: DocumentStore,
    numbers: list[str] | None = None,
    *,
    config: Config,
    log_cb: LogCallback | None = None,
    on_done: Callable[[BatchResult], None] | None = None,
) -> tuple[BatchResult, threading.Thread | None]:
    """Validate synchronously, then run the batch on a daemon thread.

    The dashboard follows progress by re-reading the task store.
    """
    plan = prepare_batch(store, numbers, config)
    if plan is None:
        return BatchResult(success=False, message=NO_TASKS_MESSAGE), None

    def _run() -> None:
        try:
            result = asyncio.run(run_batch(plan, store, config=config, log_cb=log_cb))
        except Exception as exc:  # noqa: BLE001
            logger.exception("视频批次异常终止")
            result = BatchResult(success=False, message=f"内部错误: {exc}", total=len(plan.targets))
        if on_done:
            on_done(result)

    thread = threading.Thread(target=_run, name="video-batch", daemon=True)
    thread.start()
    return (
        BatchResult(success=True, message=f"已启动 {len(plan.targets)} 个视频任务", total=len(plan.targets)),
        thread,
    )


def _preview(value: Any, limit: int) -> str:
    try:
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(value)
    return text[:limit]


def _log(log_cb: LogCallback | None, message: str) -> None:
    if log_cb:
        log_cb(message)
