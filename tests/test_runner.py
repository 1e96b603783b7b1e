from __future__ import annotations

import asyncio
import functools
import threading
from pathlib import Path
from typing import Any

import pytest

import gen_studio.runner as runner_module
from gen_studio.credentials import MissingCredentialError
from gen_studio.downloader import download_video
from gen_studio.models import Config, DownloadedVideo, TaskPhase, VideoTask
from gen_studio.runner import NO_TASKS_MESSAGE, generate_videos, start_batch_in_background
from gen_studio.storage import CONFIG_DOC, KEYS_DOC, DocumentStore, StoreError
from gen_studio.tasks import VideoTaskStore, status_label, to_patch
from tests.test_downloader import FakeDownloadSession


SUCCESS_POLL = {"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/v.mp4"]}}}
PENDING_POLL = {"code": 200, "data": {"successFlag": 0}}


class FakeVideoApi:
    """Provider double: each submitted prompt gets ``job-<prompt>`` and a scripted poll sequence."""

    def __init__(self, polls: list[Any] | None = None, submit_response: Any = None, delay: float = 0) -> None:
        self.polls = polls if polls is not None else [SUCCESS_POLL]
        self.submit_response = submit_response
        self.delay = delay
        self.submitted: list[dict[str, Any]] = []
        self.queries: list[str] = []
        self._poll_index: dict[str, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit(self, payload: dict[str, Any]) -> Any:
        self.submitted.append(payload)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(self.delay)
        if self.submit_response is not None:
            return self.submit_response
        return {"code": 200, "data": {"taskId": f"job-{payload['prompt']}"}}

    async def query(self, task_id: str) -> Any:
        self.queries.append(task_id)
        await asyncio.sleep(self.delay)
        index = self._poll_index.get(task_id, 0)
        self._poll_index[task_id] = index + 1
        return self.polls[min(index, len(self.polls) - 1)]

    async def download(self, url: str, number: str, save_dir: Path) -> DownloadedVideo:
        await asyncio.sleep(self.delay)
        self.in_flight -= 1
        return DownloadedVideo(local_path=f"generated_videos/{number}.mp4", actual_filename=f"{number}.mp4")


def _config(tmp_path: Path, **overrides: Any) -> Config:
    values: dict[str, Any] = {
        "base_dir": tmp_path,
        "data_dir": tmp_path / "data",
        "public_dir": tmp_path / "public",
        "poll_interval_sec": 0,
        "max_poll_attempts": 5,
    }
    values.update(overrides)
    return Config(**values)


def _seed(
    config: Config,
    tasks: list[VideoTask],
    *,
    api_key: str = "video-secret",
    thread_count: int = 2,
) -> DocumentStore:
    store = DocumentStore(config.data_dir)

    def configure(data: dict[str, Any]) -> None:
        data["apiSettings"]["threadCount"] = thread_count
        data["videoSettings"]["apiKey"] = api_key
        data["videoSettings"]["savePath"] = ""

    store.update(CONFIG_DOC, configure)
    VideoTaskStore(store).add_tasks(tasks)
    return store


def _run(store: DocumentStore, config: Config, api: FakeVideoApi, numbers: list[str] | None = None, **kwargs: Any):
    factory_keys: list[str] = []

    def factory(api_key: str) -> FakeVideoApi:
        factory_keys.append(api_key)
        return api

    kwargs.setdefault("download_fn", api.download)
    result = asyncio.run(
        generate_videos(store, numbers, config=config, client_factory=factory, **kwargs)
    )
    return result, factory_keys


def _tasks(*numbers: str) -> list[VideoTask]:
    return [VideoTask(number=number, prompt=f"p{number}", image_urls=[f"https://img.test/{number}.png"]) for number in numbers]


def test_successful_task_reaches_100_with_monotonic_progress(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi(polls=[{"code": 500}, PENDING_POLL, PENDING_POLL, SUCCESS_POLL])

    history: list[tuple[TaskPhase, int, str]] = []
    writer_threads: list[int] = []
    original = VideoTaskStore.update_task

    def recording(self: VideoTaskStore, number: str, patch: dict[str, Any]):
        writer_threads.append(threading.get_ident())
        task = original(self, number, patch)
        history.append((task.phase, task.progress, task.status))
        return task

    monkeypatch.setattr(VideoTaskStore, "update_task", recording)

    result, keys = _run(store, config, api)

    # event loop runs on this thread; store writes must not
    assert writer_threads and threading.get_ident() not in writer_threads

    assert result.success is True
    assert keys == ["video-secret"]
    task = VideoTaskStore(store).get_task("1")
    assert task.phase is TaskPhase.SUCCEEDED
    assert task.status == "成功"
    assert task.progress == 100
    assert task.local_path == "generated_videos/1.mp4"
    assert task.actual_filename == "1.mp4"
    assert task.remote_url == "https://cdn.test/v.mp4"
    assert task.provider_task_id == "job-p1"
    assert task.error_msg == ""

    progresses = [progress for _, progress, _ in history]
    assert progresses == sorted(progresses)
    assert [phase for phase, _, _ in history] == [
        TaskPhase.SUBMITTING,
        TaskPhase.SUBMITTED,
        TaskPhase.POLLING,
        TaskPhase.POLLING,
        TaskPhase.POLLING,
        TaskPhase.DOWNLOADING,
        TaskPhase.SUCCEEDED,
    ]
    assert history[2][2] == "生成中... (轮询 1)"
    assert history[4][1] == 21


def test_no_eligible_tasks_is_a_no_op_without_credentials_or_network(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2"), api_key="")
    task_store = VideoTaskStore(store)
    for number in ("1", "2"):
        task_store.update_task(number, to_patch(phase=TaskPhase.SUCCEEDED, status=status_label(TaskPhase.SUCCEEDED)))
    api = FakeVideoApi()

    result, keys = _run(store, config, api)

    assert result.success is False
    assert result.message == NO_TASKS_MESSAGE
    assert result.to_dict() == {"success": False, "message": NO_TASKS_MESSAGE}
    assert keys == []
    assert api.submitted == [] and api.queries == []


def test_succeeded_and_in_flight_tasks_are_never_resubmitted(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2", "3", "4"))
    task_store = VideoTaskStore(store)
    task_store.update_task("1", to_patch(phase=TaskPhase.SUCCEEDED, status="成功"))
    task_store.update_task("2", to_patch(phase=TaskPhase.POLLING, status="生成中... (轮询 2)"))
    task_store.update_task("3", to_patch(phase=TaskPhase.FAILED, status="失败", progress=40))
    api = FakeVideoApi()

    result, _ = _run(store, config, api, numbers=["1", "2", "3"])

    assert result.success is True
    assert result.total == 1
    assert [payload["prompt"] for payload in api.submitted] == ["p3"]
    assert task_store.get_task("2").phase is TaskPhase.POLLING
    assert task_store.get_task("4").phase is TaskPhase.WAITING


def test_missing_credential_aborts_before_any_task_is_touched(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"), api_key="")
    before = VideoTaskStore(store).list_tasks()
    api = FakeVideoApi()

    with pytest.raises(MissingCredentialError):
        _run(store, config, api)

    assert VideoTaskStore(store).list_tasks() == before
    assert api.submitted == []


def test_library_key_and_environment_override_are_resolved(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"), api_key="")
    store.write(KEYS_DOC, {"keys": [{"id": "k", "name": "kie", "platform": "Kie.ai", "apiKey": "from-library"}]})

    _, keys = _run(store, config, FakeVideoApi())
    assert keys == ["from-library"]

    VideoTaskStore(store).reset_task("1")
    _, keys = _run(store, _config(tmp_path, env_api_key="from-env"), FakeVideoApi())
    assert keys == ["from-env"]


def test_submit_without_task_id_fails_without_polling(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi(submit_response={"code": 422, "msg": "image url blocked"})

    result, _ = _run(store, config, api)

    assert result.success is True
    task = VideoTaskStore(store).get_task("1")
    assert task.phase is TaskPhase.FAILED
    assert task.status == "失败"
    assert "taskId" in task.error_msg
    assert "image url blocked" in task.error_msg
    assert task.progress == 5
    assert api.queries == []


def test_poll_budget_exhaustion_marks_task_timed_out(tmp_path: Path) -> None:
    config = _config(tmp_path, max_poll_attempts=3)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi(polls=[PENDING_POLL])

    result, _ = _run(store, config, api)

    assert result.success is True
    task = VideoTaskStore(store).get_task("1")
    assert task.phase is TaskPhase.FAILED
    assert "轮询超时" in task.error_msg
    assert task.progress == 21
    assert len(api.queries) == 3


def test_provider_failure_uses_provider_message(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2"))
    api = FakeVideoApi(polls=[{"code": 200, "data": {"successFlag": 2, "errorMessage": "content policy"}}])

    _run(store, config, api)

    tasks = VideoTaskStore(store).list_tasks()
    assert [task.error_msg for task in tasks] == ["content policy", "content policy"]
    assert all(task.phase is TaskPhase.FAILED for task in tasks)


def test_success_without_result_urls_fails(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi(polls=[{"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": []}}}])

    _run(store, config, api)

    assert VideoTaskStore(store).get_task("1").error_msg == "查询接口未返回视频链接"


def test_download_404_fails_task_after_provider_success(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi()
    download_fn = functools.partial(
        download_video, public_root=config.public_dir, session=FakeDownloadSession(status_code=404)
    )

    result, _ = _run(store, config, api, download_fn=download_fn)

    assert result.success is True
    task = VideoTaskStore(store).get_task("1")
    assert task.phase is TaskPhase.FAILED
    assert "404" in task.error_msg
    assert task.progress == 95
    assert task.local_path == ""


def test_real_download_lands_under_public_root(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    download_fn = functools.partial(download_video, public_root=config.public_dir, session=FakeDownloadSession())

    _run(store, config, FakeVideoApi(), download_fn=download_fn)

    task = VideoTaskStore(store).get_task("1")
    assert task.phase is TaskPhase.SUCCEEDED
    assert task.local_path.startswith("generated_videos/1_")
    assert (config.public_dir / task.local_path).read_bytes() == b"video-bytes"


def test_concurrency_never_exceeds_thread_count(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks(*[str(n) for n in range(1, 8)]), thread_count=3)
    api = FakeVideoApi(polls=[PENDING_POLL, SUCCESS_POLL], delay=0.005)

    result, _ = _run(store, config, api)

    assert result.total == 7
    assert api.max_in_flight == 3
    assert api.in_flight == 0
    assert all(task.phase is TaskPhase.SUCCEEDED for task in VideoTaskStore(store).list_tasks())


def test_single_worker_processes_tasks_in_fifo_order(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2", "3"), thread_count=1)
    api = FakeVideoApi(delay=0.001)

    _run(store, config, api)

    assert [payload["prompt"] for payload in api.submitted] == ["p1", "p2", "p3"]
    assert api.max_in_flight == 1


def test_overlapping_batches_never_submit_the_same_task_twice(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2"), thread_count=1)
    api = FakeVideoApi(delay=0.005)

    def start() -> Any:
        return generate_videos(store, config=config, client_factory=lambda api_key: api, download_fn=api.download)

    async def overlap() -> tuple[Any, Any]:
        first = asyncio.create_task(start())
        await asyncio.sleep(0.015)
        second = await start()
        return await first, second

    first, second = asyncio.run(overlap())

    assert [payload["prompt"] for payload in api.submitted] == ["p1", "p2"]
    assert first.total == 2
    assert second.success is False
    assert second.message == NO_TASKS_MESSAGE
    assert all(task.phase is TaskPhase.SUCCEEDED for task in VideoTaskStore(store).list_tasks())


def test_unwritable_task_does_not_abort_the_batch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2"), thread_count=1)
    api = FakeVideoApi()
    original = VideoTaskStore.update_task

    def broken_for_first(self: VideoTaskStore, number: str, patch: dict[str, Any]):
        if number == "1":
            raise StoreError("数据文件损坏")
        return original(self, number, patch)

    monkeypatch.setattr(VideoTaskStore, "update_task", broken_for_first)
    logs: list[str] = []

    result, _ = _run(store, config, api, log_cb=logs.append)

    assert result.success is True
    assert result.total == 2
    assert [payload["prompt"] for payload in api.submitted] == ["p2"]
    task_store = VideoTaskStore(store)
    assert task_store.get_task("1").phase is TaskPhase.QUEUED
    assert task_store.get_task("2").phase is TaskPhase.SUCCEEDED
    assert any("无法保存失败状态" in line for line in logs)


def test_failed_first_write_marks_task_failed_and_batch_continues(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1", "2"), thread_count=1)
    api = FakeVideoApi()
    original = VideoTaskStore.update_task
    calls: list[str] = []

    def first_write_fails(self: VideoTaskStore, number: str, patch: dict[str, Any]):
        calls.append(number)
        if len(calls) == 1:
            raise StoreError("transient")
        return original(self, number, patch)

    monkeypatch.setattr(VideoTaskStore, "update_task", first_write_fails)

    _run(store, config, api)

    task_store = VideoTaskStore(store)
    first = task_store.get_task("1")
    assert first.phase is TaskPhase.FAILED
    assert first.error_msg == "transient"
    assert task_store.get_task("2").phase is TaskPhase.SUCCEEDED
    assert [payload["prompt"] for payload in api.submitted] == ["p2"]


def test_background_batch_reports_start_and_finishes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = _config(tmp_path)
    store = _seed(config, _tasks("1"))
    api = FakeVideoApi()

    async def fake_download(url: str, number: str, save_dir: Path, **_: Any) -> DownloadedVideo:
        return await api.download(url, number, save_dir)

    monkeypatch.setattr(
        runner_module,
        "KieVideoClient",
        lambda api_key, http, generate_url, record_url: api,
    )
    monkeypatch.setattr(runner_module, "download_video", fake_download)

    finished: list[Any] = []
    result, thread = start_batch_in_background(store, config=config, on_done=finished.append)
    thread.join(timeout=10)

    assert result.success is True
    assert result.total == 1
    assert finished and finished[0].success is True
    assert VideoTaskStore(store).get_task("1").phase is TaskPhase.SUCCEEDED


def test_background_batch_without_tasks_starts_nothing(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = DocumentStore(config.data_dir)

    result, thread = start_batch_in_background(store, config=config)

    assert thread is None
    assert result.message == NO_TASKS_MESSAGE
