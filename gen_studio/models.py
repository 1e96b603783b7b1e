from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


DEFAULT_ASPECT_RATIO = "16:9"


@dataclass(frozen=True)
class Config:
    base_dir: Path
    data_dir: Path
    public_dir: Path
    env_api_key: str = ""
    poll_interval_sec: float = 5.0
    max_poll_attempts: int = 120
    request_timeout_sec: int = 900
    request_retries: int = 3
    generate_url: str = "https://api.kie.ai/api/v1/veo/generate"
    record_url: str = "https://api.kie.ai/api/v1/veo/record-info"


@dataclass
class VideoSettings:
    api_key: str = ""
    save_path: str = "public/generated_videos"
    default_aspect_ratio: str = DEFAULT_ASPECT_RATIO
    default_watermark: str = ""
    default_callback: str = ""
    enable_fallback: bool = False
    enable_translation: bool = True


@dataclass
class AppSettings:
    selected_key_id: str = ""
    thread_count: int = 5
    retry_count: int = 2
    save_directory: str = "public/generated"
    auto_save_base64: bool = True
    video: VideoSettings = field(default_factory=VideoSettings)


class TaskPhase(str, Enum):
    WAITING = "waiting"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    POLLING = "polling"
    DOWNLOADING = "downloading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ELIGIBLE_PHASES = frozenset({TaskPhase.WAITING, TaskPhase.FAILED})
IN_FLIGHT_PHASES = frozenset(
    {
        TaskPhase.QUEUED,
        TaskPhase.SUBMITTING,
        TaskPhase.SUBMITTED,
        TaskPhase.POLLING,
        TaskPhase.DOWNLOADING,
    }
)


@dataclass
class VideoTask:
    number: str
    prompt: str
    image_urls: list[str] = field(default_factory=list)
    aspect_ratio: str = ""
    watermark: str = ""
    callback_url: str = ""
    seeds: str = ""
    enable_fallback: bool = False
    enable_translation: bool = True
    phase: TaskPhase = TaskPhase.WAITING
    status: str = "等待中"
    progress: int = 0
    error_msg: str = ""
    local_path: str = ""
    actual_filename: str = ""
    remote_url: str = ""
    provider_task_id: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class ResolvedCredential:
    api_key: str
    source: str


@dataclass(frozen=True)
class DownloadedVideo:
    local_path: str
    actual_filename: str


@dataclass
class BatchResult:
    success: bool
    message: str = ""
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True)
class VideoTaskInput:
    index: int
    prompt: str
    image_url: str


@dataclass(frozen=True)
class PromptInput:
    index: int
    number: str
    prompt: str


@dataclass(frozen=True)
class ParseFailure:
    index: int
    raw: str
    error: str
