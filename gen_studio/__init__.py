from .artifact import build_download_artifact, build_tasks_csv
from .config import load_config, validate_runtime
from .credentials import MissingCredentialError, resolve_video_api_key
from .input_parser import build_video_tasks, parse_prompt_inputs, parse_video_task_inputs
from .models import BatchResult, Config, TaskPhase, VideoTask
from .runner import generate_videos, start_batch_in_background
from .storage import DocumentStore
from .tasks import VideoTaskStore, select_eligible

__all__ = [
    "BatchResult",
    "Config",
    "DocumentStore",
    "MissingCredentialError",
    "TaskPhase",
    "VideoTask",
    "VideoTaskStore",
    "build_download_artifact",
    "build_tasks_csv",
    "build_video_tasks",
    "generate_videos",
    "load_config",
    "parse_prompt_inputs",
    "parse_video_task_inputs",
    "resolve_video_api_key",
    "select_eligible",
    "start_batch_in_background",
    "validate_runtime",
]
