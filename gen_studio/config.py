from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .models import DEFAULT_ASPECT_RATIO, AppSettings, Config, VideoSettings


MAX_THREAD_COUNT = 2000
MAX_RETRY_COUNT = 10

DEFAULT_CONFIG_DOCUMENT: dict[str, Any] = {
    "selectedKeyId": "",
    "retryCount": 2,
    "saveDirectory": "public/generated",
    "autoSaveBase64": True,
    "apiSettings": {"threadCount": 5},
    "videoSettings": {
        "apiKey": "",
        "savePath": "public/generated_videos",
        "defaultAspectRatio": DEFAULT_ASPECT_RATIO,
        "defaultWatermark": "",
        "defaultCallback": "",
        "enableFallback": False,
        "enableTranslation": True,
    },
}


def _read_positive_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_non_negative_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _read_path(env_name: str, default: Path) -> Path:
    raw = os.getenv(env_name, "").strip()
    return Path(raw).expanduser() if raw else default


def load_config() -> Config:
    base_dir = _read_path("GS_BASE_DIR", Path.cwd())
    defaults = Config(base_dir=base_dir, data_dir=base_dir, public_dir=base_dir)
    return Config(
        base_dir=base_dir,
        data_dir=_read_path("GS_DATA_DIR", base_dir / "data"),
        public_dir=_read_path("GS_PUBLIC_DIR", base_dir / "public"),
        env_api_key=os.getenv("KIE_API_KEY", "").strip(),
        poll_interval_sec=_read_non_negative_float("GS_POLL_INTERVAL_SEC", 5.0),
        max_poll_attempts=_read_positive_int("GS_MAX_POLL_ATTEMPTS", 120),
        request_timeout_sec=_read_positive_int("GS_REQUEST_TIMEOUT_SEC", 900),
        request_retries=_read_positive_int("GS_REQUEST_RETRIES", 3),
        generate_url=os.getenv("GS_KIE_GENERATE_URL", defaults.generate_url),
        record_url=os.getenv("GS_KIE_RECORD_URL", defaults.record_url),
    )


def validate_runtime(config: Config) -> list[str]:
    errors: list[str] = []
    if config.data_dir.exists() and not os.access(config.data_dir, os.W_OK):
        errors.append(f"数据目录不可写: {config.data_dir}")
    if not config.public_dir.parent.exists():
        errors.append(f"静态资源目录的上级目录不存在: {config.public_dir.parent}")
    return errors


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, low), high)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def settings_from_dict(data: dict[str, Any]) -> AppSettings:
    api = data.get("apiSettings") or {}
    video = data.get("videoSettings") or {}
    video_defaults = VideoSettings()
    return AppSettings(
        selected_key_id=_text(data.get("selectedKeyId")),
        thread_count=_clamp_int(api.get("threadCount"), 5, 1, MAX_THREAD_COUNT),
        retry_count=_clamp_int(data.get("retryCount"), 2, 0, MAX_RETRY_COUNT),
        save_directory=_text(data.get("saveDirectory")) or "public/generated",
        auto_save_base64=bool(data.get("autoSaveBase64", True)),
        video=VideoSettings(
            api_key=_text(video.get("apiKey")),
            save_path=_text(video.get("savePath")),
            default_aspect_ratio=_text(video.get("defaultAspectRatio"))
            or video_defaults.default_aspect_ratio,
            default_watermark=_text(video.get("defaultWatermark")),
            default_callback=_text(video.get("defaultCallback")),
            enable_fallback=bool(video.get("enableFallback", False)),
            enable_translation=video.get("enableTranslation", True) is not False,
        ),
    )


def settings_to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "selectedKeyId": settings.selected_key_id,
        "retryCount": settings.retry_count,
        "saveDirectory": settings.save_directory,
        "autoSaveBase64": settings.auto_save_base64,
        "apiSettings": {"threadCount": settings.thread_count},
        "videoSettings": {
            "apiKey": settings.video.api_key,
            "savePath": settings.video.save_path,
            "defaultAspectRatio": settings.video.default_aspect_ratio,
            "defaultWatermark": settings.video.default_watermark,
            "defaultCallback": settings.video.default_callback,
            "enableFallback": settings.video.enable_fallback,
            "enableTranslation": settings.video.enable_translation,
        },
    }


def resolve_directory(raw: str, config: Config, fallback: Path) -> Path:
    """Blank paths fall back, relative ones are anchored at the base dir."""
    if not raw.strip():
        return fallback
    path = Path(raw.strip()).expanduser()
    return path if path.is_absolute() else config.base_dir / path
