from __future__ import annotations

import math
from typing import Any

from .http_client import HttpClient
from .models import DEFAULT_ASPECT_RATIO, VideoTask


VIDEO_MODEL = "veo3"


def _parse_seed(raw: str) -> int | None:
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def build_generate_payload(task: VideoTask) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": task.prompt,
        "imageUrls": list(task.image_urls),
        "model": VIDEO_MODEL,
        "aspectRatio": task.aspect_ratio or DEFAULT_ASPECT_RATIO,
        "enableFallback": bool(task.enable_fallback),
        "enableTranslation": task.enable_translation is not False,
    }
    if task.watermark:
        payload["watermark"] = task.watermark
    if task.callback_url:
        payload["callBackUrl"] = task.callback_url
    seed = _parse_seed(task.seeds)
    if seed is not None:
        payload["seeds"] = seed
    return payload


def extract_task_id(response: Any) -> str:
    if not isinstance(response, dict):
        return ""
    data = response.get("data")
    if not isinstance(data, dict):
        return ""
    task_id = data.get("taskId")
    return str(task_id) if task_id else ""


def extract_result_urls(data: dict[str, Any]) -> list[str]:
    inner = data.get("response")
    if not isinstance(inner, dict):
        return []
    urls = inner.get("resultUrls") or []
    return [str(url) for url in urls if url]


class KieVideoClient:
    def __init__(self, api_key: str, http: HttpClient, generate_url: str, record_url: str) -> None:
        self.api_key = api_key
        self.http = http
        self.generate_url = generate_url
        self.record_url = record_url

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def submit(self, payload: dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json", **self._auth_headers()}
        return await self.http.fetch_json("POST", self.generate_url, headers=headers, json=payload)

    async def query(self, task_id: str) -> Any:
        return await self.http.fetch_json(
            "GET", self.record_url, headers=self._auth_headers(), params={"taskId": task_id}
        )
