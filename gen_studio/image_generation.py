from __future__ import annotations

import base64
import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests

from .config import resolve_directory
from .library import find_reference_images, list_keys, load_settings, update_prompt
from .models import Config
from .storage import DocumentStore


logger = logging.getLogger(__name__)

PLATFORM_ENDPOINTS: dict[str, tuple[str, str]] = {
    "apicore": ("https://api.apicore.ai/v1/chat/completions", "gemini-2.5-flash-image"),
    "API易": ("https://vip.apiyi.com/v1/chat/completions", "gemini-2.5-flash-image-preview"),
    "云雾": ("https://yunwu.ai/v1/chat/completions", "gemini-2.5-flash-image-preview"),
}
DEFAULT_PLATFORM = "云雾"

_BASE64_IMAGE = re.compile(r"!\[[^\]]*\]\((data:image/[a-zA-Z+]+;base64,[^)]+)\)")
_DOWNLOAD_LINK = re.compile(r"\[[^\]]*下载[^\]]*\]\((https?:[^)]+)\)")
_IMAGE_LINK = re.compile(r"!\[[^\]]*\]\((https?:[^)]+)\)")
_UNSAFE_NUMBER = re.compile(r"[^a-zA-Z0-9_-]+")


class ImageGenerationError(RuntimeError):
    pass


@dataclass
class ImageRequest:
    prompt_id: str
    final_prompt: str
    number: str = ""
    reference_ids: list[str] = field(default_factory=list)
    retry_count: int | None = None
    key_id: str = ""


@dataclass
class ImageResult:
    success: bool
    image_url: str = ""
    file_path: str = ""
    base64: str = ""
    message: str = ""
    record: dict[str, Any] | None = None


def compose_prompt(prompt: str, style_content: str = "") -> str:
    prompt = prompt.strip()
    style_content = style_content.strip()
    return f"{prompt}\n\n{style_content}" if style_content else prompt


def endpoint_for(platform: str) -> tuple[str, str]:
    return PLATFORM_ENDPOINTS.get(platform, PLATFORM_ENDPOINTS[DEFAULT_PLATFORM])


def extract_content(raw: Any) -> str:
    if not raw:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        parts: list[str] = []
        for item in raw:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("text"):
                parts.append(str(item["text"]))
        return "\n".join(parts)
    if isinstance(raw, dict) and raw.get("text"):
        return str(raw["text"])
    return ""


def parse_image_from_markdown(markdown: str) -> tuple[str, str] | None:
    """Return ``("base64", data_url)`` or ``("url", link)`` for the first image found."""
    match = _BASE64_IMAGE.search(markdown)
    if match:
        return "base64", match.group(1)
    match = _DOWNLOAD_LINK.search(markdown)
    if match:
        return "url", match.group(1)
    match = _IMAGE_LINK.search(markdown)
    if match:
        return "url", match.group(1)
    return None


def reference_to_data_url(image: dict[str, Any], public_dir: Path) -> str | None:
    if image.get("sourceType") == "url":
        return str(image.get("path") or image.get("url") or "") or None

    file_path = public_dir / str(image.get("path", "")).lstrip("/")
    try:
        payload = file_path.read_bytes()
    except OSError:
        logger.warning("读取参考图失败: %s", file_path, exc_info=True)
        return None
    mime_type = mimetypes.guess_type(file_path.name)[0] or "image/png"
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


def save_base64_image(data_url: str, save_dir: Path, prompt_id: str, number: str = "") -> Path:
    header, _, data = data_url.partition(",")
    match = re.match(r"data:image/(\w+);base64", header)
    ext = match.group(1) if match else "png"

    save_dir.mkdir(parents=True, exist_ok=True)
    safe_number = _UNSAFE_NUMBER.sub("-", number)
    prefix = f"{safe_number}-" if safe_number else ""
    file_path = save_dir / f"{prefix}{prompt_id}-{int(time.time() * 1000)}.{ext}"
    file_path.write_bytes(base64.b64decode(data))
    return file_path


def _public_url(file_path: Path, public_dir: Path) -> str:
    try:
        return "/" + file_path.resolve().relative_to(public_dir.resolve()).as_posix()
    except ValueError:
        return ""


def generate_image(
    store: DocumentStore,
    request: ImageRequest,
    *,
    config: Config,
    session: requests.Session | None = None,
    timeout_sec: float = 300,
) -> ImageResult:
    if session is None:
        with requests.Session() as own_session:
            return generate_image(store, request, config=config, session=own_session, timeout_sec=timeout_sec)

    settings = load_settings(store)
    key_id = request.key_id or settings.selected_key_id
    key_entry = next((key for key in list_keys(store) if key.get("id") == key_id), None)
    if key_entry is None:
        raise ImageGenerationError("未找到有效的 API 密钥")

    endpoint, model = endpoint_for(str(key_entry.get("platform")))
    content: list[dict[str, Any]] = [{"type": "text", "text": request.final_prompt}]
    for reference in find_reference_images(store, request.reference_ids):
        data_url = reference_to_data_url(reference, config.public_dir)
        if data_url:
            content.append({"type": "image_url", "image_url": {"url": data_url}})

    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": content},
        ],
    }
    headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key_entry['apiKey']}"}
    retry_count = settings.retry_count if request.retry_count is None else request.retry_count
    attempts = max(retry_count, 0) + 1
    last_error = ""

    for attempt in range(1, attempts + 1):
        try:
            response = session.post(endpoint, json=payload, headers=headers, timeout=timeout_sec)
            if not response.ok:
                raise ImageGenerationError(response.text or f"请求失败({response.status_code})")

            body = response.json()
            if not isinstance(body, dict):
                raise ImageGenerationError("响应格式错误")
            choices = body.get("choices") or [{}]
            markdown = extract_content((choices[0].get("message") or {}).get("content"))
            parsed = parse_image_from_markdown(markdown)
            if parsed is None:
                raise ImageGenerationError("响应中未找到图片数据")
        except (requests.RequestException, ValueError, ImageGenerationError) as exc:
            last_error = str(exc)
            logger.warning("[图片生成 %s] 第 %s/%s 次失败: %s", request.prompt_id, attempt, attempts, exc)
            continue

        kind, value = parsed
        if kind == "url":
            record = update_prompt(
                store,
                request.prompt_id,
                status="成功",
                imageUrl=value,
                errorMsg="",
                apiPlatform=key_entry.get("platform"),
            )
            return ImageResult(success=True, image_url=value, record=record)

        save_dir = resolve_directory(settings.save_directory, config, config.public_dir / "generated")
        file_path = save_base64_image(value, save_dir, request.prompt_id, request.number)
        image_url = _public_url(file_path, config.public_dir) or str(file_path)
        record = update_prompt(
            store,
            request.prompt_id,
            status="成功",
            imageUrl=image_url,
            errorMsg="",
            apiPlatform=key_entry.get("platform"),
        )
        return ImageResult(
            success=True,
            image_url=image_url,
            file_path=str(file_path),
            base64=value if settings.auto_save_base64 else "",
            record=record,
        )

    message = last_error or "图片生成失败"
    record = update_prompt(store, request.prompt_id, status="失败", errorMsg=message)
    return ImageResult(success=False, message=message, record=record)
