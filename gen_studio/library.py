from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

from .config import settings_from_dict, settings_to_dict
from .models import AppSettings, Config
from .storage import (
    CONFIG_DOC,
    KEYS_DOC,
    PROMPTS_DOC,
    REFERENCES_DOC,
    STYLES_DOC,
    DocumentStore,
)
from .tasks import now_iso


API_PLATFORMS = ("云雾", "API易", "apicore", "kie.ai")
PROMPT_STATUSES = ("等待中", "生成中", "成功", "失败")
DEFAULT_CATEGORY_ID = "default"
MAX_BULK_PROMPTS = 5000
REFERENCE_DIR_NAME = "reference"


class NotFoundError(LookupError):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _require(value: str | None, message: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValueError(message)
    return text


def _find(items: list[dict[str, Any]], item_id: str, message: str) -> dict[str, Any]:
    for item in items:
        if item.get("id") == item_id:
            return item
    raise NotFoundError(message)


def load_settings(store: DocumentStore) -> AppSettings:
    return settings_from_dict(store.read(CONFIG_DOC))


def save_settings(store: DocumentStore, settings: AppSettings) -> AppSettings:
    store.write(CONFIG_DOC, settings_to_dict(settings))
    return load_settings(store)


def list_keys(store: DocumentStore) -> list[dict[str, Any]]:
    return store.read(KEYS_DOC).get("keys", [])


def _validate_key(name: str, platform: str, api_key: str) -> tuple[str, str, str]:
    name = _require(name, "名称不能为空")
    if platform not in API_PLATFORMS:
        raise ValueError(f"不支持的平台: {platform}")
    api_key = _require(api_key, "API密钥不能为空")
    return name, platform, api_key


def add_key(store: DocumentStore, name: str, platform: str, api_key: str) -> dict[str, Any]:
    name, platform, api_key = _validate_key(name, platform, api_key)
    entry = {
        "id": _new_id(),
        "name": name,
        "platform": platform,
        "apiKey": api_key,
        "createdAt": now_iso(),
    }
    store.update(KEYS_DOC, lambda data: data.setdefault("keys", []).append(entry))

    def select_if_empty(config: dict[str, Any]) -> None:
        if not config.get("selectedKeyId"):
            config["selectedKeyId"] = entry["id"]

    store.update(CONFIG_DOC, select_if_empty)
    return entry


def update_key(
    store: DocumentStore, key_id: str, name: str, platform: str, api_key: str
) -> dict[str, Any]:
    name, platform, api_key = _validate_key(name, platform, api_key)

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        entry = _find(data.setdefault("keys", []), key_id, "密钥不存在")
        entry.update(name=name, platform=platform, apiKey=api_key)
        return dict(entry)

    return store.update(KEYS_DOC, mutate)


def delete_key(store: DocumentStore, key_id: str) -> None:
    def mutate(data: dict[str, Any]) -> list[dict[str, Any]]:
        keys = data.setdefault("keys", [])
        keys.remove(_find(keys, key_id, "密钥不存在"))
        return keys

    remaining = store.update(KEYS_DOC, mutate)

    def repoint(config: dict[str, Any]) -> None:
        if config.get("selectedKeyId") == key_id:
            config["selectedKeyId"] = remaining[0]["id"] if remaining else ""

    store.update(CONFIG_DOC, repoint)


def add_style_category(store: DocumentStore, name: str, description: str = "") -> dict[str, Any]:
    category = {"id": _new_id(), "name": _require(name, "分类名称不能为空"), "description": description}
    store.update(STYLES_DOC, lambda data: data.setdefault("categories", []).append(category))
    return category


def update_style_category(
    store: DocumentStore, category_id: str, name: str, description: str = ""
) -> dict[str, Any]:
    name = _require(name, "分类名称不能为空")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        category = _find(data.setdefault("categories", []), category_id, "分类不存在")
        category.update(name=name, description=description)
        return dict(category)

    return store.update(STYLES_DOC, mutate)


def delete_style_category(store: DocumentStore, category_id: str) -> None:
    if category_id == DEFAULT_CATEGORY_ID:
        raise ValueError("默认分类不能删除")

    def mutate(data: dict[str, Any]) -> None:
        categories = data.setdefault("categories", [])
        categories.remove(_find(categories, category_id, "分类不存在"))
        for style in data.setdefault("styles", []):
            if style.get("categoryId") == category_id:
                style["categoryId"] = DEFAULT_CATEGORY_ID

    store.update(STYLES_DOC, mutate)


def add_style(store: DocumentStore, name: str, category_id: str, content: str) -> dict[str, Any]:
    name = _require(name, "风格名称不能为空")
    content = _require(content, "风格内容不能为空")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        _find(data.setdefault("categories", []), category_id, "分类不存在")
        stamp = now_iso()
        style = {
            "id": _new_id(),
            "name": name,
            "categoryId": category_id,
            "content": content,
            "usageCount": 0,
            "createdAt": stamp,
            "updatedAt": stamp,
        }
        data.setdefault("styles", []).append(style)
        return style

    return store.update(STYLES_DOC, mutate)


def update_style(
    store: DocumentStore, style_id: str, name: str, category_id: str, content: str
) -> dict[str, Any]:
    name = _require(name, "风格名称不能为空")
    content = _require(content, "风格内容不能为空")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        style = _find(data.setdefault("styles", []), style_id, "风格不存在")
        _find(data.setdefault("categories", []), category_id, "分类不存在")
        style.update(name=name, categoryId=category_id, content=content, updatedAt=now_iso())
        return dict(style)

    return store.update(STYLES_DOC, mutate)


def mark_style_used(store: DocumentStore, style_id: str) -> None:
    def mutate(data: dict[str, Any]) -> None:
        style = _find(data.setdefault("styles", []), style_id, "风格不存在")
        style["usageCount"] = int(style.get("usageCount") or 0) + 1

    store.update(STYLES_DOC, mutate)


def delete_style(store: DocumentStore, style_id: str) -> None:
    def mutate(data: dict[str, Any]) -> None:
        styles = data.setdefault("styles", [])
        styles.remove(_find(styles, style_id, "风格不存在"))

    store.update(STYLES_DOC, mutate)


def add_reference_category(store: DocumentStore, name: str) -> dict[str, Any]:
    category = {"id": _new_id(), "name": _require(name, "分类名称不能为空"), "images": []}
    store.update(REFERENCES_DOC, lambda data: data.setdefault("categories", []).append(category))
    return category


def rename_reference_category(store: DocumentStore, category_id: str, name: str) -> dict[str, Any]:
    name = _require(name, "分类名称不能为空")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        category = _find(data.setdefault("categories", []), category_id, "分类不存在")
        category["name"] = name
        return dict(category)

    return store.update(REFERENCES_DOC, mutate)


def delete_reference_category(store: DocumentStore, category_id: str, config: Config) -> None:
    if category_id == DEFAULT_CATEGORY_ID:
        raise ValueError("默认分类不能删除")

    def mutate(data: dict[str, Any]) -> list[dict[str, Any]]:
        categories = data.setdefault("categories", [])
        category = _find(categories, category_id, "分类不存在")
        categories.remove(category)
        return category.get("images", [])

    for image in store.update(REFERENCES_DOC, mutate):
        _remove_uploaded_file(image, config)


def add_reference_image(
    store: DocumentStore,
    category_id: str,
    name: str,
    *,
    config: Config,
    url: str = "",
    file_name: str = "",
    file_bytes: bytes | None = None,
    description: str = "",
) -> dict[str, Any]:
    name = _require(name, "参考图名称不能为空")
    image_id = _new_id()
    record: dict[str, Any] = {
        "id": image_id,
        "name": name,
        "description": description,
        "createdAt": now_iso(),
    }

    if file_bytes is None:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError("请输入有效的图片URL")
        record.update(sourceType="url", path=url, url=url)
    else:
        target_dir = config.public_dir / REFERENCE_DIR_NAME
        target_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{image_id}{Path(file_name).suffix or '.png'}"
        (target_dir / filename).write_bytes(file_bytes)
        record.update(sourceType="upload", path=f"/{REFERENCE_DIR_NAME}/{filename}")

    def mutate(data: dict[str, Any]) -> None:
        category = _find(data.setdefault("categories", []), category_id, "分类不存在")
        category.setdefault("images", []).append(record)

    try:
        store.update(REFERENCES_DOC, mutate)
    except NotFoundError:
        _remove_uploaded_file(record, config)
        raise
    return record


def delete_reference_image(store: DocumentStore, category_id: str, image_id: str, config: Config) -> None:
    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        category = _find(data.setdefault("categories", []), category_id, "分类不存在")
        images = category.setdefault("images", [])
        image = _find(images, image_id, "参考图不存在")
        images.remove(image)
        return image

    _remove_uploaded_file(store.update(REFERENCES_DOC, mutate), config)


def find_reference_images(store: DocumentStore, image_ids: list[str]) -> list[dict[str, Any]]:
    categories = store.read(REFERENCES_DOC).get("categories", [])
    by_id = {image["id"]: image for category in categories for image in category.get("images", [])}
    return [by_id[image_id] for image_id in image_ids if image_id in by_id]


def _remove_uploaded_file(image: dict[str, Any], config: Config) -> None:
    if image.get("sourceType") != "upload":
        return
    (config.public_dir / str(image.get("path", "")).lstrip("/")).unlink(missing_ok=True)


def list_prompts(store: DocumentStore) -> list[dict[str, Any]]:
    return store.read(PROMPTS_DOC).get("prompts", [])


def _prompt_record(number: str, prompt: str, stamp: str) -> dict[str, Any]:
    return {
        "id": _new_id(),
        "number": number.strip(),
        "prompt": _require(prompt, "提示词不能为空"),
        "status": "等待中",
        "createdAt": stamp,
        "updatedAt": stamp,
    }


def add_prompt(store: DocumentStore, prompt: str, number: str = "") -> dict[str, Any]:
    record = _prompt_record(number, prompt, now_iso())
    store.update(PROMPTS_DOC, lambda data: data.setdefault("prompts", []).append(record))
    return record


def update_prompt(store: DocumentStore, prompt_id: str, **fields: Any) -> dict[str, Any]:
    if "status" in fields and fields["status"] not in PROMPT_STATUSES:
        raise ValueError(f"非法状态: {fields['status']}")
    if "prompt" in fields:
        fields["prompt"] = _require(fields["prompt"], "提示词不能为空")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        record = _find(data.setdefault("prompts", []), prompt_id, "提示词不存在")
        record.update({key: value for key, value in fields.items() if value is not None})
        record["updatedAt"] = now_iso()
        return dict(record)

    return store.update(PROMPTS_DOC, mutate)


def delete_prompt(store: DocumentStore, prompt_id: str) -> None:
    def mutate(data: dict[str, Any]) -> None:
        prompts = data.setdefault("prompts", [])
        prompts.remove(_find(prompts, prompt_id, "提示词不存在"))

    store.update(PROMPTS_DOC, mutate)


def replace_prompts(store: DocumentStore, items: list[tuple[str, str]]) -> list[dict[str, Any]]:
    """Bulk import: ``items`` are ``(number, prompt)`` pairs replacing the whole list."""
    if len(items) > MAX_BULK_PROMPTS:
        raise ValueError(f"一次导入最多 {MAX_BULK_PROMPTS} 条提示词")
    stamp = now_iso()
    prompts = [_prompt_record(number, prompt, stamp) for number, prompt in items]
    store.write(PROMPTS_DOC, {"prompts": prompts})
    return prompts
