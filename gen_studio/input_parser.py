from __future__ import annotations

import csv
import re
from io import BytesIO, StringIO
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd

from .models import ParseFailure, PromptInput, VideoSettings, VideoTask, VideoTaskInput


REQUIRED_CSV_COLUMN = "prompt"
IMAGE_CSV_COLUMN = "image_url"
NUMBER_CSV_COLUMN = "number"
REQUIRED_EXCEL_COLUMN = "提示词"
IMAGE_EXCEL_COLUMN = "图片链接"

_LIST_PREFIX = re.compile(r"^\d+\.\s*")
_NUMBERED_LINE = re.compile(r"^(\d[\w-]{0,31})\s*[,，\t]\s*(.+)$")


def strip_list_prefix(text: str) -> str:
    return _LIST_PREFIX.sub("", text.strip()).strip()


def is_valid_public_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def parse_video_task_inputs(
    prompt_text: str,
    image_url_text: str,
    upload_file_name: str | None = None,
    upload_bytes: bytes | None = None,
) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    # 文本框优先：任一输入框有内容就忽略上传文件
    has_prompt_text = any(line.strip() for line in prompt_text.splitlines())
    has_url_text = any(line.strip() for line in image_url_text.splitlines())
    if has_prompt_text or has_url_text:
        return _parse_split_text_rows(prompt_text=prompt_text, image_url_text=image_url_text)
    if upload_bytes:
        return _parse_uploaded_rows(upload_file_name=upload_file_name, upload_bytes=upload_bytes)
    return [], []


def _parse_split_text_rows(
    prompt_text: str,
    image_url_text: str,
) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    rows: list[VideoTaskInput] = []
    failures: list[ParseFailure] = []

    prompt_lines = [strip_list_prefix(line) for line in prompt_text.splitlines() if line.strip()]
    url_lines = [line.strip() for line in image_url_text.splitlines() if line.strip()]

    # 只有一条提示词时，所有图片共用它
    shared_prompt = prompt_lines[0] if len(prompt_lines) == 1 else ""

    for index in range(max(len(prompt_lines), len(url_lines))):
        prompt = shared_prompt or (prompt_lines[index] if index < len(prompt_lines) else "")
        image_url = url_lines[index] if index < len(url_lines) else ""

        error = _validate_row(prompt=prompt, image_url=image_url)
        if error:
            failures.append(ParseFailure(index=index, raw=prompt or image_url, error=error))
        else:
            rows.append(VideoTaskInput(index=index, prompt=prompt, image_url=image_url))

    return rows, failures


def _decode_csv(csv_bytes: bytes) -> str:
    try:
        return csv_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        return csv_bytes.decode("utf-8", errors="replace")


def _normalize_header(value: object) -> str:
    return "".join(str(value).strip().lower().split())


def _to_text(value: object) -> str:
    if value is None:
        return ""
    if pd.isna(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _parse_uploaded_rows(
    upload_file_name: str | None,
    upload_bytes: bytes,
) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    suffix = Path(upload_file_name or "").suffix.lower()
    if suffix in {".xlsx", ".xlsm"}:
        return _parse_excel_rows(upload_bytes)
    if suffix in {"", ".csv"}:
        return _parse_csv_rows(upload_bytes)

    return [], [
        ParseFailure(index=0, raw="", error=f"不支持的文件类型: {upload_file_name or 'unknown'}")
    ]


def _parse_excel_rows(excel_bytes: bytes) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    try:
        df = pd.read_excel(BytesIO(excel_bytes), dtype=object)
    except Exception as exc:  # noqa: BLE001
        return [], [ParseFailure(index=0, raw="", error=f"Excel 解析失败: {exc}")]

    headers = {_normalize_header(col): col for col in df.columns}
    if _normalize_header(REQUIRED_EXCEL_COLUMN) not in headers:
        return [], [ParseFailure(index=0, raw="", error=f"Excel 缺少必需列: {REQUIRED_EXCEL_COLUMN}")]

    prompt_col = headers[_normalize_header(REQUIRED_EXCEL_COLUMN)]
    url_col = headers.get(_normalize_header(IMAGE_EXCEL_COLUMN))

    pairs = [
        (_to_text(row[prompt_col]), _to_text(row[url_col]) if url_col is not None else "")
        for _, row in df.iterrows()
    ]
    return _collect_rows(pairs)


def _parse_csv_rows(csv_bytes: bytes) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    table = list(csv.reader(StringIO(_decode_csv(csv_bytes))))
    if not table:
        return [], []

    headers = [_normalize_header(col) for col in table[0]]
    if REQUIRED_CSV_COLUMN not in headers:
        return [], [ParseFailure(index=0, raw="", error=f"CSV 缺少必需表头: {REQUIRED_CSV_COLUMN}")]

    prompt_col = headers.index(REQUIRED_CSV_COLUMN)
    url_col = headers.index(IMAGE_CSV_COLUMN) if IMAGE_CSV_COLUMN in headers else None

    pairs = []
    for raw in table[1:]:
        prompt = raw[prompt_col].strip() if prompt_col < len(raw) else ""
        image_url = raw[url_col].strip() if url_col is not None and url_col < len(raw) else ""
        pairs.append((prompt, image_url))
    return _collect_rows(pairs)


def _collect_rows(pairs: list[tuple[str, str]]) -> tuple[list[VideoTaskInput], list[ParseFailure]]:
    rows: list[VideoTaskInput] = []
    failures: list[ParseFailure] = []

    index = 0
    for prompt, image_url in pairs:
        if not prompt and not image_url:
            continue
        prompt = strip_list_prefix(prompt)
        error = _validate_row(prompt=prompt, image_url=image_url)
        if error:
            failures.append(ParseFailure(index=index, raw=prompt or image_url, error=error))
        else:
            rows.append(VideoTaskInput(index=index, prompt=prompt, image_url=image_url))
        index += 1

    return rows, failures


def _validate_row(prompt: str, image_url: str) -> str:
    if not prompt:
        return "提示词不能为空"
    if image_url and not is_valid_public_url(image_url):
        return "图片链接非法：仅支持公开 http/https 链接"
    return ""


def build_video_tasks(
    rows: list[VideoTaskInput],
    settings: VideoSettings,
    seeds: str = "",
) -> list[VideoTask]:
    return [
        VideoTask(
            number="",
            prompt=row.prompt,
            image_urls=[row.image_url] if row.image_url else [],
            aspect_ratio=settings.default_aspect_ratio,
            watermark=settings.default_watermark,
            callback_url=settings.default_callback,
            seeds=seeds,
            enable_fallback=settings.enable_fallback,
            enable_translation=settings.enable_translation,
        )
        for row in sorted(rows, key=lambda item: item.index)
    ]


def parse_prompt_inputs(
    text: str, csv_bytes: bytes | None
) -> tuple[list[PromptInput], list[ParseFailure]]:
    # 文本框优先：只要有至少一条非空行，就忽略 CSV
    if any(line.strip() for line in text.splitlines()):
        return _parse_prompt_text(text)
    if csv_bytes:
        return _parse_prompt_csv(csv_bytes)
    return [], []


def _parse_prompt_text(text: str) -> tuple[list[PromptInput], list[ParseFailure]]:
    rows: list[PromptInput] = []
    index = 0
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _NUMBERED_LINE.match(line)
        if match:
            rows.append(PromptInput(index=index, number=match.group(1), prompt=match.group(2).strip()))
        else:
            rows.append(PromptInput(index=index, number="", prompt=strip_list_prefix(line)))
        index += 1
    return rows, []


def _parse_prompt_csv(csv_bytes: bytes) -> tuple[list[PromptInput], list[ParseFailure]]:
    table = list(csv.reader(StringIO(_decode_csv(csv_bytes))))
    if not table:
        return [], []

    headers = [_normalize_header(col) for col in table[0]]
    if REQUIRED_CSV_COLUMN not in headers:
        return [], [ParseFailure(index=0, raw="", error=f"CSV 缺少必需表头: {REQUIRED_CSV_COLUMN}")]

    prompt_col = headers.index(REQUIRED_CSV_COLUMN)
    number_col = headers.index(NUMBER_CSV_COLUMN) if NUMBER_CSV_COLUMN in headers else None

    rows: list[PromptInput] = []
    failures: list[ParseFailure] = []
    index = 0
    for raw in table[1:]:
        if not any(cell.strip() for cell in raw):
            continue
        prompt = raw[prompt_col].strip() if prompt_col < len(raw) else ""
        number = raw[number_col].strip() if number_col is not None and number_col < len(raw) else ""
        if prompt:
            rows.append(PromptInput(index=index, number=number, prompt=prompt))
        else:
            failures.append(ParseFailure(index=index, raw=number, error="提示词不能为空"))
        index += 1
    return rows, failures
