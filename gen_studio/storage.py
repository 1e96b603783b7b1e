from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar

from .config import DEFAULT_CONFIG_DOCUMENT


T = TypeVar("T")

TASKS_DOC = "tasks.json"
KEYS_DOC = "keys.json"
CONFIG_DOC = "config.json"
STYLES_DOC = "styles.json"
REFERENCES_DOC = "references.json"
PROMPTS_DOC = "prompts.json"

DEFAULT_STYLE_CATEGORY = {"id": "default", "name": "默认风格", "description": "通用风格分类"}
DEFAULT_REFERENCE_CATEGORY = {"id": "default", "name": "默认参考图", "images": []}

DEFAULT_DOCUMENTS: dict[str, Any] = {
    TASKS_DOC: {"videoTasks": []},
    KEYS_DOC: {"keys": []},
    CONFIG_DOC: DEFAULT_CONFIG_DOCUMENT,
    STYLES_DOC: {"styles": [], "categories": [DEFAULT_STYLE_CATEGORY]},
    REFERENCES_DOC: {"categories": [DEFAULT_REFERENCE_CATEGORY]},
    PROMPTS_DOC: {"prompts": []},
}

# One lock per process: the dashboard thread and batch threads share it.
_WRITE_LOCK = threading.RLock()


class StoreError(RuntimeError):
    pass


class DocumentStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, name: str) -> Path:
        return self.data_dir / name

    def read(self, name: str, default: Any = None) -> Any:
        if default is None:
            if name not in DEFAULT_DOCUMENTS:
                raise KeyError(f"unknown document: {name}")
            default = DEFAULT_DOCUMENTS[name]

        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            with _WRITE_LOCK:
                if not path.exists():
                    self.write(name, default)
                    return copy.deepcopy(default)
            raw = path.read_text(encoding="utf-8")

        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError(f"数据文件损坏: {path} ({exc})") from exc

    def write(self, name: str, data: Any) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        payload = json.dumps(data, ensure_ascii=False, indent=2)

        with _WRITE_LOCK:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=self.data_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as out_file:
                    out_file.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def update(self, name: str, mutator: Callable[[Any], T]) -> T:
        """Read the latest document, let ``mutator`` edit it in place, write it back."""
        with _WRITE_LOCK:
            data = self.read(name)
            result = mutator(data)
            self.write(name, data)
            return result
