from __future__ import annotations

import hashlib
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rounded(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 10)
    if isinstance(value, dict):
        return {key: _rounded(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_rounded(item) for item in value]
    return value


def json_dumps(data: Any) -> str:
    """Canonical JSON: sorted keys, floats rounded to 10 places."""

    return json.dumps(_rounded(data), ensure_ascii=False, indent=2, sort_keys=True)


def bytes_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: Any) -> None:
    """Write canonical JSON next to ``path`` and move it into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json_dumps(data), encoding="utf-8")
    os.replace(tmp_path, path)


def id_sort_key(value: str) -> tuple[int, int, str]:
    """Numeric ids order numerically and before non-numeric ids."""

    text = str(value).strip()
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


def env_path(name: str) -> Path | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    return Path(raw)
