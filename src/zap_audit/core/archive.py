from __future__ import annotations

import io
import json
import zipfile
from dataclasses import replace
from typing import Any, Callable, Iterable, Mapping

import pandas as pd

from .errors import MalformedArchive
from .types import (
    KIND_ACTION,
    KIND_CODE,
    KIND_FILTER,
    KIND_FORMATTER,
    KIND_PATH,
    KIND_WEBHOOK,
    ROLE_ACTION,
    ROLE_TRIGGER,
    Automation,
    HistoryTable,
    Step,
    UsageStats,
    WorkflowExport,
)

# Highest priority first; older exports used the later names.
WORKFLOW_DOCUMENT_CANDIDATES = ("zapfile.json", "zaps.json", "config.json")

# Canonical field -> names used across export generations, newest first.
AUTOMATION_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "zap_id"),
    "title": ("title", "name"),
    "status": ("status", "state"),
}
STEP_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "node_id"),
    "type_of": ("type_of", "type"),
    "selected_api": ("selected_api", "app"),
    "action": ("action",),
    "title": ("title", "name"),
    "parent_id": ("parent_id", "parent"),
    "paused": ("paused",),
}
STEP_ARRAY_CONTAINERS = ("steps", "actions")
STEP_MAP_CONTAINERS = ("nodes",)

ENABLED_STATUSES = frozenset({"on", "enabled", "active", "running"})
UNTITLED_PREFIX = "Untitled Zap"

_MISSING = object()


def _lookup(record: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    for name in aliases:
        if name in record:
            return record[name]
    return _MISSING


def _has_any(record: Mapping[str, Any], aliases: Iterable[str]) -> bool:
    return any(name in record for name in aliases)


def normalize_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or not value.is_integer():
            return None
        return str(int(value))
    text = str(value).strip()
    return text or None


def _text(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    return str(value)


def parse_app_name(selected_api: str) -> str:
    """Human readable app name from an API identifier.

    ``"GoogleSheetsV2CLIAPI@2.9.1"`` becomes ``"Google Sheets V2"``.
    """

    base = selected_api.split("@", 1)[0]
    if base.endswith("CLIAPI"):
        base = base[: -len("CLIAPI")]
    elif base.endswith("API"):
        base = base[: -len("API")]
    out: list[str] = []
    prev_lower = False
    for ch in base:
        if ch.isupper() and prev_lower and out:
            out.append(" ")
        out.append(ch)
        prev_lower = ch.islower()
    return "".join(out)


def classify_step_kind(app: str, action: str, title: str | None) -> str:
    app_l = app.lower()
    action_l = action.lower()
    title_l = (title or "").lower()
    if "filter" in action_l or "filter" in title_l or app_l.startswith("filter"):
        return KIND_FILTER
    if "path" in action_l or app_l.startswith("branching") or "paths" in app_l:
        return KIND_PATH
    if "formatter" in app_l:
        return KIND_FORMATTER
    if "code" in app_l or "python" in app_l or "javascript" in app_l:
        return KIND_CODE
    if "webhook" in app_l or "webhook" in action_l:
        return KIND_WEBHOOK
    return KIND_ACTION


def is_enabled_status(status: Any) -> bool:
    if isinstance(status, bool):
        return status
    return str(status).strip().lower() in ENABLED_STATUSES


def _raw_steps(record: Mapping[str, Any]) -> tuple[list[tuple[str | None, dict[str, Any]]], bool]:
    """Return ``[(fallback_id, raw_step), ...]`` and whether they came from an array."""

    for name in STEP_ARRAY_CONTAINERS:
        value = record.get(name)
        if isinstance(value, list):
            return [(None, item) for item in value if isinstance(item, dict)], True
    for name in STEP_MAP_CONTAINERS:
        value = record.get(name)
        if isinstance(value, dict):
            return [(str(key), item) for key, item in value.items() if isinstance(item, dict)], False
    return [], False


def _decode_steps(record: Mapping[str, Any]) -> tuple[Step, ...]:
    raw_steps, from_array = _raw_steps(record)
    parent_alias = STEP_FIELD_ALIASES["parent_id"]
    infer_parents = from_array and not any(_has_any(raw, parent_alias) for _, raw in raw_steps)

    steps: list[Step] = []
    prev_id: str | None = None
    for index, (fallback_id, raw) in enumerate(raw_steps):
        step_id = normalize_id(_lookup(raw, STEP_FIELD_ALIASES["id"]))
        if step_id is None:
            step_id = fallback_id if fallback_id is not None else f"step_{index}"
        if infer_parents:
            parent_id = prev_id
        else:
            parent_raw = _lookup(raw, parent_alias)
            parent_id = None if parent_raw is _MISSING else normalize_id(parent_raw)
        type_raw = _text(_lookup(raw, STEP_FIELD_ALIASES["type_of"])).strip().lower()
        if type_raw == "read":
            role = ROLE_TRIGGER
        elif type_raw == "write":
            role = ROLE_ACTION
        else:
            role = ROLE_TRIGGER if parent_id is None else ROLE_ACTION
        app = _text(_lookup(raw, STEP_FIELD_ALIASES["selected_api"]))
        action = _text(_lookup(raw, STEP_FIELD_ALIASES["action"]))
        title_raw = _lookup(raw, STEP_FIELD_ALIASES["title"])
        title = None if title_raw is _MISSING or title_raw is None else str(title_raw)
        steps.append(
            Step(
                step_id=step_id,
                role=role,
                kind=classify_step_kind(app, action, title),
                app=app,
                app_name=parse_app_name(app),
                action=action,
                title=title,
                parent_id=parent_id,
                paused=bool(_lookup(raw, STEP_FIELD_ALIASES["paused"]) is True),
            )
        )
        prev_id = step_id
    return tuple(steps)


def decode_automation(record: Any, index: int) -> Automation:
    if not isinstance(record, dict):
        raise MalformedArchive(f"Automation #{index} is not an object")
    zap_id = normalize_id(_lookup(record, AUTOMATION_FIELD_ALIASES["id"]))
    if zap_id is None:
        raise MalformedArchive(f"Automation #{index} has no id")
    title_raw = _lookup(record, AUTOMATION_FIELD_ALIASES["title"])
    title = _text(title_raw).strip() or f"{UNTITLED_PREFIX} {zap_id}"
    status_raw = _lookup(record, AUTOMATION_FIELD_ALIASES["status"])
    if isinstance(status_raw, bool):
        status = "on" if status_raw else "off"
    else:
        status = _text(status_raw).strip() or "unknown"
    return Automation(
        zap_id=zap_id,
        title=title,
        status=status,
        enabled=is_enabled_status(status_raw) if status_raw is not _MISSING else False,
        steps=_decode_steps(record),
    )


def decode_workflow_document(
    payload: Any, source_name: str = "zapfile.json"
) -> WorkflowExport:
    if not isinstance(payload, dict):
        raise MalformedArchive(f"{source_name}: root must be an object")
    zaps = payload.get("zaps")
    if not isinstance(zaps, list):
        raise MalformedArchive(f"{source_name}: missing 'zaps' list")
    metadata = payload.get("metadata")
    version = None
    if isinstance(metadata, dict):
        version = metadata.get("version")
    if not version:
        version = payload.get("version")
    automations = tuple(decode_automation(record, idx) for idx, record in enumerate(zaps))
    return WorkflowExport(
        automations=automations,
        schema_version=str(version) if version else "unknown",
        source_name=source_name,
    )


def _document_priority(name: str) -> int | None:
    lower = name.lower()
    for rank, candidate in enumerate(WORKFLOW_DOCUMENT_CANDIDATES):
        if lower == candidate or lower.endswith("/" + candidate):
            return rank
    return None


def decode_history_table(raw: bytes) -> pd.DataFrame:
    frame = pd.read_csv(
        io.BytesIO(raw),
        dtype=str,
        keep_default_na=False,
        encoding="utf-8-sig",
        skipinitialspace=True,
    )
    return frame


def open_archive(
    data: bytes, logger: Callable[[str], None] | None = None
) -> WorkflowExport:
    """Decode an exported archive into a ``WorkflowExport`` with raw history tables."""

    log = logger or (lambda _msg: None)
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise MalformedArchive(f"Failed to open archive: {exc}") from exc

    with archive:
        best: tuple[int, int, str] | None = None
        csv_names: list[str] = []
        for order, info in enumerate(archive.infolist()):
            if info.is_dir():
                continue
            priority = _document_priority(info.filename)
            if priority is not None and (best is None or (priority, order) < best[:2]):
                best = (priority, order, info.filename)
            if info.filename.lower().endswith(".csv"):
                csv_names.append(info.filename)

        if best is None:
            raise MalformedArchive(
                "No workflow document found in archive. Tried: "
                + ", ".join(WORKFLOW_DOCUMENT_CANDIDATES)
            )
        source_name = best[2]
        try:
            payload = json.loads(archive.read(source_name).decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedArchive(f"Failed to parse {source_name}: {exc}") from exc
        except (zipfile.BadZipFile, OSError) as exc:
            raise MalformedArchive(f"Failed to read {source_name}: {exc}") from exc
        export = decode_workflow_document(payload, source_name)

        tables: list[HistoryTable] = []
        for name in csv_names:
            try:
                frame = decode_history_table(archive.read(name))
            except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
                log(f"[WARN] skipping unreadable table {name}: {exc}")
                continue
            except (zipfile.BadZipFile, OSError) as exc:
                log(f"[WARN] skipping unreadable entry {name}: {exc}")
                continue
            tables.append(HistoryTable(name=name, frame=frame))

    log(
        f"[INFO] decoded {len(export.automations)} automations from {source_name} "
        f"(schema {export.schema_version}), {len(tables)} table(s)"
    )
    return replace(export, history_tables=tuple(tables))


def attach_usage(export: WorkflowExport, usage: Mapping[str, UsageStats]) -> WorkflowExport:
    automations = tuple(
        replace(zap, usage=usage.get(zap.zap_id)) for zap in export.automations
    )
    return replace(export, automations=automations)
