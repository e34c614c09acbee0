from __future__ import annotations

import io
import json
import zipfile
from typing import Any

import pytest

from zap_audit.core.archive import decode_automation
from zap_audit.core.types import Automation

TRIGGER_SHEETS = "GoogleSheetsV2CLIAPI@2.9.1"
TRIGGER_WEBHOOK = "WebHookCLIAPI@1.0.0"
SLACK = "SlackCLIAPI@1.2.0"
GMAIL = "GoogleMailV2CLIAPI@2.1.0"
FILTER = "FilterAPI@1.0.0"
FORMATTER = "FormatterCLIAPI@1.0.0"


def make_step(
    step_id: Any,
    api: str,
    parent: Any = None,
    action: str = "",
    title: str | None = None,
    type_of: str | None = None,
) -> dict[str, Any]:
    if type_of is None:
        type_of = "read" if parent is None else "write"
    return {
        "id": step_id,
        "selected_api": api,
        "action": action,
        "title": title,
        "parent_id": parent,
        "type_of": type_of,
    }


def make_chain(zap_id: Any, apis: list[str], start: int = 1) -> list[dict[str, Any]]:
    """Linear chain of steps; the first api is the trigger."""

    steps: list[dict[str, Any]] = []
    parent = None
    for offset, api in enumerate(apis):
        step_id = int(zap_id) * 100 + start + offset
        action = "filter" if api == FILTER else ""
        steps.append(make_step(step_id, api, parent, action=action))
        parent = step_id
    return steps


def make_zap(
    zap_id: Any,
    steps: list[dict[str, Any]],
    title: str | None = "Zap",
    status: Any = "on",
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": zap_id,
        "status": status,
        "nodes": {str(step["id"]): step for step in steps},
    }
    if title is not None:
        record["title"] = title
    return record


def automation(zap_id: Any, apis: list[str], status: str = "on") -> Automation:
    return decode_automation(make_zap(zap_id, make_chain(zap_id, apis), status=status), 0)


def history_csv(rows: list[tuple[Any, str, str, str]]) -> str:
    lines = ["zap_id,status,error_message,timestamp"]
    for zap_id, status, message, stamp in rows:
        lines.append(f"{zap_id},{status},{message},{stamp}")
    return "\n".join(lines) + "\n"


def build_archive(
    zaps: list[dict[str, Any]],
    history_rows: list[tuple[Any, str, str, str]] | None = None,
    *,
    doc_name: str = "zapfile.json",
    extra: dict[str, str] | None = None,
) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        archive.writestr(doc_name, json.dumps({"metadata": {"version": "2"}, "zaps": zaps}))
        if history_rows is not None:
            archive.writestr("task_history.csv", history_csv(history_rows))
        for name, content in (extra or {}).items():
            archive.writestr(name, content)
    return buf.getvalue()


def runs(zap_id: Any, count: int, status: str = "success", message: str = "", day: int = 1) -> list[tuple[Any, str, str, str]]:
    return [(zap_id, status, message, f"2024-01-{day:02d}T00:{idx // 60:02d}:{idx % 60:02d}Z") for idx in range(count)]


def error_scenario_rows(zap_id: Any) -> list[tuple[Any, str, str, str]]:
    """100 runs: 88 successes, AuthError x8 and Timeout x4."""

    rows = runs(zap_id, 88, day=2)
    rows += runs(zap_id, 8, status="error", message="AuthError", day=3)
    rows += runs(zap_id, 4, status="error", message="Timeout", day=4)
    return rows


@pytest.fixture()
def sample_zaps() -> list[dict[str, Any]]:
    return [
        make_zap(101, make_chain(101, [TRIGGER_SHEETS, SLACK, GMAIL, FILTER]), title="Sheets to Slack"),
        make_zap(102, make_chain(102, [TRIGGER_WEBHOOK, SLACK]), title="Webhook alerts"),
        make_zap(103, make_chain(103, [TRIGGER_WEBHOOK, GMAIL]), title="Old digest"),
        make_zap(104, make_chain(104, [TRIGGER_WEBHOOK, SLACK]), title="Paused", status="off"),
    ]


@pytest.fixture()
def sample_archive(sample_zaps: list[dict[str, Any]]) -> bytes:
    rows = runs(101, 50) + error_scenario_rows(102)
    return build_archive(sample_zaps, rows)


@pytest.fixture()
def bare_archive(sample_zaps: list[dict[str, Any]]) -> bytes:
    return build_archive(sample_zaps)
