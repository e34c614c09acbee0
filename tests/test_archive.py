from __future__ import annotations

import io
import json
import zipfile

import pytest

from zap_audit.core.archive import (
    classify_step_kind,
    decode_automation,
    open_archive,
    parse_app_name,
)
from zap_audit.core.errors import MalformedArchive
from zap_audit.core.types import KIND_FILTER, KIND_FORMATTER, ROLE_ACTION, ROLE_TRIGGER

from tests.conftest import (
    FILTER,
    FORMATTER,
    SLACK,
    TRIGGER_SHEETS,
    build_archive,
    make_chain,
    make_zap,
)


def _zip(entries: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buf.getvalue()


def test_parse_app_name_strips_version_and_suffix() -> None:
    assert parse_app_name("GoogleSheetsV2CLIAPI@2.9.1") == "Google Sheets V2"
    assert parse_app_name("WordPressAPI") == "Word Press"
    assert parse_app_name("") == ""


def test_classify_step_kind() -> None:
    assert classify_step_kind(FILTER, "filter", None) == KIND_FILTER
    assert classify_step_kind(FORMATTER, "", None) == KIND_FORMATTER
    assert classify_step_kind(SLACK, "", "Only continue if...") == "action"


def test_open_archive_decodes_nodes_map_and_history() -> None:
    zaps = [make_zap(7, make_chain(7, [TRIGGER_SHEETS, SLACK, FILTER]), title="Sync")]
    export = open_archive(build_archive(zaps, [(7, "success", "", "2024-01-01")]))
    assert export.source_name == "zapfile.json"
    assert export.schema_version == "2"
    assert [table.name for table in export.history_tables] == ["task_history.csv"]
    zap = export.automations[0]
    assert zap.zap_id == "7"
    assert zap.title == "Sync"
    assert zap.enabled
    assert [step.step_id for step in zap.steps] == ["701", "702", "703"]
    assert zap.steps[0].role == ROLE_TRIGGER
    assert zap.steps[1].role == ROLE_ACTION
    assert zap.steps[1].parent_id == "701"
    assert zap.steps[2].kind == KIND_FILTER
    assert zap.billable_steps == 1


def test_document_priority_prefers_zapfile_over_archive_order() -> None:
    legacy = json.dumps({"zaps": [{"id": 1, "name": "legacy"}]})
    current = json.dumps({"zaps": [{"id": 2, "title": "current"}]})
    export = open_archive(_zip({"export/config.json": legacy, "export/zapfile.json": current}))
    assert export.source_name == "export/zapfile.json"
    assert [zap.zap_id for zap in export.automations] == ["2"]


def test_legacy_field_aliases_and_inferred_parents() -> None:
    payload = {
        "zaps": [
            {
                "zap_id": "55",
                "name": "Old style",
                "state": "active",
                "actions": [
                    {"app": TRIGGER_SHEETS, "type": "read"},
                    {"app": SLACK},
                    {"app": FILTER, "action": "filter"},
                ],
            }
        ]
    }
    export = open_archive(_zip({"zaps.json": json.dumps(payload)}))
    zap = export.automations[0]
    assert zap.zap_id == "55"
    assert zap.title == "Old style"
    assert zap.enabled
    assert [step.parent_id for step in zap.steps] == [None, "step_0", "step_1"]
    assert zap.steps[0].role == ROLE_TRIGGER
    assert zap.steps[2].kind == KIND_FILTER
    assert not export.history_available


def test_missing_title_gets_placeholder() -> None:
    zap = decode_automation(make_zap(9, make_chain(9, [SLACK]), title=None), 0)
    assert zap.title == "Untitled Zap 9"


def test_boolean_status_is_normalized() -> None:
    zap = decode_automation(make_zap(9, make_chain(9, [SLACK]), status=True), 0)
    assert zap.status == "on"
    assert zap.enabled


def test_missing_automation_id_is_fatal() -> None:
    with pytest.raises(MalformedArchive):
        decode_automation({"title": "no id"}, 3)


def test_no_workflow_document_is_fatal() -> None:
    with pytest.raises(MalformedArchive, match="No workflow document"):
        open_archive(_zip({"readme.txt": "hello"}))


def test_invalid_zip_is_fatal() -> None:
    with pytest.raises(MalformedArchive):
        open_archive(b"not a zip file")


def test_invalid_json_is_fatal() -> None:
    with pytest.raises(MalformedArchive, match="Failed to parse"):
        open_archive(_zip({"zapfile.json": "{not json"}))


def test_root_without_zaps_list_is_fatal() -> None:
    with pytest.raises(MalformedArchive, match="zaps"):
        open_archive(_zip({"zapfile.json": json.dumps({"metadata": {}})}))


def test_unreadable_csv_is_skipped_and_logged() -> None:
    messages: list[str] = []
    zaps = [make_zap(1, make_chain(1, [SLACK]))]
    export = open_archive(build_archive(zaps, extra={"empty.csv": ""}), logger=messages.append)
    assert export.history_tables == ()
    assert any("empty.csv" in msg for msg in messages)
