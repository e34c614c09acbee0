from __future__ import annotations

import copy
import json
import math
from pathlib import Path

import pytest

from zap_audit.core.engine import run_audit
from zap_audit.core.errors import AuditResultError
from zap_audit.core.report import validate_audit_result, write_audit_result


@pytest.fixture()
def payload(sample_archive: bytes) -> dict:
    return run_audit(sample_archive, generated_at="2024-06-01T00:00:00+00:00").to_dict()


def test_valid_payload_passes(payload: dict) -> None:
    validate_audit_result(payload)


def test_finding_count_mismatch_fails_loudly(payload: dict) -> None:
    broken = copy.deepcopy(payload)
    broken["global_metrics"]["total_zaps"] += 1
    with pytest.raises(AuditResultError, match="Finding count mismatch"):
        validate_audit_result(broken)


def test_nan_financial_value_fails(payload: dict) -> None:
    broken = copy.deepcopy(payload)
    broken["global_metrics"]["estimated_monthly_waste_usd"] = math.nan
    with pytest.raises(AuditResultError, match="Non-finite"):
        validate_audit_result(broken)


def test_negative_savings_fails(payload: dict) -> None:
    broken = copy.deepcopy(payload)
    broken["opportunities_ranked"][0]["estimated_monthly_savings_usd"] = -1.0
    with pytest.raises(AuditResultError):
        validate_audit_result(broken)


def test_schema_version_must_be_stamped(payload: dict) -> None:
    broken = copy.deepcopy(payload)
    broken["schema_version"] = "0.9.0"
    with pytest.raises(AuditResultError):
        validate_audit_result(broken)


def test_ranks_must_be_contiguous(payload: dict) -> None:
    broken = copy.deepcopy(payload)
    broken["opportunities_ranked"][0]["rank"] = 7
    with pytest.raises(AuditResultError, match="ranks"):
        validate_audit_result(broken)


def test_write_audit_result_round_trips(sample_archive: bytes, tmp_path: Path) -> None:
    result = run_audit(sample_archive)
    out = tmp_path / "out" / "audit.json"
    write_audit_result(out, result)
    loaded = json.loads(out.read_text(encoding="utf-8"))
    assert loaded["schema_version"] == "1.0.0"
    assert len(loaded["per_zap_findings"]) == loaded["global_metrics"]["total_zaps"]
    validate_audit_result(loaded)
