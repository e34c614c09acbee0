from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Iterable, Sequence

from jsonschema import ValidationError, validate

from .archive import is_enabled_status
from .errors import AuditResultError
from .types import (
    HIGH,
    LEVELS,
    SCHEMA_VERSION,
    AuditResult,
    PricingResult,
    RankedOpportunity,
    WorkflowExport,
    ZapFinding,
)
from .utils import now_iso, read_json, write_json

ANALYSIS_FULL = "full"
ANALYSIS_PARTIAL = "partial"

# Keys whose values are money and must never be negative.
_FINANCIAL_SUFFIXES = ("_usd", "cost_per_task", "tier_price")


def _default_schema_path() -> Path:
    return Path(__file__).resolve().parents[1] / "schemas" / "audit_result_v1.schema.json"


def confidence_overview(findings: Iterable[ZapFinding]) -> dict[str, int]:
    counts = {level: 0 for level in LEVELS}
    for finding in findings:
        for flag in finding.flags:
            counts[flag.confidence] += 1
    return counts


def build_global_metrics(
    findings: Sequence[ZapFinding], pricing: PricingResult
) -> dict[str, Any]:
    waste_usd = float(sum(flag.monthly_savings_usd for f in findings for flag in f.flags))
    waste_tasks = 0
    if pricing.cost_per_task > 0:
        # Tolerance keeps exact multiples of the task price from flooring one short.
        waste_tasks = math.floor(waste_usd / pricing.cost_per_task + 1e-9)
    scores = [f.efficiency_score for f in findings]
    return {
        "total_zaps": len(findings),
        "active_zaps": sum(1 for f in findings if is_enabled_status(f.status)),
        "zombie_zap_count": sum(1 for f in findings if f.is_zombie),
        "total_monthly_tasks": int(sum(f.monthly_tasks for f in findings if f.monthly_tasks is not None)),
        "estimated_monthly_waste_tasks": waste_tasks,
        "estimated_monthly_waste_usd": waste_usd,
        "estimated_annual_waste_usd": waste_usd * 12.0,
        "high_severity_flag_count": sum(
            1 for f in findings for flag in f.flags if flag.severity == HIGH
        ),
        "average_efficiency_score": sum(scores) / len(scores) if scores else 100.0,
    }


def build_audit_result(
    export: WorkflowExport,
    findings: Sequence[ZapFinding],
    opportunities: Sequence[RankedOpportunity],
    pricing: PricingResult,
    plan_analysis: dict[str, Any],
    *,
    patterns: Sequence[dict[str, Any]] = (),
    app_inventory: Sequence[dict[str, Any]] = (),
    system_metrics: dict[str, Any] | None = None,
    scope: dict[str, Any] | None = None,
    generated_at: str | None = None,
) -> AuditResult:
    """Assemble and self-check the result document.

    Global metrics are reductions over ``findings`` only. The returned result
    has already passed ``validate_audit_result``.
    """

    metrics = build_global_metrics(findings, pricing)
    metadata: dict[str, Any] = {
        "generated_at": generated_at or now_iso(),
        "input_sources": {"zap_json": True, "task_csv": export.history_available},
        "source_document": export.source_name,
        "export_schema_version": export.schema_version,
        "history_tables": list(export.usage_tables),
        "pricing_assumptions": pricing.to_dict(),
        "confidence_overview": confidence_overview(findings),
        "analysis_mode": ANALYSIS_FULL if export.history_available else ANALYSIS_PARTIAL,
    }
    if scope is not None:
        metadata["scope"] = scope
    result = AuditResult(
        schema_version=SCHEMA_VERSION,
        audit_metadata=metadata,
        global_metrics=metrics,
        per_zap_findings=tuple(findings),
        opportunities_ranked=tuple(opportunities),
        plan_analysis=plan_analysis,
        patterns=tuple(patterns),
        app_inventory=tuple(app_inventory),
        system_metrics=dict(system_metrics or {}),
    )
    validate_audit_result(result)
    return result


def _walk_numbers(value: Any, path: str) -> Iterable[tuple[str, Any]]:
    if isinstance(value, dict):
        for key, item in value.items():
            yield from _walk_numbers(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            yield from _walk_numbers(item, f"{path}[{idx}]")
    elif isinstance(value, float):
        yield path, value


def validate_audit_result(
    result: AuditResult | dict[str, Any], schema_path: Path | None = None
) -> None:
    payload = result.to_dict() if isinstance(result, AuditResult) else result
    schema = read_json(schema_path or _default_schema_path())
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise AuditResultError(f"Result does not match schema at {location}: {exc.message}") from exc

    if payload.get("schema_version") != SCHEMA_VERSION:
        raise AuditResultError(
            f"Schema version not stamped: {payload.get('schema_version')!r}"
        )
    findings = payload["per_zap_findings"]
    total = payload["global_metrics"]["total_zaps"]
    if len(findings) != total:
        raise AuditResultError(
            f"Finding count mismatch: {len(findings)} findings vs {total} total_zaps"
        )
    for path, number in _walk_numbers(payload, "$"):
        if not math.isfinite(number):
            raise AuditResultError(f"Non-finite value at {path}: {number}")
        if number < 0 and path.endswith(_FINANCIAL_SUFFIXES):
            raise AuditResultError(f"Negative financial value at {path}: {number}")
    ranks = [row["rank"] for row in payload["opportunities_ranked"]]
    if ranks != list(range(1, len(ranks) + 1)):
        raise AuditResultError(f"Opportunity ranks are not 1..N: {ranks}")
    known_ids = {finding["zap_id"] for finding in findings}
    for row in payload["opportunities_ranked"]:
        if row["zap_id"] not in known_ids:
            raise AuditResultError(f"Ranked opportunity references unknown automation {row['zap_id']}")


def write_audit_result(path: Path, result: AuditResult) -> None:
    write_json(path, result.to_dict())
