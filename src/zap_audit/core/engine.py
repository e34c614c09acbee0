from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Sequence

from .archive import attach_usage, open_archive
from .detectors import (
    DetectionContext,
    billable_steps_per_run,
    detect_plan_underutilization,
    run_detectors,
)
from .insights import (
    build_app_inventory,
    build_plan_analysis,
    build_system_metrics,
    detect_cross_automation_patterns,
    efficiency_score,
)
from .pricing import (
    BENCHMARK_USAGE,
    USAGE_BENCHMARK,
    USAGE_DECLARED,
    USAGE_MEASURED,
    normalize_plan,
    resolve_pricing,
)
from .ranking import rank_opportunities
from .report import build_audit_result
from .thresholds import AuditThresholds, load_thresholds
from .topology import Topology, build_topology
from .types import (
    HIGH,
    HIGH_COMPLEXITY,
    INCOMPLETE_DATA,
    LOW,
    MEDIUM,
    UNUSUAL_PATTERN,
    ZOMBIE_ZAP,
    AuditResult,
    AuditWarning,
    Automation,
    PricingResult,
    WorkflowExport,
    ZapFinding,
)
from .usage_stats import aggregate_usage, recognized_history_tables
from .utils import id_sort_key


@dataclass(frozen=True)
class AutomationSummary:
    zap_id: str
    title: str
    status: str
    step_count: int
    trigger_app: str | None
    last_run: str | None
    error_rate: float | None
    total_runs: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "zap_id": self.zap_id,
            "title": self.title,
            "status": self.status,
            "step_count": self.step_count,
            "trigger_app": self.trigger_app,
            "last_run": self.last_run,
            "error_rate": self.error_rate,
            "total_runs": self.total_runs,
        }


def load_export(
    archive_bytes: bytes, logger: Callable[[str], None] | None = None
) -> WorkflowExport:
    """Decode the archive and attach per-automation usage statistics."""

    export = open_archive(archive_bytes, logger=logger)
    usage = aggregate_usage(export.history_tables, logger=logger)
    export = replace(export, usage_tables=recognized_history_tables(export.history_tables))
    return attach_usage(export, usage)


def list_automations(
    archive_bytes: bytes, logger: Callable[[str], None] | None = None
) -> list[AutomationSummary]:
    export = load_export(archive_bytes, logger=logger)
    summaries: list[AutomationSummary] = []
    for zap in export.automations:
        trigger = build_topology(zap).trigger
        usage = zap.usage
        summaries.append(
            AutomationSummary(
                zap_id=zap.zap_id,
                title=zap.title,
                status=zap.status,
                step_count=len(zap.steps),
                trigger_app=trigger.app_name if trigger is not None else None,
                last_run=usage.last_run if usage is not None else None,
                error_rate=usage.error_rate if usage is not None else None,
                total_runs=usage.total_runs if usage is not None else None,
            )
        )
    return summaries


def monthly_tasks(zap: Automation, topology: Topology) -> int | None:
    """Observed runs times billable steps per run, or None without history rows."""

    if zap.usage is None or not zap.usage.has_runs:
        return None
    return zap.usage.total_runs * billable_steps_per_run(topology)


def measured_monthly_usage(
    export: WorkflowExport, topologies: dict[str, Topology]
) -> int | None:
    if not export.history_available:
        return None
    total = 0
    for zap in export.automations:
        tasks = monthly_tasks(zap, topologies[zap.zap_id])
        if tasks is not None:
            total += tasks
    return total if total > 0 else None


def resolve_usage(
    plan: str | None, usage: int | None, measured: int | None
) -> PricingResult:
    if usage is not None:
        return resolve_pricing(plan, usage, USAGE_DECLARED)
    if measured is not None:
        return resolve_pricing(plan, measured, USAGE_MEASURED)
    return resolve_pricing(plan, BENCHMARK_USAGE, USAGE_BENCHMARK)


def _degrade(level: str) -> str:
    return {HIGH: MEDIUM, MEDIUM: LOW}.get(level, LOW)


def finding_warnings(
    zap: Automation, topology: Topology, history_available: bool, thresholds: AuditThresholds
) -> tuple[AuditWarning, ...]:
    warnings = list(topology.warnings)
    if zap.usage is not None:
        warnings.extend(zap.usage.warnings)
    elif history_available:
        warnings.append(
            AuditWarning(INCOMPLETE_DATA, "No execution history rows for this automation")
        )
    else:
        warnings.append(
            AuditWarning(
                INCOMPLETE_DATA,
                "Archive has no execution history; estimates use fallback run counts",
            )
        )
    if len(zap.steps) > thresholds.high_complexity_steps:
        warnings.append(
            AuditWarning(
                HIGH_COMPLEXITY,
                f"{len(zap.steps)} steps exceeds {thresholds.high_complexity_steps}",
            )
        )
    return tuple(warnings)


def finding_confidence(
    zap: Automation, warnings: Sequence[AuditWarning], history_available: bool
) -> str:
    if zap.usage is not None and zap.usage.has_runs:
        level = HIGH
    elif history_available:
        level = MEDIUM
    else:
        level = LOW
    if any(warning.code == UNUSUAL_PATTERN for warning in warnings):
        level = _degrade(level)
    return level


def analyze_automation(
    zap: Automation, topology: Topology, ctx: DetectionContext
) -> ZapFinding:
    flags = run_detectors(zap, topology, ctx)
    warnings = finding_warnings(zap, topology, ctx.history_available, ctx.thresholds)
    billable = zap.billable_steps
    return ZapFinding(
        zap_id=zap.zap_id,
        zap_name=zap.title,
        status=zap.status,
        is_zombie=any(flag.code == ZOMBIE_ZAP for flag in flags),
        steps=len(zap.steps),
        billable_steps=billable,
        monthly_tasks=monthly_tasks(zap, topology),
        task_step_ratio=billable / len(zap.steps) if zap.steps else None,
        confidence=finding_confidence(zap, warnings, ctx.history_available),
        efficiency_score=efficiency_score(flags, ctx.thresholds),
        flags=flags,
        warnings=warnings,
    )


def _select(
    automations: Sequence[Automation], selected_ids: Iterable[Any] | None
) -> tuple[Automation, ...]:
    if selected_ids is None:
        return tuple(automations)
    wanted = {str(item).strip() for item in selected_ids}
    known = {zap.zap_id for zap in automations}
    unknown = sorted(wanted - known, key=id_sort_key)
    if unknown:
        raise ValueError(f"Unknown automation id(s): {', '.join(unknown)}")
    return tuple(zap for zap in automations if zap.zap_id in wanted)


def run_audit(
    archive_bytes: bytes,
    plan: str | None = None,
    usage: int | None = None,
    selected_ids: Iterable[Any] | None = None,
    *,
    thresholds: AuditThresholds | None = None,
    logger: Callable[[str], None] | None = None,
    generated_at: str | None = None,
    top: int | None = None,
) -> AuditResult:
    """Audit one exported archive and return the self-validated result.

    Pure with respect to its inputs: the same bytes and parameters give the
    same result apart from ``generated_at``.
    """

    log = logger or (lambda _msg: None)
    limits = thresholds or load_thresholds()
    plan_key = normalize_plan(plan)
    if usage is not None and int(usage) < 0:
        raise ValueError(f"Monthly usage must be non-negative, got {usage}")

    export = load_export(archive_bytes, logger=log)
    topologies = {zap.zap_id: build_topology(zap) for zap in export.automations}
    selected = _select(export.automations, selected_ids)

    measured = measured_monthly_usage(export, topologies)
    pricing = resolve_usage(plan_key, usage, measured)
    log(
        f"[INFO] pricing {pricing.plan} tier {pricing.tier_tasks} tasks at "
        f"${pricing.tier_price} ({pricing.usage_source} usage {pricing.actual_usage})"
    )
    if pricing.over_capacity:
        log(f"[WARN] usage {pricing.actual_usage} exceeds the largest {pricing.plan} tier")

    ctx = DetectionContext(
        pricing=pricing, thresholds=limits, history_available=export.history_available
    )
    findings = [analyze_automation(zap, topologies[zap.zap_id], ctx) for zap in selected]
    log(
        f"[INFO] analyzed {len(findings)} of {len(export.automations)} automations, "
        f"{sum(len(f.flags) for f in findings)} flag(s)"
    )

    underutilization = detect_plan_underutilization(pricing, measured, limits)
    selected_topologies = [topologies[zap.zap_id] for zap in selected]
    return build_audit_result(
        export,
        findings,
        rank_opportunities(findings, limit=top),
        pricing,
        build_plan_analysis(pricing, measured, export.automations, limits, underutilization),
        patterns=detect_cross_automation_patterns(findings, limits),
        app_inventory=build_app_inventory(selected),
        system_metrics=build_system_metrics(selected, selected_topologies, findings),
        scope={
            "total_zaps_in_account": len(export.automations),
            "analyzed_count": len(selected),
            "excluded_count": len(export.automations) - len(selected),
            "analyzed_zap_ids": [zap.zap_id for zap in selected],
        },
        generated_at=generated_at,
    )
