from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Sequence

import numpy as np

from .detectors import DETECTOR_ORDER, billable_steps_per_run, polling_app
from .pricing import capacity_floor, cheapest_tier_for
from .thresholds import AuditThresholds
from .topology import Topology
from .types import (
    ERROR_LOOP,
    FORMATTER_CHAIN,
    HIGH,
    INTERLEAVED_TRANSFORMATIONS,
    KIND_CODE,
    KIND_FILTER,
    KIND_FORMATTER,
    KIND_PATH,
    KIND_WEBHOOK,
    LATE_FILTER,
    LOW,
    MEDIUM,
    POLLING_TRIGGER,
    TASK_STEP_COST_INFLATION,
    ZOMBIE_ZAP,
    Automation,
    EfficiencyFlag,
    PricingResult,
    ZapFinding,
)

# Reporting-only conversion for pattern waste; savings use the resolved tier.
PATTERN_TASK_PRICE_USD = 0.025

_PATTERN_COPY: dict[str, tuple[str, str]] = {
    POLLING_TRIGGER: (
        "Polling Trigger Overuse",
        "Switch to instant webhook triggers where possible to reduce polling overhead",
    ),
    LATE_FILTER: (
        "Late Filter Placement",
        "Move filters immediately after the trigger to reduce tasks spent on filtered items",
    ),
    ERROR_LOOP: (
        "Widespread Error Loops",
        "Review authentication, fix configuration issues and add error handling",
    ),
    ZOMBIE_ZAP: (
        "Abandoned Automations",
        "Turn off or delete automations that no longer run",
    ),
    FORMATTER_CHAIN: (
        "Formatter Chain Explosion",
        "Collapse consecutive formatter steps into a single transform step",
    ),
    INTERLEAVED_TRANSFORMATIONS: (
        "Scattered Transformations",
        "Group transformations right after the trigger and reuse their output",
    ),
    TASK_STEP_COST_INFLATION: (
        "Step Count Inflation",
        "Consolidate action steps so each run bills fewer tasks",
    ),
}


def build_app_inventory(automations: Iterable[Automation]) -> tuple[dict[str, Any], ...]:
    counts: Counter[str] = Counter()
    names: dict[str, str] = {}
    for zap in automations:
        for step in zap.steps:
            if not step.app:
                continue
            counts[step.app] += 1
            names.setdefault(step.app, step.app_name)
    rows = [
        {"app": app, "app_name": names[app], "step_count": count}
        for app, count in counts.items()
    ]
    rows.sort(key=lambda row: (-row["step_count"], row["app_name"], row["app"]))
    return tuple(rows)


def detect_premium_features(automations: Iterable[Automation]) -> dict[str, bool]:
    features = {"paths": False, "filters": False, "webhooks": False, "custom_logic": False}
    for zap in automations:
        for step in zap.steps:
            action = step.action.lower()
            app = step.app.lower()
            if step.kind == KIND_PATH or "path" in action or "path" in app:
                features["paths"] = True
            if step.kind == KIND_FILTER:
                features["filters"] = True
            if step.kind == KIND_WEBHOOK or "webhook" in app or "webhook" in action:
                features["webhooks"] = True
            if step.kind == KIND_CODE:
                features["custom_logic"] = True
    return features


def efficiency_score(flags: Iterable[EfficiencyFlag], thresholds: AuditThresholds) -> int:
    """100 minus the configured penalty of every flag, floored at 0."""

    score = 100
    for flag in flags:
        score -= thresholds.penalty_for(flag.code, flag.severity)
    return max(score, 0)


def _pattern_severity(affected: int) -> str:
    if affected >= 8:
        return HIGH
    if affected >= 5:
        return MEDIUM
    return LOW


def detect_cross_automation_patterns(
    findings: Sequence[ZapFinding], thresholds: AuditThresholds
) -> tuple[dict[str, Any], ...]:
    """Flag codes shared by enough automations to be treated as a habit."""

    grouped: dict[str, list[tuple[str, EfficiencyFlag]]] = {}
    for finding in findings:
        for flag in finding.flags:
            grouped.setdefault(flag.code, []).append((finding.zap_id, flag))

    patterns: list[dict[str, Any]] = []
    for code, members in grouped.items():
        if len(members) < thresholds.pattern_min_affected:
            continue
        name, guidance = _PATTERN_COPY.get(
            code, (f"{code} Pattern", "Review and optimize the affected automations")
        )
        waste_usd = float(sum(flag.monthly_savings_usd for _zap_id, flag in members))
        median_chain = None
        if code == FORMATTER_CHAIN:
            lengths = [flag.meta.get("chain_length") for _zap_id, flag in members]
            lengths = [value for value in lengths if isinstance(value, int)]
            if lengths:
                median_chain = float(np.median(lengths))
        patterns.append(
            {
                "pattern_type": code,
                "pattern_name": name,
                "affected_zap_ids": [zap_id for zap_id, _flag in members],
                "affected_count": len(members),
                "median_chain_length": median_chain,
                "total_waste_tasks": int(waste_usd // PATTERN_TASK_PRICE_USD),
                "total_waste_usd": waste_usd,
                "refactor_guidance": guidance,
                "severity": _pattern_severity(len(members)),
            }
        )
    patterns.sort(
        key=lambda item: (
            -(item["affected_count"] * item["total_waste_usd"]),
            DETECTOR_ORDER.index(item["pattern_type"])
            if item["pattern_type"] in DETECTOR_ORDER
            else len(DETECTOR_ORDER),
        )
    )
    return tuple(patterns)


def _formatter_density(formatter_steps: int, total_steps: int) -> str:
    if total_steps == 0:
        return "low"
    ratio = formatter_steps / total_steps
    if ratio >= 0.3:
        return "high"
    if ratio >= 0.1:
        return "medium"
    return "low"


def build_system_metrics(
    automations: Sequence[Automation],
    topologies: Sequence[Topology],
    findings: Sequence[ZapFinding],
) -> dict[str, Any]:
    count = len(automations)
    total_steps = sum(len(zap.steps) for zap in automations)
    formatter_steps = sum(
        1 for zap in automations for step in zap.steps if step.kind == KIND_FORMATTER
    )
    per_run = [billable_steps_per_run(topo) for topo in topologies]
    polling = sum(
        1 for topo in topologies if topo.trigger is not None and polling_app(topo.trigger)
    )
    total_tasks = sum(f.monthly_tasks for f in findings if f.monthly_tasks is not None)
    return {
        "avg_steps_per_zap": total_steps / count if count else 0.0,
        "avg_tasks_per_run": float(np.mean(per_run)) if per_run else 0.0,
        "polling_trigger_count": polling,
        "instant_trigger_count": count - polling,
        "total_monthly_tasks": int(total_tasks),
        "formatter_usage_density": _formatter_density(formatter_steps, total_steps),
        "fan_out_flows": sum(1 for topo in topologies if topo.fan_out_steps > 0),
    }


def build_plan_analysis(
    pricing: PricingResult,
    measured_usage: int | None,
    automations: Iterable[Automation],
    thresholds: AuditThresholds,
    underutilization: EfficiencyFlag | None = None,
) -> dict[str, Any]:
    features = detect_premium_features(automations)
    percentile = pricing.actual_usage / pricing.tier_tasks if pricing.tier_tasks > 0 else 0.0
    basis = measured_usage if measured_usage is not None else pricing.actual_usage
    rec_tasks, rec_price = cheapest_tier_for(pricing.plan, basis)
    return {
        "current_plan": pricing.plan,
        "monthly_task_usage": pricing.actual_usage,
        "usage_source": pricing.usage_source,
        "measured_monthly_tasks": measured_usage,
        "plan_task_capacity": {
            "min": capacity_floor(pricing.plan, pricing.tier_tasks),
            "max": pricing.tier_tasks,
        },
        "tier_price_usd": pricing.tier_price,
        "cost_per_task_usd": pricing.cost_per_task,
        "usage_percentile": percentile,
        "over_capacity": pricing.over_capacity,
        "premium_features_detected": features,
        "downgrade_safe": percentile < thresholds.downgrade_safe_ratio and not features["paths"],
        "recommended_tier": {"tasks": rec_tasks, "price_usd": rec_price},
        "underutilization": underutilization.to_dict() if underutilization is not None else None,
    }
