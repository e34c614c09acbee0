from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from .errors import DetectorError
from .pricing import cheapest_tier_for
from .thresholds import AuditThresholds
from .topology import Topology
from .types import (
    ERROR_LOOP,
    FORMATTER_CHAIN,
    HIGH,
    INTERLEAVED_TRANSFORMATIONS,
    KIND_FILTER,
    KIND_FORMATTER,
    LATE_FILTER,
    LOW,
    MEDIUM,
    PLAN_UNDERUTILIZATION,
    POLLING_TRIGGER,
    ROLE_TRIGGER,
    TASK_STEP_COST_INFLATION,
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    ZOMBIE_ZAP,
    Automation,
    EfficiencyFlag,
    PricingResult,
    Step,
)

# Trigger apps that check their source on an interval instead of receiving pushes.
POLLING_APPS = (
    "RSS",
    "WordPress",
    "GoogleSheets",
    "GoogleForms",
    "Airtable",
    "Excel",
    "Dropbox",
    "GoogleDrive",
    "OneDrive",
    "MySQL",
    "PostgreSQL",
    "SQLServer",
    "MongoDB",
)

_TREND_NOTES = {
    TREND_INCREASING: "Error rate is increasing over time, indicating a worsening issue.",
    TREND_DECREASING: "Error rate is decreasing, showing signs of improvement.",
    TREND_STABLE: "Error rate has remained stable.",
}


@dataclass(frozen=True)
class DetectionContext:
    pricing: PricingResult
    thresholds: AuditThresholds
    history_available: bool


Detector = Callable[[Automation, Topology, DetectionContext], "EfficiencyFlag | None"]


def guard_finite(value: float, label: str) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise DetectorError(f"{label} is not finite: {value}")
    if value < 0:
        raise DetectorError(f"{label} is negative: {value}")
    return value


def _flag(
    code: str,
    severity: str,
    confidence: str,
    monthly_savings: float,
    is_fallback: bool,
    ctx: DetectionContext,
    meta: dict[str, Any],
) -> EfficiencyFlag:
    monthly = guard_finite(monthly_savings, f"{code} monthly savings")
    return EfficiencyFlag(
        code=code,
        severity=severity,
        confidence=confidence,
        monthly_savings_usd=monthly,
        annual_savings_usd=monthly * 12.0,
        effort_hours=ctx.thresholds.effort_for(code),
        is_fallback=is_fallback,
        meta=meta,
    )


def monthly_runs(zap: Automation, ctx: DetectionContext) -> tuple[float, bool]:
    """Observed monthly runs when history exists, else the fallback estimate."""

    usage = zap.usage
    if usage is not None and usage.has_runs:
        return float(usage.total_runs), True
    return float(ctx.thresholds.fallback_monthly_runs), False


def billable_steps_per_run(topology: Topology) -> int:
    """Billable steps on the longest-billing path; one run follows one path."""

    return max(
        (sum(1 for step in chain if step.is_billable) for chain in topology.chains),
        default=0,
    )


def _runs_phrase(runs: float, real: bool) -> str:
    if real:
        return f"{int(runs)} observed runs"
    return f"~{int(runs)} estimated monthly runs (no execution data)"


def detect_zombie(zap: Automation, topology: Topology, ctx: DetectionContext) -> EfficiencyFlag | None:
    """Enabled automation that did not run in the observed window."""

    if not zap.enabled:
        return None
    usage = zap.usage
    if usage is not None:
        if usage.total_runs > ctx.thresholds.zombie_max_runs:
            return None
        confidence = HIGH
        observed = usage.total_runs
    elif ctx.history_available:
        # The history export covers the account; no rows means no runs.
        confidence = MEDIUM
        observed = 0
    else:
        return None
    return _flag(
        ZOMBIE_ZAP,
        LOW,
        confidence,
        0.0,
        False,
        ctx,
        {
            "message": "Automation is enabled but not executing",
            "details": (
                f"This automation is '{zap.status}' but recorded {observed} run(s) in the "
                "exported history. Turn it off or remove it if it is no longer needed."
            ),
            "observed_runs": observed,
            "savings_explanation": "No task savings; removes maintenance and review overhead",
        },
    )


def _late_filter_position(chain: tuple[Step, ...]) -> tuple[int, int] | None:
    for index, step in enumerate(chain):
        if step.kind != KIND_FILTER:
            continue
        if index <= 1:
            return None
        billable_before = sum(1 for prev in chain[1:index] if prev.is_billable)
        if billable_before == 0:
            return None
        return index, billable_before
    return None


def detect_late_filter(zap: Automation, topology: Topology, ctx: DetectionContext) -> EfficiencyFlag | None:
    """Filter step placed after billable actions instead of right after the trigger."""

    best: tuple[int, int] | None = None
    for chain in topology.chains:
        found = _late_filter_position(chain)
        if found is not None and (best is None or found[1] > best[1]):
            best = found
    if best is None:
        return None
    index, billable_before = best

    runs, runs_real = monthly_runs(zap, ctx)
    usage = zap.usage
    rejection_real = False
    rejection_rate = ctx.thresholds.late_filter_fallback_rate
    if runs_real and usage is not None:
        rejected = usage.total_runs - usage.success_count
        if rejected > 0:
            rejection_rate = rejected / usage.total_runs
            rejection_real = True

    if runs_real and rejection_real:
        confidence = HIGH
    elif runs_real or rejection_real:
        confidence = MEDIUM
    else:
        confidence = LOW

    cost = ctx.pricing.cost_per_task
    savings = billable_before * rejection_rate * cost * runs
    rate_label = "observed" if rejection_real else "assumed"
    return _flag(
        LATE_FILTER,
        HIGH,
        confidence,
        savings,
        not (runs_real and rejection_real),
        ctx,
        {
            "message": "Filter is placed too late in the workflow",
            "details": (
                f"Filter at step #{index + 1} has {billable_before} billable action step(s) "
                "before it. Moving it right after the trigger stops those actions from "
                "running for items the filter rejects."
            ),
            "filter_position": index + 1,
            "billable_steps_before_filter": billable_before,
            "rejection_rate": rejection_rate,
            "savings_explanation": (
                f"${cost:.4f} per task x {billable_before} step(s) x "
                f"{rejection_rate * 100:.0f}% {rate_label} rejection x {_runs_phrase(runs, runs_real)}"
            ),
        },
    )


def polling_app(step: Step) -> str | None:
    compact = step.app_name.replace(" ", "")
    for app in POLLING_APPS:
        if app in compact:
            return app
    return None


def detect_polling_trigger(zap: Automation, topology: Topology, ctx: DetectionContext) -> EfficiencyFlag | None:
    """Trigger app polls on an interval instead of receiving instant events."""

    trigger = topology.trigger
    if trigger is None or trigger.role != ROLE_TRIGGER:
        return None
    app = polling_app(trigger)
    if app is None:
        return None
    runs, runs_real = monthly_runs(zap, ctx)
    overhead = ctx.thresholds.polling_overhead_rate
    cost = ctx.pricing.cost_per_task
    savings = runs * cost * overhead
    return _flag(
        POLLING_TRIGGER,
        MEDIUM,
        MEDIUM if runs_real else LOW,
        savings,
        not runs_real,
        ctx,
        {
            "message": f"Uses polling trigger: {trigger.app_name}",
            "details": (
                f"The trigger '{trigger.app_name}' checks for new data on an interval. "
                "Consider an instant (webhook) trigger for real-time processing and "
                "lower task consumption."
            ),
            "trigger_app": trigger.app_name,
            "polling_overhead_rate": overhead,
            "savings_explanation": (
                f"{_runs_phrase(runs, runs_real)} x ${cost:.4f} per task x "
                f"{overhead * 100:.0f}% assumed polling overhead"
            ),
        },
    )


def detect_error_loop(zap: Automation, topology: Topology, ctx: DetectionContext) -> EfficiencyFlag | None:
    """Failure rate above threshold on real execution records."""

    usage = zap.usage
    if usage is None or not usage.has_runs or usage.error_rate is None:
        return None
    limits = ctx.thresholds
    if usage.error_rate <= limits.error_rate_threshold_pct:
        return None
    severity = HIGH if usage.error_rate > limits.error_rate_high_pct else MEDIUM
    cost = ctx.pricing.cost_per_task

    details = [
        f"{usage.error_count} errors out of {usage.total_runs} runs "
        f"({usage.error_rate:.1f}% error rate)."
    ]
    if usage.error_trend in _TREND_NOTES:
        details.append(_TREND_NOTES[usage.error_trend])
    if usage.max_streak > 3:
        details.append(f"Longest consecutive failure streak: {usage.max_streak} runs.")
    if usage.most_common_error:
        details.append(f"Most common error: '{usage.most_common_error}'.")
    details.append(
        "Review recent error logs for authentication, configuration or data-format "
        "problems to stop wasting tasks on failed runs."
    )
    return _flag(
        ERROR_LOOP,
        severity,
        HIGH,
        usage.error_count * cost,
        False,
        ctx,
        {
            "message": f"High error rate detected: {usage.error_rate:.1f}%",
            "details": " ".join(details),
            "error_rate": usage.error_rate,
            "error_count": usage.error_count,
            "most_common_error": usage.most_common_error,
            "error_trend": usage.error_trend,
            "max_streak": usage.max_streak,
            "savings_explanation": f"{usage.error_count} failed runs x ${cost:.4f} per task",
        },
    )


def longest_formatter_run(chain: tuple[Step, ...]) -> int:
    longest = current = 0
    for step in chain:
        if step.kind == KIND_FORMATTER:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def formatter_groups(chain: tuple[Step, ...]) -> int:
    """Formatter groups separated by at least one billable non-formatter action."""

    groups = 0
    in_group = False
    separated = True
    for step in chain[1:]:
        if step.kind == KIND_FORMATTER:
            if not in_group and separated:
                groups += 1
                separated = False
            in_group = True
        else:
            in_group = False
            if step.is_billable:
                separated = True
    return groups


def _structural_flag(
    code: str,
    redundant: int,
    zap: Automation,
    ctx: DetectionContext,
    meta: dict[str, Any],
) -> EfficiencyFlag:
    runs, runs_real = monthly_runs(zap, ctx)
    cost = ctx.pricing.cost_per_task
    meta = dict(meta)
    meta["redundant_steps"] = redundant
    meta["savings_explanation"] = (
        f"{redundant} redundant step(s) x ${cost:.4f} per task x {_runs_phrase(runs, runs_real)}"
    )
    return _flag(
        code,
        MEDIUM if redundant >= 2 else LOW,
        MEDIUM if runs_real else LOW,
        redundant * cost * runs,
        not runs_real,
        ctx,
        meta,
    )


def detect_formatter_chain(zap: Automation, topology: Topology, ctx: DetectionContext) -> EfficiencyFlag | None:
    """Consecutive transform-only steps that could be one step."""

    length = max((longest_formatter_run(chain) for chain in topology.chains), default=0)
    if length < ctx.thresholds.formatter_chain_min_length:
        return None
    return _structural_flag(
        FORMATTER_CHAIN,
        length - 1,
        zap,
        ctx,
        {
            "message": f"{length} formatter steps in a row",
            "details": "Consecutive formatter steps can usually be merged into one code or formatter step.",
            "chain_length": length,
        },
    )


def detect_interleaved_transformations(
    zap: Automation, topology: Topology, ctx: DetectionContext
) -> EfficiencyFlag | None:
    """Transformations scattered between actions instead of grouped up front."""

    groups = max((formatter_groups(chain) for chain in topology.chains), default=0)
    if groups < ctx.thresholds.interleaved_min_groups:
        return None
    return _structural_flag(
        INTERLEAVED_TRANSFORMATIONS,
        groups - 1,
        zap,
        ctx,
        {
            "message": f"Transformations split across {groups} places in the workflow",
            "details": "Group data transformations right after the trigger so later actions reuse them.",
            "transformation_groups": groups,
        },
    )


def detect_task_step_inflation(
    zap: Automation, topology: Topology, ctx: DetectionContext
) -> EfficiencyFlag | None:
    """Billable steps per run above the benchmark."""

    billable = billable_steps_per_run(topology)
    benchmark = ctx.thresholds.task_step_benchmark
    if billable <= benchmark:
        return None
    return _structural_flag(
        TASK_STEP_COST_INFLATION,
        billable - benchmark,
        zap,
        ctx,
        {
            "message": f"{billable} billable steps per run (benchmark {benchmark})",
            "details": "Each run bills every action step; consolidate or remove steps that do not add value.",
            "billable_steps_per_run": billable,
            "benchmark": benchmark,
        },
    )


DEFAULT_DETECTORS: tuple[Detector, ...] = (
    detect_zombie,
    detect_late_filter,
    detect_polling_trigger,
    detect_error_loop,
    detect_formatter_chain,
    detect_interleaved_transformations,
    detect_task_step_inflation,
)

# Tie-break order for ranking; follows the registry.
DETECTOR_ORDER = (
    ZOMBIE_ZAP,
    LATE_FILTER,
    POLLING_TRIGGER,
    ERROR_LOOP,
    FORMATTER_CHAIN,
    INTERLEAVED_TRANSFORMATIONS,
    TASK_STEP_COST_INFLATION,
    PLAN_UNDERUTILIZATION,
)


def run_detectors(
    zap: Automation,
    topology: Topology,
    ctx: DetectionContext,
    detectors: tuple[Detector, ...] = DEFAULT_DETECTORS,
) -> tuple[EfficiencyFlag, ...]:
    flags: list[EfficiencyFlag] = []
    for fn in detectors:
        flag = fn(zap, topology, ctx)
        if flag is not None:
            flags.append(flag)
    return tuple(flags)


def detect_plan_underutilization(
    pricing: PricingResult,
    measured_usage: int | None,
    thresholds: AuditThresholds,
) -> EfficiencyFlag | None:
    """Measured usage far below the resolved tier while a cheaper tier would fit."""

    if measured_usage is None or pricing.tier_tasks <= 0:
        return None
    ratio = measured_usage / pricing.tier_tasks
    if ratio >= thresholds.underutilization_ratio:
        return None
    capacity, price = cheapest_tier_for(pricing.plan, measured_usage)
    if price >= pricing.tier_price:
        return None
    delta = guard_finite(pricing.tier_price - price, "plan downgrade delta")
    return EfficiencyFlag(
        code=PLAN_UNDERUTILIZATION,
        severity=MEDIUM if ratio < thresholds.underutilization_ratio / 2 else LOW,
        confidence=HIGH,
        monthly_savings_usd=0.0,
        annual_savings_usd=0.0,
        effort_hours=thresholds.effort_for(PLAN_UNDERUTILIZATION),
        is_fallback=False,
        meta={
            "message": f"Using {ratio * 100:.1f}% of the {pricing.tier_tasks:,}-task tier",
            "measured_usage": measured_usage,
            "usage_ratio": ratio,
            "recommended_tier_tasks": capacity,
            "recommended_tier_price": price,
            "potential_monthly_savings_usd": delta,
            "potential_annual_savings_usd": delta * 12.0,
        },
    )
