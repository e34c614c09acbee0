from __future__ import annotations

import math
from dataclasses import replace

import pytest

from zap_audit.core.detectors import (
    DetectionContext,
    detect_error_loop,
    detect_formatter_chain,
    detect_interleaved_transformations,
    detect_late_filter,
    detect_plan_underutilization,
    detect_polling_trigger,
    detect_task_step_inflation,
    detect_zombie,
    guard_finite,
    run_detectors,
)
from zap_audit.core.errors import DetectorError
from zap_audit.core.pricing import resolve_pricing
from zap_audit.core.thresholds import DEFAULT_THRESHOLDS
from zap_audit.core.topology import build_topology
from zap_audit.core.types import (
    ERROR_LOOP,
    HIGH,
    LATE_FILTER,
    LOW,
    MEDIUM,
    POLLING_TRIGGER,
    UsageStats,
)

from tests.conftest import (
    FILTER,
    FORMATTER,
    GMAIL,
    SLACK,
    TRIGGER_SHEETS,
    TRIGGER_WEBHOOK,
    automation,
)

PRICING = resolve_pricing("professional", 2000)
COST = 49.0 / 2000


def _ctx(history: bool = True) -> DetectionContext:
    return DetectionContext(pricing=PRICING, thresholds=DEFAULT_THRESHOLDS, history_available=history)


def _usage(total: int, success: int, errors: int = 0, message: str | None = None) -> UsageStats:
    return UsageStats(
        total_runs=total,
        success_count=success,
        error_count=errors,
        error_rate=errors / total * 100.0 if total else None,
        error_trend=None,
        max_streak=0,
        most_common_error=message,
        last_run=None,
    )


def _run(detector, zap, history: bool = True):
    return detector(zap, build_topology(zap), _ctx(history))


def test_error_loop_scenario() -> None:
    zap = replace(automation(1, [TRIGGER_WEBHOOK, SLACK]), usage=_usage(100, 88, 12, "AuthError"))
    flag = _run(detect_error_loop, zap)
    assert flag is not None
    assert flag.code == ERROR_LOOP
    assert flag.severity == MEDIUM
    assert flag.confidence == HIGH
    assert flag.monthly_savings_usd == pytest.approx(12 * COST)
    assert flag.annual_savings_usd == pytest.approx(12 * COST * 12)
    assert flag.effort_hours == 0.5
    assert flag.meta["most_common_error"] == "AuthError"


def test_error_loop_severity_and_threshold_edges() -> None:
    base = automation(1, [TRIGGER_WEBHOOK, SLACK])
    assert _run(detect_error_loop, replace(base, usage=_usage(10, 4, 6))).severity == HIGH
    assert _run(detect_error_loop, replace(base, usage=_usage(100, 90, 10))) is None
    assert _run(detect_error_loop, base) is None


def test_zombie_requires_enabled_and_history() -> None:
    enabled = automation(1, [TRIGGER_WEBHOOK, SLACK])
    flag = _run(detect_zombie, enabled)
    assert flag is not None
    assert flag.confidence == MEDIUM
    assert flag.severity == LOW
    assert flag.monthly_savings_usd == 0.0
    assert _run(detect_zombie, enabled, history=False) is None
    assert _run(detect_zombie, automation(1, [TRIGGER_WEBHOOK, SLACK], status="off")) is None
    assert _run(detect_zombie, replace(enabled, usage=_usage(3, 3))) is None
    assert _run(detect_zombie, replace(enabled, usage=_usage(0, 0))).confidence == HIGH


def test_late_filter_uses_fallbacks_without_history() -> None:
    zap = automation(1, [TRIGGER_WEBHOOK, SLACK, GMAIL, FILTER])
    flag = _run(detect_late_filter, zap, history=False)
    assert flag is not None
    assert flag.code == LATE_FILTER
    assert flag.severity == HIGH
    assert flag.confidence == LOW
    assert flag.is_fallback
    assert flag.meta["billable_steps_before_filter"] == 2
    assert flag.monthly_savings_usd == pytest.approx(2 * 0.30 * COST * 500)


def test_late_filter_confidence_grows_with_real_data() -> None:
    zap = automation(1, [TRIGGER_WEBHOOK, SLACK, GMAIL, FILTER])
    no_rejects = _run(detect_late_filter, replace(zap, usage=_usage(200, 200)))
    assert no_rejects.confidence == MEDIUM
    assert no_rejects.monthly_savings_usd == pytest.approx(2 * 0.30 * COST * 200)

    observed = _run(detect_late_filter, replace(zap, usage=_usage(200, 150)))
    assert observed.confidence == HIGH
    assert not observed.is_fallback
    assert observed.monthly_savings_usd == pytest.approx(2 * 0.25 * COST * 200)


def test_filter_right_after_trigger_is_fine() -> None:
    zap = automation(1, [TRIGGER_WEBHOOK, FILTER, SLACK, GMAIL])
    assert _run(detect_late_filter, zap) is None


def test_polling_trigger() -> None:
    flag = _run(detect_polling_trigger, automation(1, [TRIGGER_SHEETS, SLACK]), history=False)
    assert flag is not None
    assert flag.code == POLLING_TRIGGER
    assert flag.confidence == LOW
    assert flag.severity == MEDIUM
    assert flag.monthly_savings_usd == pytest.approx(500 * COST * 0.20)

    with_runs = replace(automation(1, [TRIGGER_SHEETS, SLACK]), usage=_usage(40, 40))
    assert _run(detect_polling_trigger, with_runs).confidence == MEDIUM
    assert _run(detect_polling_trigger, automation(1, [TRIGGER_WEBHOOK, SLACK])) is None


def test_formatter_chain() -> None:
    zap = automation(1, [TRIGGER_WEBHOOK, FORMATTER, FORMATTER, FORMATTER, SLACK])
    flag = _run(detect_formatter_chain, zap, history=False)
    assert flag is not None
    assert flag.meta["chain_length"] == 3
    assert flag.meta["redundant_steps"] == 2
    assert flag.severity == MEDIUM
    assert flag.confidence == LOW
    assert flag.monthly_savings_usd == pytest.approx(2 * COST * 500)
    assert _run(detect_interleaved_transformations, zap) is None


def test_interleaved_transformations() -> None:
    zap = automation(1, [TRIGGER_WEBHOOK, FORMATTER, SLACK, FORMATTER, GMAIL, FORMATTER])
    flag = _run(detect_interleaved_transformations, zap)
    assert flag is not None
    assert flag.meta["transformation_groups"] == 3
    assert flag.meta["redundant_steps"] == 2
    assert _run(detect_formatter_chain, zap) is None
    assert _run(detect_task_step_inflation, zap) is None


def test_task_step_inflation() -> None:
    seven = automation(1, [TRIGGER_WEBHOOK] + [SLACK] * 7)
    flag = _run(detect_task_step_inflation, seven)
    assert flag.meta["redundant_steps"] == 2
    assert flag.severity == MEDIUM
    six = automation(1, [TRIGGER_WEBHOOK] + [SLACK] * 6)
    assert _run(detect_task_step_inflation, six).severity == LOW
    five = automation(1, [TRIGGER_WEBHOOK] + [SLACK] * 5)
    assert _run(detect_task_step_inflation, five) is None


def test_run_detectors_keeps_registry_order() -> None:
    zap = replace(
        automation(1, [TRIGGER_SHEETS, SLACK, GMAIL, FILTER]),
        usage=_usage(50, 20, 30, "Timeout"),
    )
    codes = [flag.code for flag in run_detectors(zap, build_topology(zap), _ctx())]
    assert codes == [LATE_FILTER, POLLING_TRIGGER, ERROR_LOOP]


def test_guard_finite() -> None:
    assert guard_finite(1.5, "x") == 1.5
    with pytest.raises(DetectorError):
        guard_finite(math.nan, "x")
    with pytest.raises(DetectorError):
        guard_finite(math.inf, "x")
    with pytest.raises(DetectorError):
        guard_finite(-0.01, "x")


def test_plan_underutilization() -> None:
    pricing = resolve_pricing("professional", 20_000)
    flag = detect_plan_underutilization(pricing, 1000, DEFAULT_THRESHOLDS)
    assert flag is not None
    assert flag.monthly_savings_usd == 0.0
    assert flag.meta["recommended_tier_tasks"] == 1500
    assert flag.meta["potential_monthly_savings_usd"] == pytest.approx(189.0 - 39.0)
    assert flag.severity == MEDIUM
    assert detect_plan_underutilization(pricing, None, DEFAULT_THRESHOLDS) is None
    assert detect_plan_underutilization(pricing, 10_000, DEFAULT_THRESHOLDS) is None
