from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ERROR_LOOP,
    FORMATTER_CHAIN,
    HIGH,
    INTERLEAVED_TRANSFORMATIONS,
    LATE_FILTER,
    LOW,
    MEDIUM,
    PLAN_UNDERUTILIZATION,
    POLLING_TRIGGER,
    TASK_STEP_COST_INFLATION,
    ZOMBIE_ZAP,
)
from .utils import env_path

THRESHOLDS_PATH_ENV = "ZAP_AUDIT_THRESHOLDS_PATH"


_DEFAULT_EFFORT_HOURS = {
    ERROR_LOOP: 0.5,
    LATE_FILTER: 1.0,
    POLLING_TRIGGER: 2.0,
    ZOMBIE_ZAP: 0.25,
    FORMATTER_CHAIN: 1.5,
    INTERLEAVED_TRANSFORMATIONS: 1.5,
    TASK_STEP_COST_INFLATION: 2.0,
    PLAN_UNDERUTILIZATION: 0.5,
}

_DEFAULT_SCORE_PENALTIES = {
    f"{POLLING_TRIGGER}:{MEDIUM}": 10,
    f"{LATE_FILTER}:{HIGH}": 25,
    f"{ERROR_LOOP}:{HIGH}": 30,
    f"{ERROR_LOOP}:{MEDIUM}": 20,
    f"{ZOMBIE_ZAP}:{LOW}": 5,
    f"{FORMATTER_CHAIN}:{MEDIUM}": 10,
    f"{FORMATTER_CHAIN}:{LOW}": 5,
    f"{INTERLEAVED_TRANSFORMATIONS}:{MEDIUM}": 10,
    f"{INTERLEAVED_TRANSFORMATIONS}:{LOW}": 5,
    f"{TASK_STEP_COST_INFLATION}:{MEDIUM}": 10,
    f"{TASK_STEP_COST_INFLATION}:{LOW}": 5,
}


@dataclass(frozen=True)
class AuditThresholds:
    fallback_monthly_runs: float = 500.0
    polling_overhead_rate: float = 0.20
    late_filter_fallback_rate: float = 0.30
    error_rate_threshold_pct: float = 10.0
    error_rate_high_pct: float = 50.0
    zombie_max_runs: int = 0
    formatter_chain_min_length: int = 2
    interleaved_min_groups: int = 2
    task_step_benchmark: int = 5
    underutilization_ratio: float = 0.25
    downgrade_safe_ratio: float = 0.70
    high_complexity_steps: int = 20
    pattern_min_affected: int = 3
    default_effort_hours: float = 1.0
    effort_hours: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_EFFORT_HOURS))
    score_penalties: dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_SCORE_PENALTIES))

    def effort_for(self, code: str) -> float:
        return float(self.effort_hours.get(code, self.default_effort_hours))

    def penalty_for(self, code: str, severity: str) -> int:
        return int(self.score_penalties.get(f"{code}:{severity}", 0))


DEFAULT_THRESHOLDS = AuditThresholds()


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[3] / "config" / "audit_thresholds.yaml"


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def load_thresholds(path: Path | None = None) -> AuditThresholds:
    """Load detector thresholds from YAML, falling back to built-in defaults.

    Lookup order: explicit ``path``, ``$ZAP_AUDIT_THRESHOLDS_PATH``, then the
    repository ``config/audit_thresholds.yaml``. A missing or unreadable file
    yields the defaults; an explicit path that does not exist is an error.
    """

    if path is not None and not path.exists():
        raise ValueError(f"Thresholds file not found: {path}")
    cfg_path = path or env_path(THRESHOLDS_PATH_ENV) or _default_config_path()
    payload: dict[str, Any] = {}
    if cfg_path.exists():
        try:
            parsed = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
            if isinstance(parsed, dict):
                payload = parsed
        except (OSError, yaml.YAMLError):
            payload = {}
    return thresholds_from_mapping(payload)


def thresholds_from_mapping(payload: dict[str, Any]) -> AuditThresholds:
    base = DEFAULT_THRESHOLDS
    fallbacks = _section(payload, "fallbacks")
    detectors = _section(payload, "detectors")
    plan = _section(payload, "plan")
    effort = dict(_section(payload, "effort_hours"))
    penalties = _section(payload, "score_penalties")

    default_effort = float(effort.pop("default", base.default_effort_hours))
    effort_hours = dict(base.effort_hours)
    effort_hours.update({str(k): float(v) for k, v in effort.items()})

    score_penalties = dict(base.score_penalties)
    score_penalties.update({str(k): int(v) for k, v in penalties.items()})

    return AuditThresholds(
        fallback_monthly_runs=float(fallbacks.get("monthly_runs", base.fallback_monthly_runs)),
        polling_overhead_rate=float(fallbacks.get("polling_overhead_rate", base.polling_overhead_rate)),
        late_filter_fallback_rate=float(
            fallbacks.get("late_filter_rejection_rate", base.late_filter_fallback_rate)
        ),
        error_rate_threshold_pct=float(
            detectors.get("error_rate_threshold_pct", base.error_rate_threshold_pct)
        ),
        error_rate_high_pct=float(detectors.get("error_rate_high_pct", base.error_rate_high_pct)),
        zombie_max_runs=int(detectors.get("zombie_max_runs", base.zombie_max_runs)),
        formatter_chain_min_length=int(
            detectors.get("formatter_chain_min_length", base.formatter_chain_min_length)
        ),
        interleaved_min_groups=int(detectors.get("interleaved_min_groups", base.interleaved_min_groups)),
        task_step_benchmark=int(detectors.get("task_step_benchmark", base.task_step_benchmark)),
        high_complexity_steps=int(detectors.get("high_complexity_steps", base.high_complexity_steps)),
        pattern_min_affected=int(detectors.get("pattern_min_affected", base.pattern_min_affected)),
        underutilization_ratio=float(plan.get("underutilization_ratio", base.underutilization_ratio)),
        downgrade_safe_ratio=float(plan.get("downgrade_safe_ratio", base.downgrade_safe_ratio)),
        default_effort_hours=default_effort,
        effort_hours=effort_hours,
        score_penalties=score_penalties,
    )
