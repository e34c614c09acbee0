from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd


SCHEMA_VERSION = "1.0.0"

ROLE_TRIGGER = "trigger"
ROLE_ACTION = "action"

KIND_FILTER = "filter"
KIND_PATH = "path"
KIND_FORMATTER = "formatter"
KIND_CODE = "code"
KIND_WEBHOOK = "webhook"
KIND_ACTION = "action"

# Steps of these kinds are not billed as tasks by the platform.
NON_BILLABLE_KINDS = frozenset({KIND_FILTER, KIND_PATH})

HIGH = "High"
MEDIUM = "Medium"
LOW = "Low"
LEVELS = (HIGH, MEDIUM, LOW)

ZOMBIE_ZAP = "ZOMBIE_ZAP"
LATE_FILTER = "LATE_FILTER"
POLLING_TRIGGER = "POLLING_TRIGGER"
ERROR_LOOP = "ERROR_LOOP"
FORMATTER_CHAIN = "FORMATTER_CHAIN"
INTERLEAVED_TRANSFORMATIONS = "INTERLEAVED_TRANSFORMATIONS"
TASK_STEP_COST_INFLATION = "TASK_STEP_COST_INFLATION"
PLAN_UNDERUTILIZATION = "PLAN_UNDERUTILIZATION"
FLAG_CODES = (
    ZOMBIE_ZAP,
    LATE_FILTER,
    POLLING_TRIGGER,
    ERROR_LOOP,
    FORMATTER_CHAIN,
    INTERLEAVED_TRANSFORMATIONS,
    TASK_STEP_COST_INFLATION,
    PLAN_UNDERUTILIZATION,
)

INCOMPLETE_DATA = "INCOMPLETE_DATA"
UNUSUAL_PATTERN = "UNUSUAL_PATTERN"
HIGH_COMPLEXITY = "HIGH_COMPLEXITY"
WARNING_CODES = (INCOMPLETE_DATA, UNUSUAL_PATTERN, HIGH_COMPLEXITY)

TREND_INCREASING = "increasing"
TREND_STABLE = "stable"
TREND_DECREASING = "decreasing"


@dataclass(frozen=True)
class AuditWarning:
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class Step:
    step_id: str
    role: str
    kind: str
    app: str
    app_name: str
    action: str
    title: str | None
    parent_id: str | None
    paused: bool = False

    @property
    def is_billable(self) -> bool:
        return self.role == ROLE_ACTION and self.kind not in NON_BILLABLE_KINDS


@dataclass(frozen=True)
class UsageStats:
    total_runs: int
    success_count: int
    error_count: int
    error_rate: float | None
    error_trend: str | None
    max_streak: int
    most_common_error: str | None
    last_run: str | None
    warnings: tuple[AuditWarning, ...] = ()

    @property
    def has_runs(self) -> bool:
        return self.total_runs > 0


@dataclass(frozen=True)
class Automation:
    zap_id: str
    title: str
    status: str
    enabled: bool
    steps: tuple[Step, ...]
    usage: UsageStats | None = None

    @property
    def billable_steps(self) -> int:
        return sum(1 for step in self.steps if step.is_billable)


@dataclass(frozen=True)
class HistoryTable:
    name: str
    frame: pd.DataFrame = field(compare=False)


@dataclass(frozen=True)
class WorkflowExport:
    automations: tuple[Automation, ...]
    schema_version: str
    source_name: str
    history_tables: tuple[HistoryTable, ...] = ()
    usage_tables: tuple[str, ...] = ()

    @property
    def history_available(self) -> bool:
        return bool(self.usage_tables)


@dataclass(frozen=True)
class PricingResult:
    plan: str
    tier_tasks: int
    tier_price: float
    cost_per_task: float
    actual_usage: int
    usage_source: str = "declared"
    over_capacity: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "tier_tasks": self.tier_tasks,
            "tier_price": self.tier_price,
            "cost_per_task": self.cost_per_task,
            "actual_usage": self.actual_usage,
            "usage_source": self.usage_source,
            "over_capacity": self.over_capacity,
        }


@dataclass(frozen=True)
class EfficiencyFlag:
    code: str
    severity: str
    confidence: str
    monthly_savings_usd: float
    annual_savings_usd: float
    effort_hours: float
    is_fallback: bool
    meta: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity,
            "confidence": self.confidence,
            "impact": {
                "estimated_monthly_savings_usd": self.monthly_savings_usd,
                "estimated_annual_savings_usd": self.annual_savings_usd,
            },
            "implementation": {"estimated_effort_hours": self.effort_hours},
            "is_fallback": self.is_fallback,
            "meta": dict(self.meta),
        }


@dataclass(frozen=True)
class ZapFinding:
    zap_id: str
    zap_name: str
    status: str
    is_zombie: bool
    steps: int
    billable_steps: int
    monthly_tasks: int | None
    task_step_ratio: float | None
    confidence: str
    efficiency_score: int
    flags: tuple[EfficiencyFlag, ...]
    warnings: tuple[AuditWarning, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "zap_id": self.zap_id,
            "zap_name": self.zap_name,
            "status": self.status,
            "is_zombie": self.is_zombie,
            "metrics": {
                "steps": self.steps,
                "billable_steps": self.billable_steps,
                "monthly_tasks": self.monthly_tasks,
                "task_step_ratio": self.task_step_ratio,
            },
            "confidence": self.confidence,
            "efficiency_score": self.efficiency_score,
            "flags": [flag.to_dict() for flag in self.flags],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


@dataclass(frozen=True)
class RankedOpportunity:
    zap_id: str
    flag_code: str
    monthly_savings_usd: float
    confidence: str
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "zap_id": self.zap_id,
            "flag_code": self.flag_code,
            "estimated_monthly_savings_usd": self.monthly_savings_usd,
            "confidence": self.confidence,
            "rank": self.rank,
        }


@dataclass(frozen=True)
class AuditResult:
    schema_version: str
    audit_metadata: dict[str, Any]
    global_metrics: dict[str, Any]
    per_zap_findings: tuple[ZapFinding, ...]
    opportunities_ranked: tuple[RankedOpportunity, ...]
    plan_analysis: dict[str, Any]
    patterns: tuple[dict[str, Any], ...] = ()
    app_inventory: tuple[dict[str, Any], ...] = ()
    system_metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "audit_metadata": self.audit_metadata,
            "global_metrics": self.global_metrics,
            "per_zap_findings": [finding.to_dict() for finding in self.per_zap_findings],
            "opportunities_ranked": [opp.to_dict() for opp in self.opportunities_ranked],
            "plan_analysis": self.plan_analysis,
            "patterns": list(self.patterns),
            "app_inventory": list(self.app_inventory),
            "system_metrics": self.system_metrics,
        }
