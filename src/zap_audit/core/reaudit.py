from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .pricing import USAGE_DECLARED
from .types import AuditResult
from .utils import bytes_sha256, read_json, write_json

METADATA_VERSION = "1.0.0"


@dataclass(frozen=True)
class PricingSnapshot:
    plan_type: str
    tier_tasks: int
    tier_price: float
    price_per_task: float
    actual_usage: int
    usage_source: str = USAGE_DECLARED

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_type": self.plan_type,
            "tier_tasks": self.tier_tasks,
            "tier_price": self.tier_price,
            "price_per_task": self.price_per_task,
            "actual_usage": self.actual_usage,
            "usage_source": self.usage_source,
        }


@dataclass(frozen=True)
class ReAuditMetadata:
    """What a later run needs to reproduce or compare against this audit.

    ``report_id`` and ``report_code`` are assigned by the caller; the engine
    keeps no counters of its own.
    """

    generation_timestamp: str
    pricing_snapshot: PricingSnapshot
    zap_ids_analyzed: tuple[str, ...]
    file_hash: str
    metadata_version: str = METADATA_VERSION
    report_id: int | None = None
    report_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "report_code": self.report_code,
            "generation_timestamp": self.generation_timestamp,
            "pricing_snapshot": self.pricing_snapshot.to_dict(),
            "zap_ids_analyzed": list(self.zap_ids_analyzed),
            "file_hash": self.file_hash,
            "metadata_version": self.metadata_version,
        }


def build_reaudit_metadata(
    result: AuditResult,
    archive_bytes: bytes,
    *,
    report_id: int | None = None,
    report_code: str | None = None,
) -> ReAuditMetadata:
    pricing = result.audit_metadata["pricing_assumptions"]
    return ReAuditMetadata(
        generation_timestamp=str(result.audit_metadata["generated_at"]),
        pricing_snapshot=PricingSnapshot(
            plan_type=str(pricing["plan"]),
            tier_tasks=int(pricing["tier_tasks"]),
            tier_price=float(pricing["tier_price"]),
            price_per_task=float(pricing["cost_per_task"]),
            actual_usage=int(pricing["actual_usage"]),
            usage_source=str(pricing["usage_source"]),
        ),
        zap_ids_analyzed=tuple(finding.zap_id for finding in result.per_zap_findings),
        file_hash=bytes_sha256(archive_bytes),
        report_id=report_id,
        report_code=report_code,
    )


def reaudit_metadata_from_dict(payload: Any) -> ReAuditMetadata:
    if not isinstance(payload, dict):
        raise ValueError("Re-audit metadata must be an object")
    version = payload.get("metadata_version")
    if version != METADATA_VERSION:
        raise ValueError(
            f"Unsupported re-audit metadata version: {version!r} (expected {METADATA_VERSION})"
        )
    missing = [
        key
        for key in ("generation_timestamp", "pricing_snapshot", "zap_ids_analyzed", "file_hash")
        if key not in payload
    ]
    if missing:
        raise ValueError(f"Re-audit metadata missing fields: {', '.join(missing)}")
    ids = payload["zap_ids_analyzed"]
    if not isinstance(ids, list):
        raise ValueError("zap_ids_analyzed must be a list")
    snap = payload["pricing_snapshot"]
    if not isinstance(snap, dict):
        raise ValueError("pricing_snapshot must be an object")
    try:
        snapshot = PricingSnapshot(
            plan_type=str(snap["plan_type"]),
            tier_tasks=int(snap["tier_tasks"]),
            tier_price=float(snap["tier_price"]),
            price_per_task=float(snap["price_per_task"]),
            actual_usage=int(snap.get("actual_usage", snap["tier_tasks"])),
            usage_source=str(snap.get("usage_source", USAGE_DECLARED)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid pricing_snapshot: {exc}") from exc
    report_id = payload.get("report_id")
    return ReAuditMetadata(
        generation_timestamp=str(payload["generation_timestamp"]),
        pricing_snapshot=snapshot,
        zap_ids_analyzed=tuple(str(item) for item in ids),
        file_hash=str(payload["file_hash"]),
        metadata_version=version,
        report_id=int(report_id) if report_id is not None else None,
        report_code=payload.get("report_code"),
    )


def pricing_params_from_reaudit(meta: ReAuditMetadata) -> tuple[str, int | None]:
    """``(plan, usage)`` that reproduce the earlier pricing on resubmission.

    Usage is only returned when the earlier run was given it explicitly.
    Measured and benchmark usage come back as ``None`` so the same archive
    resolves to the same figure and the same ``usage_source``.
    """

    snap = meta.pricing_snapshot
    if snap.usage_source != USAGE_DECLARED:
        return snap.plan_type, None
    return snap.plan_type, snap.actual_usage


def verify_archive(meta: ReAuditMetadata, archive_bytes: bytes) -> bool:
    return bytes_sha256(archive_bytes) == meta.file_hash


def write_reaudit_metadata(path: Path, meta: ReAuditMetadata) -> None:
    write_json(path, meta.to_dict())


def read_reaudit_metadata(path: Path) -> ReAuditMetadata:
    return reaudit_metadata_from_dict(read_json(path))
