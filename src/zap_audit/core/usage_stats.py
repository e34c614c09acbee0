from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable

import pandas as pd

from .archive import normalize_id
from .types import (
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    UNUSUAL_PATTERN,
    AuditWarning,
    HistoryTable,
    UsageStats,
)

ID_COLUMNS = ("zap_id", "automation_id")
STATUS_COLUMNS = ("status", "run_status")
ERROR_COLUMNS = ("error_message", "error")
TIMESTAMP_COLUMNS = ("timestamp", "run_at", "started_at", "date")

SUCCESS_STATUSES = frozenset({"success"})
ERROR_STATUSES = frozenset({"error", "failed", "failure"})

TREND_UP_RATIO = 1.2
TREND_DOWN_RATIO = 0.8

_SEP_RE = re.compile(r"[\s\-]+")


def normalize_header(name: str) -> str:
    return _SEP_RE.sub("_", str(name).strip().lower())


@dataclass(frozen=True)
class HistoryColumns:
    id_col: str
    status_col: str
    error_col: str | None
    timestamp_col: str | None
    ambiguous: tuple[str, ...] = ()


def _match(columns: list[str], wanted: tuple[str, ...], role: str, ambiguous: list[str]) -> str | None:
    hits = [col for col in columns if normalize_header(col) in wanted]
    if len(hits) > 1:
        ambiguous.append(f"{role}: {', '.join(hits)} (using {hits[0]})")
    return hits[0] if hits else None


def detect_history_columns(columns: Iterable[str]) -> HistoryColumns | None:
    """Map a table header onto the history roles, or None if it is not a history table."""

    cols = [str(col) for col in columns]
    ambiguous: list[str] = []
    id_col = _match(cols, ID_COLUMNS, "automation id", ambiguous)
    status_col = _match(cols, STATUS_COLUMNS, "run status", ambiguous)
    if id_col is None or status_col is None:
        return None
    return HistoryColumns(
        id_col=id_col,
        status_col=status_col,
        error_col=_match(cols, ERROR_COLUMNS, "error message", ambiguous),
        timestamp_col=_match(cols, TIMESTAMP_COLUMNS, "timestamp", ambiguous),
        ambiguous=tuple(ambiguous),
    )


@dataclass(frozen=True)
class _RunRecord:
    is_success: bool
    is_error: bool
    error_message: str | None
    timestamp: pd.Timestamp | None
    raw_timestamp: str | None


def _table_records(
    table: HistoryTable, cols: HistoryColumns
) -> list[tuple[str, _RunRecord]]:
    frame = table.frame
    ids = frame[cols.id_col].astype(str)
    statuses = frame[cols.status_col].astype(str).str.strip().str.lower()
    errors = frame[cols.error_col].astype(str) if cols.error_col else None
    raw_ts = frame[cols.timestamp_col].astype(str).str.strip() if cols.timestamp_col else None
    parsed_ts = None
    if raw_ts is not None:
        parsed_ts = pd.to_datetime(raw_ts.where(raw_ts != ""), errors="coerce", utc=True, format="mixed")

    records: list[tuple[str, _RunRecord]] = []
    for pos in range(len(frame)):
        zap_id = normalize_id(ids.iat[pos])
        if zap_id is None:
            continue
        status = statuses.iat[pos]
        is_error = status in ERROR_STATUSES
        message = None
        if is_error and errors is not None:
            message = errors.iat[pos].strip() or None
        ts_value = None
        raw_value = None
        if raw_ts is not None:
            raw_value = raw_ts.iat[pos] or None
            parsed = parsed_ts.iat[pos]
            ts_value = None if pd.isna(parsed) else parsed
        records.append(
            (
                zap_id,
                _RunRecord(
                    is_success=status in SUCCESS_STATUSES,
                    is_error=is_error,
                    error_message=message,
                    timestamp=ts_value,
                    raw_timestamp=raw_value,
                ),
            )
        )
    return records


def error_trend(flags: list[bool]) -> str | None:
    """Compare error rates of the first and second chronological halves."""

    mid = len(flags) // 2
    if mid == 0:
        return None
    first_rate = sum(flags[:mid]) / mid
    second_rate = sum(flags[mid:]) / (len(flags) - mid)
    if second_rate > first_rate * TREND_UP_RATIO:
        return TREND_INCREASING
    if second_rate < first_rate * TREND_DOWN_RATIO:
        return TREND_DECREASING
    return TREND_STABLE


def _chronological(records: list[_RunRecord]) -> list[_RunRecord]:
    if not any(rec.timestamp is not None for rec in records):
        return records
    dated = [rec for rec in records if rec.timestamp is not None]
    undated = [rec for rec in records if rec.timestamp is None]
    # sorted() is stable, so equal timestamps keep file order.
    return sorted(dated, key=lambda rec: rec.timestamp) + undated


def _last_run(records: list[_RunRecord]) -> str | None:
    stamps = [rec.timestamp for rec in records if rec.timestamp is not None]
    if stamps:
        return max(stamps).isoformat()
    raw = [rec.raw_timestamp for rec in records if rec.raw_timestamp]
    return max(raw) if raw else None


def summarize_runs(
    records: list[_RunRecord], warnings: tuple[AuditWarning, ...] = ()
) -> UsageStats:
    total = success = errors = 0
    streak = max_streak = 0
    messages: Counter[str] = Counter()
    error_flags: list[bool] = []
    for rec in _chronological(records):
        total += 1
        if rec.is_success:
            success += 1
        if rec.is_error:
            errors += 1
            streak += 1
            max_streak = max(max_streak, streak)
            if rec.error_message:
                messages[rec.error_message] += 1
        else:
            streak = 0
        error_flags.append(rec.is_error)

    most_common = messages.most_common(1)[0][0] if messages else None
    return UsageStats(
        total_runs=total,
        success_count=success,
        error_count=errors,
        error_rate=(errors / total) * 100.0 if total else None,
        error_trend=error_trend(error_flags),
        max_streak=max_streak,
        most_common_error=most_common,
        last_run=_last_run(records),
        warnings=warnings,
    )


def recognized_history_tables(tables: Iterable[HistoryTable]) -> tuple[str, ...]:
    """Names of the tables that carry execution history."""

    return tuple(
        table.name for table in tables if detect_history_columns(table.frame.columns) is not None
    )


def aggregate_usage(
    tables: Iterable[HistoryTable], logger: Callable[[str], None] | None = None
) -> dict[str, UsageStats]:
    """Per-automation usage statistics from every recognisable history table.

    Tables without an automation-id and a run-status column are ignored. Rows
    without a resolvable id are dropped.
    """

    log = logger or (lambda _msg: None)
    grouped: dict[str, list[_RunRecord]] = {}
    table_warnings: dict[str, list[AuditWarning]] = {}
    for table in tables:
        cols = detect_history_columns(table.frame.columns)
        if cols is None:
            log(f"[INFO] {table.name}: not an execution history table, skipped")
            continue
        records = _table_records(table, cols)
        dropped = len(table.frame) - len(records)
        if dropped:
            log(f"[WARN] {table.name}: dropped {dropped} row(s) without an automation id")
        ambiguity = [
            AuditWarning(UNUSUAL_PATTERN, f"Ambiguous column mapping in {table.name}: {detail}")
            for detail in cols.ambiguous
        ]
        for zap_id, record in records:
            grouped.setdefault(zap_id, []).append(record)
            if ambiguity:
                bucket = table_warnings.setdefault(zap_id, [])
                for warning in ambiguity:
                    if warning not in bucket:
                        bucket.append(warning)

    return {
        zap_id: summarize_runs(records, tuple(table_warnings.get(zap_id, ())))
        for zap_id, records in grouped.items()
    }
