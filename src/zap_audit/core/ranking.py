from __future__ import annotations

from typing import Iterable

from .detectors import DETECTOR_ORDER
from .types import RankedOpportunity, ZapFinding
from .utils import id_sort_key


def _registry_index(code: str) -> int:
    try:
        return DETECTOR_ORDER.index(code)
    except ValueError:
        return len(DETECTOR_ORDER)


def rank_opportunities(
    findings: Iterable[ZapFinding], limit: int | None = None
) -> tuple[RankedOpportunity, ...]:
    """Flatten every flag into one list ordered by monthly savings.

    Ties resolve by automation id (numeric ids compare numerically), then by
    detector registry order. Ranks are 1..N over the returned rows.
    """

    if limit is not None and limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    rows: list[tuple[float, tuple[int, int, str], int, str, str, str]] = []
    for finding in findings:
        for flag in finding.flags:
            rows.append(
                (
                    flag.monthly_savings_usd,
                    id_sort_key(finding.zap_id),
                    _registry_index(flag.code),
                    finding.zap_id,
                    flag.code,
                    flag.confidence,
                )
            )
    rows.sort(key=lambda row: (-row[0], row[1], row[2]))
    if limit is not None:
        rows = rows[:limit]
    return tuple(
        RankedOpportunity(
            zap_id=zap_id,
            flag_code=code,
            monthly_savings_usd=savings,
            confidence=confidence,
            rank=idx,
        )
        for idx, (savings, _key, _order, zap_id, code, confidence) in enumerate(rows, start=1)
    )
