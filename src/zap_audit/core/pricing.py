from __future__ import annotations

from .types import PricingResult

PLAN_PROFESSIONAL = "professional"
PLAN_TEAM = "team"

# (monthly task capacity, monthly price USD), ascending by capacity.
PRICING_TIERS: dict[str, tuple[tuple[int, float], ...]] = {
    PLAN_PROFESSIONAL: (
        (750, 19.99),
        (1_500, 39.0),
        (2_000, 49.0),
        (5_000, 89.0),
        (10_000, 129.0),
        (20_000, 189.0),
        (50_000, 289.0),
        (100_000, 489.0),
        (200_000, 769.0),
        (300_000, 1_069.0),
        (400_000, 1_269.0),
        (500_000, 1_499.0),
        (750_000, 1_999.0),
        (1_000_000, 2_199.0),
        (1_500_000, 2_999.0),
        (1_750_000, 3_199.0),
        (2_000_000, 3_389.0),
    ),
    PLAN_TEAM: (
        (2_000, 69.0),
        (5_000, 119.0),
        (10_000, 169.0),
        (20_000, 249.0),
        (50_000, 399.0),
        (100_000, 599.0),
        (200_000, 999.0),
        (300_000, 1_199.0),
        (400_000, 1_399.0),
        (500_000, 1_799.0),
        (750_000, 2_199.0),
        (1_000_000, 2_499.0),
        (1_500_000, 3_399.0),
        (1_750_000, 3_799.0),
        (2_000_000, 3_999.0),
    ),
}

DEFAULT_PLAN = PLAN_PROFESSIONAL
BENCHMARK_USAGE = 2_000

USAGE_DECLARED = "declared"
USAGE_MEASURED = "measured"
USAGE_BENCHMARK = "benchmark"


def validate_pricing_tiers(
    tiers: dict[str, tuple[tuple[int, float], ...]] | None = None,
) -> None:
    table = PRICING_TIERS if tiers is None else tiers
    for plan, rows in table.items():
        if not rows:
            raise ValueError(f"Pricing tiers for {plan} are empty")
        for idx in range(1, len(rows)):
            if rows[idx][0] <= rows[idx - 1][0]:
                raise ValueError(
                    f"Pricing tiers for {plan} not ascending at index {idx}: "
                    f"{rows[idx][0]} <= {rows[idx - 1][0]}"
                )
        for capacity, price in rows:
            if capacity < 0 or price < 0:
                raise ValueError(f"Pricing tier for {plan} has a negative value: {capacity}, {price}")


def normalize_plan(plan: str | None) -> str:
    if plan is None or not str(plan).strip():
        return DEFAULT_PLAN
    key = str(plan).strip().lower()
    if key not in PRICING_TIERS:
        raise ValueError(
            f"Unknown plan family: {plan!r} (expected one of {', '.join(sorted(PRICING_TIERS))})"
        )
    return key


def tiers_for(plan: str | None) -> tuple[tuple[int, float], ...]:
    return PRICING_TIERS[normalize_plan(plan)]


def select_tier(
    tiers: tuple[tuple[int, float], ...], usage: int
) -> tuple[int, float, bool]:
    """Ceiling lookup: the first tier whose capacity covers ``usage``.

    Returns ``(capacity, price, over_capacity)``. Usage above every tier selects
    the largest tier and reports over-capacity instead of extrapolating.
    """

    for capacity, price in tiers:
        if capacity >= usage:
            return capacity, price, False
    capacity, price = tiers[-1]
    return capacity, price, True


def resolve_pricing(
    plan: str | None, usage: int, usage_source: str = USAGE_DECLARED
) -> PricingResult:
    if usage is None or int(usage) < 0:
        raise ValueError(f"Monthly usage must be a non-negative integer, got {usage!r}")
    plan_key = normalize_plan(plan)
    tiers = PRICING_TIERS[plan_key]
    validate_pricing_tiers({plan_key: tiers})
    actual = int(usage)
    capacity, price, over = select_tier(tiers, actual)
    cost_per_task = price / capacity if capacity > 0 else 0.0
    return PricingResult(
        plan=plan_key,
        tier_tasks=capacity,
        tier_price=price,
        cost_per_task=cost_per_task,
        actual_usage=actual,
        usage_source=usage_source,
        over_capacity=over,
    )


def default_pricing() -> PricingResult:
    """Benchmark pricing used when the caller declares nothing and nothing is measured."""

    return resolve_pricing(DEFAULT_PLAN, BENCHMARK_USAGE, USAGE_BENCHMARK)


def capacity_floor(plan: str, tier_tasks: int) -> int:
    """Smallest usage billed at the tier with capacity ``tier_tasks``."""

    previous = 0
    for capacity, _price in tiers_for(plan):
        if capacity == tier_tasks:
            return previous + 1 if previous else 0
        previous = capacity
    return 0


def cheapest_tier_for(plan: str, usage: int) -> tuple[int, float]:
    capacity, price, _over = select_tier(tiers_for(plan), int(usage))
    return capacity, price
