"""Turn per-route category tallies into proportions and bucketed summaries.

Step 1  normalise each route's tally into proportions over the fixed four
        categories (low, high, partial, unknown); a category missing from the
        tally gets exactly 0.
Step 2  place every route profile in the annual bucket and in the monthly
        bucket of its movement date's calendar month.
Step 3  for each bucket and category, summarise the distribution of per-route
        proportions with fixed percentiles.

Percentiles use NumPy's ``"linear"`` method (interpolation between order
statistics, type 7 in Hyndman & Fan) for every bucket, so bands are
comparable across months. Buckets without routes produce no rows.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date
from typing import Dict, Iterable, List, Mapping, Tuple

import numpy as np
import pandas as pd

from scripts.utils.risk_model import (
    ALL_CATEGORIES,
    RiskCategory,
    RouteRiskProfile,
    UnsampleableRoute,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

PERCENTILES: Tuple[float, ...] = (2.5, 50.0, 95.0, 97.5)
PERCENTILE_METHOD: str = "linear"

ANNUAL_LABEL: str = "annual"
MONTH_LABELS: Dict[int, str] = {m: calendar.month_abbr[m] for m in range(1, 13)}

PROFILE_COLUMNS: List[str] = [
    "route_id",
    "movement_date",
    "month",
    "equine_count",
    "n_samples",
] + [c.value for c in ALL_CATEGORIES]

LOGGER = logging.getLogger(__name__)

# =============================================================================
# STEP 1: PER-ROUTE NORMALISATION
# =============================================================================


def normalize_counts(counts: Mapping[RiskCategory | str, int]) -> Dict[RiskCategory, float]:
    """Return the proportion of each of the four categories in *counts*.

    Raises:
        ValueError: If the tally is empty, has a negative count, or names an
            unknown category.
    """
    tally: Dict[RiskCategory, int] = {cat: 0 for cat in ALL_CATEGORIES}
    for key, n in counts.items():
        if n < 0:
            raise ValueError(f"Negative count for {key!r}")
        tally[RiskCategory(key)] += int(n)

    total = sum(tally.values())
    if total == 0:
        raise ValueError("Cannot normalise an empty tally")
    return {cat: tally[cat] / total for cat in ALL_CATEGORIES}


def build_route_profile(
    route_id: str,
    movement_date: date,
    counts: Mapping[RiskCategory | str, int],
    equine_count: int = 1,
) -> RouteRiskProfile:
    """Build the immutable risk profile of one route on its movement date.

    Raises:
        UnsampleableRoute: If *counts* holds no samples.
    """
    try:
        proportions = normalize_counts(counts)
    except ValueError as exc:
        raise UnsampleableRoute(route_id, str(exc)) from exc
    return RouteRiskProfile(
        route_id=route_id,
        movement_date=movement_date,
        equine_count=int(equine_count),
        n_samples=int(sum(counts.values())),
        proportions=proportions,
    )


def profiles_to_frame(profiles: Iterable[RouteRiskProfile]) -> pd.DataFrame:
    """One row per route profile (the per-route proportion table)."""
    rows = [p.as_record() for p in profiles]
    if not rows:
        return pd.DataFrame(columns=PROFILE_COLUMNS)
    return pd.DataFrame(rows, columns=PROFILE_COLUMNS)


# =============================================================================
# STEP 2: BUCKETING
# =============================================================================


def assign_buckets(profiles: pd.DataFrame) -> pd.DataFrame:
    """Stack the profile table into annual and monthly buckets.

    Every profile appears exactly twice in the result: once with
    ``bucket == "annual"`` and once with the label of its calendar month.

    Returns:
        The profile columns plus ``bucket`` (label), ``bucket_type``
        (``annual``/``monthly``) and ``bucket_month`` (0 for annual, else 1-12).
    """
    if profiles.empty:
        return profiles.assign(bucket=[], bucket_type=[], bucket_month=[])

    months = pd.to_datetime(profiles["movement_date"]).dt.month.astype(int)

    annual = profiles.assign(bucket=ANNUAL_LABEL, bucket_type="annual", bucket_month=0)
    monthly = profiles.assign(
        bucket=months.map(MONTH_LABELS),
        bucket_type="monthly",
        bucket_month=months,
    )
    return pd.concat([annual, monthly], ignore_index=True)


# =============================================================================
# STEP 3: DISTRIBUTIONAL SUMMARY
# =============================================================================


def _percentile_column(q: float) -> str:
    """``2.5`` → ``p2_5``, ``50.0`` → ``p50``."""
    text = f"{q:g}".replace(".", "_")
    return f"p{text}"


def summarize_buckets(
    bucketed: pd.DataFrame,
    percentiles: Tuple[float, ...] = PERCENTILES,
) -> pd.DataFrame:
    """Percentile bands of each category's proportion, per bucket.

    Args:
        bucketed: Output of :func:`assign_buckets`.
        percentiles: Percentiles in ``[0, 100]``.

    Returns:
        Long table with ``bucket``, ``bucket_type``, ``bucket_month``,
        ``category``, ``n_routes`` and one ``p*`` column per percentile,
        ordered annual first then by month. Empty buckets are absent.
    """
    pct_cols = [_percentile_column(q) for q in percentiles]
    columns = ["bucket", "bucket_type", "bucket_month", "category", "n_routes"] + pct_cols
    if bucketed.empty:
        return pd.DataFrame(columns=columns)

    records = []
    for (bucket_month, bucket), group in bucketed.groupby(["bucket_month", "bucket"], sort=True):
        bucket_type = group["bucket_type"].iloc[0]
        for cat in ALL_CATEGORIES:
            values = group[cat.value].to_numpy(dtype=float)
            bands = np.percentile(values, percentiles, method=PERCENTILE_METHOD)
            row = {
                "bucket": bucket,
                "bucket_type": bucket_type,
                "bucket_month": int(bucket_month),
                "category": cat.value,
                "n_routes": int(len(values)),
            }
            row.update(dict(zip(pct_cols, (float(v) for v in bands))))
            records.append(row)

    summary = pd.DataFrame(records, columns=columns)
    LOGGER.info(
        "Summarised %d bucket(s): %s",
        summary["bucket"].nunique(),
        ", ".join(summary["bucket"].unique()),
    )
    return summary
