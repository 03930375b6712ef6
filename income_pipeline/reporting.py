"""
Read-only reports over the cleaned snapshot.

Every report reads the latest snapshot build only and joins it with the
income statistics on ``id``. Rows with a zero Mean are excluded from income
reports. "Top N" reports keep ties on the last place, like ``TOP N WITH TIES``.
"""

from collections.abc import Callable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from income_pipeline.database import HouseholdIncomeCleaned as Cleaned
from income_pipeline.database import HouseholdIncomeStatistics as Stats


def _latest_build():
    """WHERE clause restricting the snapshot to its latest build."""
    return Cleaned.TimeStamp == select(func.max(Cleaned.TimeStamp)).scalar_subquery()


def _rows(session: Session, query) -> list[dict[str, Any]]:
    return [dict(row._mapping) for row in session.execute(query)]


def _top_with_ties(rows: list[dict], n: int, key: str) -> list[dict]:
    """Keep the first ``n`` rows plus any row tied with the n-th."""
    if n <= 0 or len(rows) <= n:
        return rows
    cutoff = rows[n - 1][key]
    return [row for index, row in enumerate(rows) if index < n or row[key] == cutoff]


def _round(rows: list[dict], *keys: str) -> list[dict]:
    for row in rows:
        for key in keys:
            if row[key] is not None:
                row[key] = round(float(row[key]), 2)
    return rows


def top_states_by_water_area(session: Session, n: int = 10) -> list[dict]:
    """States with the largest total water area."""
    total = func.sum(Cleaned.AWater).label("Total_Water")
    query = (
        select(Cleaned.State_Name, total)
        .where(_latest_build())
        .group_by(Cleaned.State_Name)
        .order_by(total.desc(), Cleaned.State_Name)
    )
    return _top_with_ties(_rows(session, query), n, "Total_Water")


def income_by_place(session: Session, limit: int | None = None) -> list[dict]:
    """Snapshot rows joined with their income statistics."""
    query = (
        select(
            Cleaned.State_Name,
            Cleaned.County,
            Cleaned.City,
            Cleaned.Type,
            Cleaned.Primary,
            Stats.Mean,
            Stats.Median,
        )
        .join(Stats, Stats.id == Cleaned.id)
        .where(_latest_build(), Stats.Mean != 0)
        .order_by(Cleaned.row_id)
    )
    if limit is not None:
        query = query.limit(limit)
    return _rows(session, query)


def top_states_by_mean_income(session: Session, n: int = 5) -> list[dict]:
    """States with the highest average household income mean."""
    avg_mean = func.avg(Stats.Mean).label("Avg_mean")
    query = (
        select(Cleaned.State_Name, avg_mean)
        .join(Stats, Stats.id == Cleaned.id)
        .where(_latest_build(), Stats.Mean != 0)
        .group_by(Cleaned.State_Name)
        .order_by(avg_mean.desc(), Cleaned.State_Name)
    )
    return _round(_top_with_ties(_rows(session, query), n, "Avg_mean"), "Avg_mean")


def income_by_type(session: Session) -> list[dict]:
    """Record count and average mean/median income per Type."""
    avg_mean = func.avg(Stats.Mean).label("Avg_mean")
    query = (
        select(
            Cleaned.Type,
            func.count(Cleaned.Type).label("Records_Count"),
            avg_mean,
            func.avg(Stats.Median).label("Avg_median"),
        )
        .join(Stats, Stats.id == Cleaned.id)
        .where(_latest_build(), Stats.Mean != 0)
        .group_by(Cleaned.Type)
        .order_by(avg_mean.desc(), Cleaned.Type)
    )
    return _round(_rows(session, query), "Avg_mean", "Avg_median")


def income_by_city(session: Session) -> list[dict]:
    """Average household income mean per (State, City)."""
    avg_mean = func.avg(Stats.Mean).label("Avg_mean")
    query = (
        select(Cleaned.State_Name, Cleaned.City, avg_mean)
        .join(Stats, Stats.id == Cleaned.id)
        .where(_latest_build(), Stats.Mean != 0)
        .group_by(Cleaned.State_Name, Cleaned.City)
        .order_by(avg_mean.desc(), Cleaned.State_Name, Cleaned.City)
    )
    return _round(_rows(session, query), "Avg_mean")


REPORTS: dict[str, Callable[..., list[dict]]] = {
    "water-area": top_states_by_water_area,
    "income-by-place": income_by_place,
    "top-mean-income": top_states_by_mean_income,
    "income-by-type": income_by_type,
    "income-by-city": income_by_city,
}
