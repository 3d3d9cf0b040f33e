"""
Dashboard rollups over stored test runs.

Every function here is pure: it takes TestRunRecord objects (already read from
storage) plus an explicit "now" where the current time matters, and returns
response models ready for JSON.

Pass rates are percentages rounded half up to one decimal place, computed as
round(passed / total * 1000) / 10, and 0 when there are no tests.
"""
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from schemas import (
    DailyTrendPoint,
    DashboardOverview,
    HostHeatmapCell,
    HostHeatmapRow,
    HostSummary,
    HostsResponse,
    RecentRun,
    SuiteAnalysis,
    SuiteBreakdown,
    TestRunRecord,
    TrendPoint,
    TrendResponse,
    TrendSummary,
)
from xml_parser import round_half_up

DEFAULT_WINDOW_DAYS = 30
NO_DATA = -1


def pass_rate(passed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round_half_up(passed / total * 1000) / 10


def cell_rate(passed: int, total: int) -> int:
    if total <= 0:
        return NO_DATA
    return round_half_up(passed / total * 100)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_key(value: datetime) -> str:
    return as_utc(value).date().isoformat()


def window_start(days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None) -> datetime:
    """Start of a window reaching ``days`` whole days back from ``now``."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    return now - timedelta(days=days)


def in_window(runs: Iterable[TestRunRecord], since: datetime) -> List[TestRunRecord]:
    since = as_utc(since)
    return [r for r in runs if as_utc(r.started_at) >= since]


def date_axis(since: datetime, now: datetime) -> List[str]:
    """Every calendar day from ``since`` to ``now`` inclusive."""
    cursor: date = as_utc(since).date()
    today = as_utc(now).date()
    dates = []
    while cursor <= today:
        dates.append(cursor.isoformat())
        cursor += timedelta(days=1)
    return dates


# Daily trend

def daily_trend(runs: Iterable[TestRunRecord]) -> List[DailyTrendPoint]:
    """Per-day totals in ascending date order."""
    buckets: Dict[str, Dict[str, int]] = {}
    for run in runs:
        bucket = buckets.setdefault(
            day_key(run.started_at),
            {"total": 0, "passed": 0, "failed": 0, "skipped": 0, "run_count": 0},
        )
        bucket["total"] += run.total
        bucket["passed"] += run.passed
        bucket["failed"] += run.failed
        bucket["skipped"] += run.skipped
        bucket["run_count"] += 1

    return [
        DailyTrendPoint(date=day, pass_rate=pass_rate(b["passed"], b["total"]), **b)
        for day, b in sorted(buckets.items())
    ]


def trend_summary(runs: Iterable[TestRunRecord]) -> TrendSummary:
    summary = TrendSummary()
    for run in runs:
        summary.total += run.total
        summary.passed += run.passed
        summary.failed += run.failed
        summary.skipped += run.skipped
        summary.runs += 1
    summary.pass_rate = pass_rate(summary.passed, summary.total)
    return summary


def trends(runs: Iterable[TestRunRecord]) -> TrendResponse:
    runs = list(runs)
    return TrendResponse(trend=daily_trend(runs), summary=trend_summary(runs))


# Suite breakdown

def suite_breakdown(runs: Iterable[TestRunRecord], order_by: str = "total",
                    limit: Optional[int] = None) -> List[SuiteAnalysis]:
    """Aggregate suites across runs, keyed by suite name.

    Same-named suites from different runs or files land in the same row.
    ``order_by`` is "total" (total tests, descending) or "count" (number of
    occurrences, descending); ties keep first-seen order.
    """
    if order_by not in ("total", "count"):
        raise ValueError(f"Unknown suite ordering: {order_by}")

    groups: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for run in runs:
        for suite in run.suites:
            g = groups.setdefault(suite.name, {
                "count": 0, "total": 0, "passed": 0, "failed": 0, "skipped": 0,
                "duration_sum": 0, "duration_count": 0,
            })
            g["count"] += 1
            g["total"] += suite.total
            g["passed"] += suite.passed
            g["failed"] += suite.failed
            g["skipped"] += suite.skipped
            if suite.duration is not None:
                g["duration_sum"] += suite.duration
                g["duration_count"] += 1

    rows = [
        SuiteAnalysis(
            name=name,
            run_count=g["count"],
            total_tests=g["total"],
            passed=g["passed"],
            failed=g["failed"],
            skipped=g["skipped"],
            pass_rate=pass_rate(g["passed"], g["total"]),
            avg_duration=(
                round_half_up(g["duration_sum"] / g["duration_count"])
                if g["duration_count"] else None
            ),
        )
        for name, g in groups.items()
    ]
    if order_by == "total":
        rows.sort(key=lambda r: r.total_tests, reverse=True)
    else:
        rows.sort(key=lambda r: r.run_count, reverse=True)
    if limit is not None:
        rows = rows[:limit]
    return rows


# Hosts

def host_heatmap(runs: Iterable[TestRunRecord], since: datetime, now: datetime) -> List[HostHeatmapRow]:
    """Host x day pass rates; cells without tests hold -1."""
    dates = date_axis(since, now)
    cells: "OrderedDict[str, Dict[str, List[int]]]" = OrderedDict()
    for run in runs:
        if run.host is None:
            continue
        per_day = cells.setdefault(run.host, {})
        cell = per_day.setdefault(day_key(run.started_at), [0, 0])
        cell[0] += run.passed
        cell[1] += run.total

    return [
        HostHeatmapRow(
            id=host,
            data=[
                HostHeatmapCell(x=day, y=cell_rate(*per_day.get(day, (0, 0))))
                for day in dates
            ],
        )
        for host, per_day in cells.items()
    ]


def host_summaries(runs: Iterable[TestRunRecord]) -> List[HostSummary]:
    totals: "OrderedDict[str, HostSummary]" = OrderedDict()
    for run in runs:
        if run.host is None:
            continue
        started = as_utc(run.started_at)
        s = totals.get(run.host)
        if s is None:
            s = totals[run.host] = HostSummary(
                host=run.host, total_runs=0, total_tests=0, passed=0, failed=0,
                pass_rate=0, last_run=started,
            )
        s.total_runs += 1
        s.total_tests += run.total
        s.passed += run.passed
        s.failed += run.failed
        if started > s.last_run:
            s.last_run = started

    for s in totals.values():
        s.pass_rate = pass_rate(s.passed, s.total_tests)
    return list(totals.values())


def hosts(runs: Iterable[TestRunRecord], since: datetime, now: datetime) -> HostsResponse:
    runs = list(runs)
    return HostsResponse(
        heatmap=host_heatmap(runs, since, now),
        summaries=host_summaries(runs),
        dates=date_axis(since, now),
    )


# Dashboard overview

def dashboard_overview(runs: Iterable[TestRunRecord], since: datetime,
                       recent: int = 5, top_suites: int = 10) -> DashboardOverview:
    """All-time totals, recent runs, windowed trend and the busiest suites."""
    runs = list(runs)
    summary = trend_summary(runs)
    newest_first = sorted(runs, key=lambda r: as_utc(r.started_at), reverse=True)

    return DashboardOverview(
        total_runs=summary.runs,
        total_tests=summary.total,
        total_passed=summary.passed,
        total_failed=summary.failed,
        total_skipped=summary.skipped,
        avg_pass_rate=summary.pass_rate,
        recent_runs=[
            RecentRun(id=r.id, name=r.name, started_at=r.started_at,
                      passed=r.passed, failed=r.failed, total=r.total)
            for r in newest_first[:recent]
        ],
        daily_trend=[
            TrendPoint(date=p.date, pass_rate=p.pass_rate, total=p.total)
            for p in daily_trend(in_window(runs, since))
        ],
        suite_breakdown=[
            SuiteBreakdown(name=s.name, passed=s.passed, failed=s.failed, skipped=s.skipped)
            for s in suite_breakdown(runs, order_by="count", limit=top_suites)
        ],
    )
