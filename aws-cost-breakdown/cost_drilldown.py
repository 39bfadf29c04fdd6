"""
AWS cost drill-down

Builds the service-level cost breakdown and, for every service with spend,
picks the secondary dimension that best splits its cost, groups the service's
cost by it, and re-queries "No..." buckets (NoInstanceType, NoOperation, ...)
by usage type when they are large enough to matter.

Notes:
- Amounts are Decimal end to end; Cost Explorer sends them as strings
- Cost Explorer's End date is exclusive, so windows always end tomorrow
- Drill-downs are independent and may run on a bounded thread pool; results
  always come back in service report order
"""

import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple, Optional

from cost_explorer import (
    DimensionNotApplicable,
    QueryFailed,
    get_cost_and_usage,
    get_dimension_values,
)


DEFAULT_DAYS_BACK = 6

# Cost Explorer keeps resource-level data for 14 days only
RESOURCE_DAYS_BACK = 14

# Richest grain first
DRILLDOWN_CANDIDATES = ("INSTANCE_TYPE_FAMILY", "INSTANCE_TYPE", "USAGE_TYPE", "OPERATION")
FALLBACK_KEY = "USAGE_TYPE"
INVESTIGATION_KEY = "USAGE_TYPE"
RESOURCE_KEY = "RESOURCE_ID"
SERVICE_KEY = "SERVICE"

UNCATEGORIZED_PREFIX = "No"
MATERIALITY_THRESHOLD = Decimal("1.00")
INVESTIGATION_TOP_N = 10
DEFAULT_WORKERS = 4

ZERO = Decimal("0")
CENT = Decimal("0.01")


class TimeWindow(NamedTuple):
    start: date
    end: date  # exclusive
    today: date

    @property
    def days(self) -> int:
        """Number of days shown in the report (start through today)."""
        return (self.today - self.start).days + 1


class CostRecord(NamedTuple):
    label: str
    amount: Decimal


@dataclass
class Investigation:
    """Usage type breakdown of a "No..." bucket."""
    label: str
    amount: Decimal
    records: list = field(default_factory=list)
    total: Decimal = ZERO
    record_count: int = 0
    error: Optional[str] = None


@dataclass
class DrillDown:
    """Cost of one service grouped by its selected secondary dimension."""
    service: str
    key: str
    window: TimeWindow
    records: list = field(default_factory=list)
    investigations: list = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CostReport:
    window: TimeWindow
    metric: str
    services: list = field(default_factory=list)
    drilldowns: list = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.services), ZERO)


def resolve_window(now: Optional[date] = None, days_back: int = DEFAULT_DAYS_BACK) -> TimeWindow:
    """Compute the report window in UTC calendar days.

    Args:
        now: Evaluation time; a datetime is converted to UTC, a date is used as is.
            Defaults to the current UTC time.
        days_back: How many days before today the window starts.

    Returns:
        TimeWindow with start = today - days_back, end = tomorrow, today.
    """
    if days_back < 0:
        raise ValueError(f"days_back must be >= 0, got {days_back}")

    if now is None:
        now = datetime.now(timezone.utc)
    if isinstance(now, datetime):
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        today = now.date()
    else:
        today = now

    return TimeWindow(
        start=today - timedelta(days=days_back),
        end=today + timedelta(days=1),
        today=today,
    )


def round_cents(amount: Decimal) -> Decimal:
    """Round to cents the way the report displays amounts."""
    return amount.quantize(CENT, ROUND_HALF_UP)


def is_uncategorized_label(label: str) -> bool:
    """True for placeholder dimension values such as 'NoInstanceType'."""
    return label.startswith(UNCATEGORIZED_PREFIX)


def aggregate_triples(triples) -> list:
    """Sum (time_bucket, group_key, amount) triples per group key.

    Returns CostRecords sorted by amount, highest first. Keys with equal
    amounts keep the order in which they first appeared.
    """
    totals = {}
    for _bucket, key, amount in triples:
        totals[key] = totals.get(key, ZERO) + Decimal(str(amount))

    records = [CostRecord(key, amount) for key, amount in totals.items()]
    return sorted(records, key=lambda r: r.amount, reverse=True)


def aggregate(
    ce_client,
    window: TimeWindow,
    metric: str,
    group_by: str,
    service: Optional[str] = None,
    with_resources: bool = False,
) -> list:
    """Query Cost Explorer and aggregate the result. Raises QueryFailed."""
    triples = get_cost_and_usage(
        ce_client,
        window.start,
        window.end,
        metric,
        group_by,
        service=service,
        with_resources=with_resources,
    )
    return aggregate_triples(triples)


def service_report(records: list) -> list:
    """Drop services whose total is exactly zero."""
    return [r for r in records if r.amount != ZERO]


def services_with_spend(records: list) -> list:
    """Services that get a drill-down, in report order."""
    return [r.label for r in records if r.amount > ZERO]


def select_key(
    ce_client,
    service: str,
    window: TimeWindow,
    candidates: tuple = DRILLDOWN_CANDIDATES,
    verbose: bool = False,
) -> str:
    """Pick the first dimension that splits the service's cost into more than one real value.

    A candidate whose values query fails is skipped. Falls back to USAGE_TYPE.
    """
    for dimension in candidates:
        try:
            values = get_dimension_values(ce_client, dimension, window.start, window.end, service)
        except DimensionNotApplicable:
            if verbose:
                print(f"  {service}: {dimension} not applicable", file=sys.stderr)
            continue
        except QueryFailed as e:
            if verbose:
                print(f"  {service}: {dimension} lookup failed ({e.cause})", file=sys.stderr)
            continue

        informative = {v for v in values if not is_uncategorized_label(v)}
        if verbose:
            print(f"  {service}: {dimension} has {len(informative)} real value(s)", file=sys.stderr)
        if len(informative) > 1:
            return dimension

    return FALLBACK_KEY


def investigate(
    ce_client,
    service: str,
    label: str,
    amount: Decimal,
    window: TimeWindow,
    metric: str,
    threshold: Decimal = MATERIALITY_THRESHOLD,
    top_n: int = INVESTIGATION_TOP_N,
) -> Optional[Investigation]:
    """Break a "No..." bucket down by usage type.

    Returns None without querying when the label is a real value or the
    amount, rounded to cents as the report shows it, is below the threshold.
    Raises QueryFailed if the re-query fails.
    """
    if not is_uncategorized_label(label) or round_cents(amount) < threshold:
        return None

    records = aggregate(ce_client, window, metric, INVESTIGATION_KEY, service=service)
    return Investigation(
        label=label,
        amount=amount,
        records=records[:top_n],
        total=sum((r.amount for r in records), ZERO),
        record_count=len(records),
    )


def run_drilldown(
    ce_client,
    service: str,
    window: TimeWindow,
    metric: str,
    key: Optional[str] = None,
    threshold: Decimal = MATERIALITY_THRESHOLD,
    top_n: int = INVESTIGATION_TOP_N,
    verbose: bool = False,
) -> DrillDown:
    """Drill into one service. Query failures are recorded, never raised."""
    if not key:
        key = select_key(ce_client, service, window, verbose=verbose)
    if verbose:
        print(f"  {service}: drilling down by {key}", file=sys.stderr)

    with_resources = key == RESOURCE_KEY
    drill_window = window
    if with_resources:
        drill_window = window._replace(start=window.today - timedelta(days=RESOURCE_DAYS_BACK))

    drilldown = DrillDown(service=service, key=key, window=drill_window)
    try:
        drilldown.records = aggregate(
            ce_client, drill_window, metric, key, service=service, with_resources=with_resources
        )
    except QueryFailed as e:
        drilldown.error = str(e)
        return drilldown

    for record in drilldown.records:
        try:
            investigation = investigate(
                ce_client, service, record.label, record.amount, window, metric,
                threshold=threshold, top_n=top_n,
            )
        except QueryFailed as e:
            investigation = Investigation(label=record.label, amount=record.amount, error=str(e))
        if investigation is not None:
            drilldown.investigations.append(investigation)

    return drilldown


def run_drilldowns(
    ce_client,
    services: list,
    window: TimeWindow,
    metric: str,
    key: Optional[str] = None,
    threshold: Decimal = MATERIALITY_THRESHOLD,
    top_n: int = INVESTIGATION_TOP_N,
    workers: int = DEFAULT_WORKERS,
    verbose: bool = False,
) -> list:
    """Drill into every service, at most `workers` at a time, preserving input order."""
    def drill(service: str) -> DrillDown:
        return run_drilldown(
            ce_client, service, window, metric,
            key=key, threshold=threshold, top_n=top_n, verbose=verbose,
        )

    if workers <= 1 or len(services) <= 1:
        return [drill(service) for service in services]

    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(drill, services))


def build_report(
    ce_client,
    window: TimeWindow,
    metric: str,
    key: Optional[str] = None,
    threshold: Decimal = MATERIALITY_THRESHOLD,
    top_n: int = INVESTIGATION_TOP_N,
    workers: int = DEFAULT_WORKERS,
    drilldown: bool = True,
    verbose: bool = False,
) -> CostReport:
    """Run the full breakdown. A failed service-level query raises QueryFailed."""
    records = aggregate(ce_client, window, metric, SERVICE_KEY)
    report = CostReport(window=window, metric=metric, services=service_report(records))

    if drilldown:
        targets = services_with_spend(records)
        if verbose:
            print(f"Drilling into {len(targets)} service(s) with {max(workers, 1)} worker(s)", file=sys.stderr)
        report.drilldowns = run_drilldowns(
            ce_client, targets, window, metric,
            key=key, threshold=threshold, top_n=top_n, workers=workers, verbose=verbose,
        )

    return report
