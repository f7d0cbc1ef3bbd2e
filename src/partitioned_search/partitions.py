"""Daily partition naming.

A logical dataset ``treatments`` is stored in one physical index per UTC
calendar day (``treatments-2024.08.24``). Everything here is pure.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone


PARTITION_DATE_FORMAT = "%Y.%m.%d"
TEMPLATE_SUFFIX = "-template"


def _utc_day(at: datetime | date) -> date:
    if isinstance(at, datetime):
        if at.tzinfo is not None:
            at = at.astimezone(timezone.utc)
        return at.date()
    return at


def partition_name(dataset: str, at: datetime | date) -> str:
    """Return the partition holding records of ``dataset`` stamped at ``at``.

    Naive datetimes are taken to be UTC already.
    """
    return f"{dataset}-{_utc_day(at).strftime(PARTITION_DATE_FORMAT)}"


def partition_pattern(dataset: str) -> str:
    return f"{dataset}-*"


def template_name(dataset: str) -> str:
    return f"{dataset}{TEMPLATE_SUFFIX}"


def partition_names_between(dataset: str, start: datetime | date, end: datetime | date) -> tuple[str, ...]:
    """Return one partition name per UTC day in ``[start, end]``, oldest first."""
    first = _utc_day(start)
    last = _utc_day(end)
    if first > last:
        return ()
    days = (last - first).days
    return tuple(partition_name(dataset, first + timedelta(days=offset)) for offset in range(days + 1))


def _month_end(day: date) -> date:
    return date(day.year, day.month, calendar.monthrange(day.year, day.month)[1])


def partition_targets_between(dataset: str, start: datetime | date, end: datetime | date) -> tuple[str, ...]:
    """Return index targets covering the UTC days in ``[start, end]``, oldest first.

    Same partitions as :func:`partition_names_between`, but each fully covered
    calendar year becomes ``{dataset}-YYYY.*`` and each fully covered month
    ``{dataset}-YYYY.MM.*``, so a long range stays well inside the engine's
    request line limit.
    """
    day = _utc_day(start)
    last = _utc_day(end)
    targets: list[str] = []
    while day <= last:
        year_end = date(day.year, 12, 31)
        if day.month == 1 and day.day == 1 and year_end <= last:
            targets.append(f"{dataset}-{day.year:04d}.*")
            covered = year_end
        elif day.day == 1 and _month_end(day) <= last:
            targets.append(f"{dataset}-{day.strftime('%Y.%m')}.*")
            covered = _month_end(day)
        else:
            targets.append(partition_name(dataset, day))
            covered = day
        if covered == last:
            break
        day = covered + timedelta(days=1)
    return tuple(targets)
