from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from schemas import Transaction


class ReportPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


def local_today() -> date:
    return local_now().date()


def _as_date(reference: Union[date, datetime]) -> date:
    if isinstance(reference, datetime):
        return reference.date()
    return reference


def resolve_period(
    period: Union[ReportPeriod, str],
    reference: Optional[Union[date, datetime]] = None,
) -> Period:
    period = ReportPeriod(period)
    today = _as_date(reference) if reference is not None else local_today()
    if period == ReportPeriod.weekly:
        # Inclusive on both ends: exactly seven days back through the reference.
        return Period(period.value, today - timedelta(days=7), today)
    if period == ReportPeriod.yearly:
        return Period(period.value, date(today.year, 1, 1), date(today.year, 12, 31))

    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    end_this = next_month - date.resolution
    return Period(period.value, first, end_this)


def filter_by_period(
    transactions: Iterable["Transaction"],
    period: Union[ReportPeriod, str],
    reference: Optional[Union[date, datetime]] = None,
) -> list["Transaction"]:
    window = resolve_period(period, reference)
    return [txn for txn in transactions if window.contains(txn.date)]
