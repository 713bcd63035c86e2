"""
Rental pricing

A rental is billed per calendar day. Start and end are truncated to dates;
a rental that starts and ends on the same day still bills one day, otherwise
the day count is the number of days between the two dates. Every caller
(quote, creation, edit) goes through rental_days so the rule has one home.
"""

import math
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel

from errors import InvalidInputError

DAY_SECONDS = 86400
DEPOSIT_RATE = 0.2

DateLike = Union[date, datetime]


class RentalQuote(BaseModel):
    start_date: date
    end_date: date
    days: int
    daily_rate: float
    total_cost: float
    deposit: float


def calendar_day(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def rental_days(start: DateLike, end: DateLike) -> int:
    start_day, end_day = calendar_day(start), calendar_day(end)
    if end_day < start_day:
        raise InvalidInputError(f"Rental ends ({end_day}) before it starts ({start_day})")
    if start_day == end_day:
        return 1
    delta = end_day - start_day
    return math.ceil(delta.total_seconds() / DAY_SECONDS)


def check_daily_rate(daily_rate: Optional[float]) -> float:
    if daily_rate is None:
        raise InvalidInputError("Vehicle has no daily rate")
    if daily_rate < 0:
        raise InvalidInputError(f"Daily rate must not be negative, got {daily_rate}")
    return daily_rate


def rental_cost(start: DateLike, end: DateLike, daily_rate: Optional[float]) -> float:
    rate = check_daily_rate(daily_rate)
    return rental_days(start, end) * rate


def contract_deposit(total_cost: float) -> float:
    """Security deposit written into the rental contract."""
    return float(round(total_cost * DEPOSIT_RATE))


def quote_rental(start: DateLike, end: DateLike, daily_rate: Optional[float]) -> RentalQuote:
    rate = check_daily_rate(daily_rate)
    days = rental_days(start, end)
    total = days * rate
    return RentalQuote(
        start_date=calendar_day(start),
        end_date=calendar_day(end),
        days=days,
        daily_rate=rate,
        total_cost=total,
        deposit=contract_deposit(total),
    )
