"""
Cash journal

Merges a month of rental revenue with vehicle and business expenses into one
ledger, newest first. Each record becomes one entry independently and the
totals are plain sums over the entries.
"""

import math
from datetime import datetime, time, timezone
from typing import Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel

from errors import InvalidInputError
from payments import rental_breakdown
from schemas import BusinessExpense, Rental, Vehicle, VehicleExpense

EntryKind = Literal["vehicle_revenue", "vehicle_expense", "business_expense"]


class JournalEntry(BaseModel):
    id: Optional[str] = None
    date: datetime
    designation: str
    kind: EntryKind
    revenue: float = 0
    expense: float = 0
    total_amount: float = 0
    paid_amount: Optional[float] = None
    remaining_amount: float = 0


class CashJournal(BaseModel):
    start: datetime
    end: datetime
    entries: List[JournalEntry]
    total_revenue: float
    total_expense: float
    total_pending: float
    net_cash: float


def month_window(year: int, month: int) -> Tuple[datetime, datetime]:
    """[first day of month, first day of next month) in UTC."""
    if not 1 <= month <= 12:
        raise InvalidInputError(f"Month must be between 1 and 12, got {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def vehicle_label(vehicle: Vehicle) -> str:
    return f"{vehicle.brand} {vehicle.model}"


def rental_entry(rental_id: Optional[str], rental: Rental, vehicle: Vehicle) -> JournalEntry:
    breakdown = rental_breakdown(rental)
    return JournalEntry(
        id=rental_id,
        date=datetime.combine(rental.start_date, time(), tzinfo=timezone.utc),
        designation=f"Rental - {vehicle_label(vehicle)}",
        kind="vehicle_revenue",
        revenue=breakdown.paid_amount,
        total_amount=breakdown.total_due,
        paid_amount=breakdown.paid_amount,
        remaining_amount=breakdown.remaining_amount,
    )


def vehicle_expense_entry(expense_id: Optional[str], expense: VehicleExpense, vehicle: Optional[Vehicle]) -> JournalEntry:
    designation = expense.name
    if vehicle is not None:
        designation = f"{designation} - {vehicle_label(vehicle)}"
    return JournalEntry(
        id=expense_id,
        date=expense.date,
        designation=designation,
        kind="vehicle_expense",
        expense=expense.amount,
        total_amount=expense.amount,
    )


def business_expense_entry(expense_id: Optional[str], expense: BusinessExpense) -> JournalEntry:
    return JournalEntry(
        id=expense_id,
        date=expense.date,
        designation=f"Business expense - {expense.designation}",
        kind="business_expense",
        expense=expense.amount,
        total_amount=expense.amount,
    )


def summarize(entries: List[JournalEntry], start: datetime, end: datetime) -> CashJournal:
    # sorted() is stable, so equal dates keep the order entries were produced in
    ordered = sorted(entries, key=lambda e: e.date, reverse=True)
    total_revenue = math.fsum(e.paid_amount if e.paid_amount is not None else e.revenue for e in ordered)
    total_expense = math.fsum(e.expense for e in ordered)
    return CashJournal(
        start=start,
        end=end,
        entries=ordered,
        total_revenue=total_revenue,
        total_expense=total_expense,
        total_pending=math.fsum(e.remaining_amount for e in ordered),
        net_cash=math.fsum(e.revenue - e.expense for e in ordered),
    )


def build_journal(
    rentals: Iterable[Tuple[Optional[str], Rental]],
    vehicle_expenses: Iterable[Tuple[Optional[str], VehicleExpense]],
    business_expenses: Iterable[Tuple[Optional[str], BusinessExpense]],
    vehicles: Dict[str, Vehicle],
    start: datetime,
    end: datetime,
) -> CashJournal:
    """
    Build the journal for [start, end).

    Rentals without a known vehicle or with a zero total are left out; a
    vehicle expense whose car is unknown keeps its bare name.
    """
    entries: List[JournalEntry] = []
    for rental_id, rental in rentals:
        vehicle = vehicles.get(rental.vehicle_id)
        if vehicle is None or rental.total_cost <= 0:
            continue
        entries.append(rental_entry(rental_id, rental, vehicle))
    for expense_id, expense in vehicle_expenses:
        entries.append(vehicle_expense_entry(expense_id, expense, vehicles.get(expense.car_id or "")))
    for expense_id, expense in business_expenses:
        entries.append(business_expense_entry(expense_id, expense))
    return summarize(entries, start, end)


def percentage_change(previous: float, current: float) -> float:
    """Growth from previous to current; a rise from nothing counts as 100%."""
    if previous > 0:
        return (current - previous) / previous * 100
    if current > 0:
        return 100.0
    return 0.0
