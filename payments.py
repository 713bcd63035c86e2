"""Paid and outstanding amounts of a rental, derived from its payment status."""

from typing import Optional

from pydantic import BaseModel

from errors import InvalidInputError, InvalidStateError
from schemas import Rental


class PaymentBreakdown(BaseModel):
    total_due: float
    paid_amount: float
    remaining_amount: float


def _paid(total_due: float, paid_amount: Optional[float]) -> float:
    return total_due


def _partial(total_due: float, paid_amount: Optional[float]) -> float:
    paid = paid_amount or 0
    if paid < 0 or paid > total_due:
        raise InvalidInputError(f"Partial payment of {paid} does not fit a total due of {total_due}")
    return paid


def _pending(total_due: float, paid_amount: Optional[float]) -> float:
    return 0


PAID_AMOUNT_BY_STATUS = {
    "paid": _paid,
    "partial": _partial,
    "pending": _pending,
}


def payment_breakdown(
    total_cost: float,
    additional_fees: float,
    payment_status: str,
    paid_amount: Optional[float] = None,
) -> PaymentBreakdown:
    try:
        resolve = PAID_AMOUNT_BY_STATUS[payment_status]
    except KeyError:
        raise InvalidStateError(f"Unknown payment status: {payment_status!r}") from None
    total_due = total_cost + additional_fees
    paid = resolve(total_due, paid_amount)
    return PaymentBreakdown(total_due=total_due, paid_amount=paid, remaining_amount=total_due - paid)


def rental_breakdown(rental: Rental) -> PaymentBreakdown:
    return payment_breakdown(
        rental.total_cost,
        rental.additional_fees.amount,
        rental.payment_status,
        rental.paid_amount,
    )
