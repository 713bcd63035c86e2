"""
Subscription lifecycle

Plan catalog, price resolution and the status classification shown to the
account owner. Nothing here writes to the store: transitions return a new
Subscription and the caller persists it.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from errors import InvalidInputError, InvalidStateError
from schemas import Invoice, Subscription

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400
EXPIRY_WARNING_DAYS = 7
TRIAL_ENDING_DAYS = 2
INVOICE_DUE_DAYS = 7
QUOTE_ON_REQUEST = -1
UNLIMITED = -1

KNOWN_STATUSES = {"trial", "pending", "active", "expired", "suspended"}
ACCESS_STATUSES = {"active", "trial"}
# Statuses a user's "current" subscription may have
CURRENT_STATUSES = ["trial", "active", "pending"]


class Plan(BaseModel):
    id: str
    name: str
    max_vehicles: int
    monthly_price: float
    annual_price: float
    duration: int = Field(..., description="Length of one monthly period in days")
    features: List[str] = Field(default_factory=list)


PLANS = [
    Plan(
        id="trial",
        name="Trial",
        max_vehicles=5,
        monthly_price=0,
        annual_price=0,
        duration=14,
        features=["Rental management", "Basic dashboard"],
    ),
    Plan(
        id="basic",
        name="Basic",
        max_vehicles=10,
        monthly_price=2999,
        annual_price=29990,
        duration=30,
        features=["Rental management", "Basic dashboard", "Email support"],
    ),
    Plan(
        id="pro",
        name="Pro",
        max_vehicles=25,
        monthly_price=4999,
        annual_price=49990,
        duration=30,
        features=["Advanced rental management", "Full dashboard", "Priority support", "Custom reports"],
    ),
    Plan(
        id="enterprise",
        name="Enterprise",
        max_vehicles=UNLIMITED,
        monthly_price=QUOTE_ON_REQUEST,
        annual_price=QUOTE_ON_REQUEST,
        duration=30,
        features=["All features", "Custom API", "Dedicated 24/7 support", "On-site training"],
    ),
]

PLANS_BY_ID = {p.id: p for p in PLANS}


class SubscriptionCheck(BaseModel):
    is_valid: bool
    days_remaining: int
    status: str
    warning: bool = False
    message: Optional[str] = None


def get_plan(plan_id: str) -> Plan:
    try:
        return PLANS_BY_ID[plan_id]
    except KeyError:
        raise InvalidInputError(f"Unknown plan: {plan_id!r}") from None


def resolve_price(plan_id: str, billing_period: str) -> float:
    plan = get_plan(plan_id)
    if billing_period == "monthly":
        return plan.monthly_price
    if billing_period == "annual":
        return plan.annual_price
    raise InvalidInputError(f"Unknown billing period: {billing_period!r}")


def format_price(price: float, billing_period: str = "monthly", currency: str = "DZD") -> str:
    if price == QUOTE_ON_REQUEST:
        return "quote on request"
    if price == 0:
        return "free"
    unit = "month" if billing_period == "monthly" else "year"
    return f"{price:,.0f} {currency}/{unit}"


def period_days(plan: Plan, billing_period: str) -> int:
    return plan.duration * 12 if billing_period == "annual" else plan.duration


def days_remaining(end_date: datetime, now: datetime) -> int:
    return math.ceil((end_date - now).total_seconds() / DAY_SECONDS)


def check_subscription(subscription: Optional[Subscription], now: datetime) -> SubscriptionCheck:
    if subscription is None:
        return SubscriptionCheck(
            is_valid=False,
            days_remaining=0,
            status="no_subscription",
            message="No active subscription",
        )
    if subscription.status not in KNOWN_STATUSES:
        raise InvalidStateError(f"Unknown subscription status: {subscription.status!r}")

    days = days_remaining(subscription.end_date, now)
    if days <= 0:
        return SubscriptionCheck(
            is_valid=False,
            days_remaining=0,
            status="expired",
            message="Your subscription has expired",
        )

    valid = subscription.status in ACCESS_STATUSES
    warning = valid and days <= EXPIRY_WARNING_DAYS
    if subscription.status == "trial" and days <= TRIAL_ENDING_DAYS:
        return SubscriptionCheck(
            is_valid=valid,
            days_remaining=days,
            status="trial_ending",
            warning=True,
            message=f"Your trial ends in {days} day{'s' if days > 1 else ''}",
        )

    message = None
    if subscription.status == "expired":
        message = "Your subscription has expired"
    elif subscription.status == "pending":
        message = "Awaiting approval"
    elif subscription.status == "suspended":
        message = "Your subscription is suspended"
    elif warning:
        message = f"Your subscription expires in {days} day{'s' if days > 1 else ''}"
    return SubscriptionCheck(
        is_valid=valid,
        days_remaining=days,
        status=subscription.status,
        warning=warning,
        message=message,
    )


def can_access(check: SubscriptionCheck) -> bool:
    return check.is_valid


def can_add_vehicle(subscription: Optional[Subscription], vehicle_count: int) -> bool:
    if subscription is None:
        return False
    if subscription.max_vehicles == UNLIMITED:
        return True
    return vehicle_count < subscription.max_vehicles


def new_subscription(user_id: str, plan_id: str, billing_period: str, now: datetime) -> Subscription:
    """Trials start right away; paid plans wait for an administrator."""
    plan = get_plan(plan_id)
    is_trial = plan.id == "trial"
    return Subscription(
        user_id=user_id,
        plan_id=plan.id,
        status="trial" if is_trial else "pending",
        billing_period=billing_period,
        start_date=now,
        end_date=now + timedelta(days=plan.duration if is_trial else period_days(plan, billing_period)),
        price=resolve_price(plan.id, billing_period),
        max_vehicles=plan.max_vehicles,
        features=list(plan.features),
    )


def renew(subscription: Subscription, billing_period: str, now: datetime) -> Subscription:
    plan = get_plan(subscription.plan_id)
    return subscription.model_copy(update={
        "status": "active",
        "billing_period": billing_period,
        "start_date": now,
        "end_date": now + timedelta(days=period_days(plan, billing_period)),
        "price": resolve_price(plan.id, billing_period),
    })


def upgrade(subscription: Subscription, plan_id: str) -> Subscription:
    if plan_id == "trial":
        raise InvalidInputError("Cannot upgrade to the trial plan")
    plan = get_plan(plan_id)
    return subscription.model_copy(update={
        "plan_id": plan.id,
        "status": "active",
        "price": resolve_price(plan.id, subscription.billing_period),
        "max_vehicles": plan.max_vehicles,
        "features": list(plan.features),
    })


def _transition(subscription: Subscription, status: str) -> Subscription:
    logger.info("subscription for %s: %s -> %s", subscription.user_id, subscription.status, status)
    return subscription.model_copy(update={"status": status})


def approve(subscription: Subscription) -> Subscription:
    return _transition(subscription, "active")


def reject(subscription: Subscription) -> Subscription:
    return _transition(subscription, "expired")


def suspend(subscription: Subscription) -> Subscription:
    return _transition(subscription, "suspended")


def expire(subscription: Subscription) -> Subscription:
    return _transition(subscription, "expired")


def invoice_number(last_sequence: int, now: datetime) -> str:
    return f"INV-{now.year}{now.month:02d}-{last_sequence + 1:04d}"


def build_invoice(subscription_id: str, subscription: Subscription, last_sequence: int, now: datetime) -> Invoice:
    if subscription.price == QUOTE_ON_REQUEST:
        raise InvalidInputError("Plan is priced on request, invoice it manually")
    return Invoice(
        user_id=subscription.user_id,
        subscription_id=subscription_id,
        number=invoice_number(last_sequence, now),
        sequence=last_sequence + 1,
        amount=subscription.price,
        billing_period=subscription.billing_period,
        issue_date=now,
        due_date=now + timedelta(days=INVOICE_DUE_DAYS),
        plan_name=get_plan(subscription.plan_id).name,
    )
