"""
Database Schemas

Fleet rental records as Pydantic models.
Each model maps to one MongoDB collection:
- Vehicle -> "vehicle"
- Customer -> "customer"
- Rental -> "rental"
- VehicleExpense -> "expense"
- BusinessExpense -> "business_expense"
- Subscription -> "subscription"
- Invoice -> "invoice"
- Payment -> "payment"

Documents are decoded through these models when read back from the store, so
an unknown status or a missing field fails right there.
"""

from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

SCHEMA_VERSION = 1

VehicleStatus = Literal["available", "rented", "unavailable"]
RentalStatus = Literal["active", "completed", "cancelled", "reservation"]
PaymentStatus = Literal["pending", "partial", "paid"]
PaymentMethod = Literal["cash", "bank_transfer", "other"]
PlanId = Literal["trial", "basic", "pro", "enterprise"]
SubscriptionStatus = Literal["trial", "pending", "active", "expired", "suspended"]
BillingPeriod = Literal["monthly", "annual"]
InvoiceStatus = Literal["pending", "paid", "cancelled"]


def as_calendar_date(v):
    # The store hands dates back as datetimes at midnight
    if isinstance(v, datetime):
        return v.date()
    return v


def as_utc(v):
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class Record(BaseModel):
    schema_version: int = Field(SCHEMA_VERSION, ge=1, description="Record layout version")


class Vehicle(Record):
    """
    Fleet vehicles
    Collection: "vehicle"
    """
    user_id: str = Field(..., description="Owning account")
    brand: str = Field(..., description="Manufacturer, e.g., Renault")
    model: str = Field(..., description="Model, e.g., Clio")
    year: int = Field(..., ge=1900, le=2100, description="Year of manufacture")
    registration: str = Field(..., description="Registration plate")
    daily_rate: Optional[float] = Field(None, description="Daily rental rate in dinars, checked when pricing")
    status: VehicleStatus = Field("available")
    mileage: Optional[int] = Field(None, ge=0)
    fuel_type: Optional[str] = None


class Customer(Record):
    """
    Rental customers
    Collection: "customer"
    """
    user_id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    driving_license: Optional[str] = None


class AdditionalFees(BaseModel):
    description: str = ""
    amount: float = Field(0, ge=0)


class Rental(Record):
    """
    Rental agreements
    Collection: "rental"
    """
    user_id: str
    vehicle_id: str = Field(..., description="ID of the rented vehicle")
    customer_id: str = Field(..., description="ID of the customer")
    start_date: date = Field(..., description="First rental day")
    end_date: date = Field(..., description="Return day")
    total_cost: float = Field(..., ge=0, description="Days x daily rate")
    status: RentalStatus = "active"
    payment_status: PaymentStatus = "pending"
    paid_amount: Optional[float] = Field(None, ge=0)
    additional_fees: AdditionalFees = Field(default_factory=AdditionalFees)
    payment_method: PaymentMethod = "cash"
    wilaya: Optional[str] = None
    contract_id: Optional[str] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def truncate_dates(cls, v):
        return as_calendar_date(v)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class VehicleExpense(Record):
    """
    Expenses tied to one vehicle (or to none)
    Collection: "expense"
    """
    user_id: str
    car_id: Optional[str] = None
    name: str
    amount: float = Field(..., ge=0)
    date: datetime

    @field_validator("date", mode="before")
    @classmethod
    def utc_date(cls, v):
        return as_utc(v)


class BusinessExpense(Record):
    """
    Business-wide expenses
    Collection: "business_expense"
    """
    user_id: str
    designation: str
    amount: float = Field(..., ge=0)
    date: datetime

    @field_validator("date", mode="before")
    @classmethod
    def utc_date(cls, v):
        return as_utc(v)


class Subscription(Record):
    """
    Account subscriptions
    Collection: "subscription"
    """
    user_id: str
    plan_id: PlanId
    status: SubscriptionStatus
    billing_period: BillingPeriod = "monthly"
    start_date: datetime
    end_date: datetime
    price: float = Field(..., description="-1 means quote on request")
    max_vehicles: int = Field(..., description="-1 means unlimited")
    features: List[str] = Field(default_factory=list)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def utc_dates(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def check_period(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class Invoice(Record):
    """
    Subscription invoices
    Collection: "invoice"
    """
    user_id: str
    subscription_id: str
    number: str = Field(..., description="INV-YYYYMM-NNNN")
    sequence: int = Field(..., ge=1, description="Global invoice counter behind the number")
    amount: float
    status: InvoiceStatus = "pending"
    billing_period: BillingPeriod
    issue_date: datetime
    due_date: datetime
    paid_date: Optional[datetime] = None
    plan_name: str

    @field_validator("issue_date", "due_date", "paid_date", mode="before")
    @classmethod
    def utc_dates(cls, v):
        return as_utc(v)


class Payment(Record):
    """
    Subscription payments received
    Collection: "payment"
    """
    user_id: str
    invoice_id: Optional[str] = None
    amount: float = Field(..., ge=0)
    date: datetime

    @field_validator("date", mode="before")
    @classmethod
    def utc_date(cls, v):
        return as_utc(v)
