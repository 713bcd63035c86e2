import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import cash_journal
import pricing
import subscriptions
from config import Settings, configure_logging
from database import (
    connect,
    create_document,
    decode,
    decode_with_id,
    delete_document,
    find_document,
    get_documents,
    mongo_datetime,
    object_id,
    require_db,
    serialize_doc,
    update_document,
)
from errors import RentalAppError
from payments import rental_breakdown
from schemas import (
    AdditionalFees,
    BillingPeriod,
    BusinessExpense,
    Customer,
    Invoice,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PlanId,
    Rental,
    RentalStatus,
    Subscription,
    Vehicle,
    VehicleExpense,
)

logger = logging.getLogger(__name__)


# ---------- Context ----------

def get_db(request: Request) -> Optional[Database]:
    return request.app.state.db


def get_now(request: Request) -> datetime:
    return request.app.state.clock()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def require_admin(x_user_role: Optional[str] = Header(None)) -> str:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return "admin"


def load_owned(db, collection: str, model: Type[BaseModel], doc_id: str, user_id: Optional[str]) -> Tuple[Any, Any]:
    """Fetch one record by id, 404 if it is missing or belongs to someone else."""
    try:
        oid = object_id(doc_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {collection} id")
    doc = find_document(db, collection, {"_id": oid})
    if not doc or (user_id is not None and doc.get("user_id") != user_id):
        raise HTTPException(status_code=404, detail=f"{collection.replace('_', ' ').capitalize()} not found")
    return oid, decode(model, doc)


def latest_subscription(db, user_id: str) -> Optional[Tuple[str, Subscription]]:
    docs = get_documents(db, "subscription", {"user_id": user_id}, sort=[("start_date", -1)], limit=1)
    if not docs:
        return None
    return decode_with_id(Subscription, docs[0])


def require_subscription(
    db=Depends(get_db),
    user_id: str = Depends(current_user_id),
    now: datetime = Depends(get_now),
) -> str:
    found = latest_subscription(db, user_id)
    check = subscriptions.check_subscription(found[1] if found else None, now)
    if not subscriptions.can_access(check):
        raise HTTPException(status_code=403, detail=check.message or "Subscription inactive")
    return user_id


router = APIRouter()


# ---------- Health + DB test ----------

@router.get("/")
def read_root():
    return {"message": "Fleet Rental Backend is running"}


@router.get("/test")
def test_database(db=Depends(get_db), settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            logger.warning("database diagnostics failed: %s", e)
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    return response


# ---------- Vehicles ----------

class CreateVehicleRequest(BaseModel):
    brand: str
    model: str
    year: int = Field(..., ge=1900, le=2100)
    registration: str
    daily_rate: float = Field(..., ge=0)
    mileage: Optional[int] = Field(None, ge=0)
    fuel_type: Optional[str] = None


@router.get("/api/vehicles")
def list_vehicles(status: Optional[str] = None, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    filt: Dict[str, Any] = {"user_id": user_id}
    if status:
        filt["status"] = status
    return [serialize_doc(v) for v in get_documents(db, "vehicle", filt)]


@router.get("/api/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: str, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    oid, _ = load_owned(db, "vehicle", Vehicle, vehicle_id, user_id)
    return serialize_doc(find_document(db, "vehicle", {"_id": oid}))


@router.post("/api/vehicles")
def add_vehicle(payload: CreateVehicleRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    found = latest_subscription(db, user_id)
    count = require_db(db)["vehicle"].count_documents({"user_id": user_id})
    if not subscriptions.can_add_vehicle(found[1] if found else None, count):
        raise HTTPException(status_code=403, detail="Vehicle limit reached for your plan")

    existing = find_document(db, "vehicle", {"user_id": user_id, "registration": payload.registration})
    if existing:
        raise HTTPException(status_code=400, detail="Registration already exists")

    vehicle = Vehicle(user_id=user_id, **payload.model_dump())
    vehicle_id = create_document(db, "vehicle", vehicle)
    return serialize_doc(find_document(db, "vehicle", {"_id": object_id(vehicle_id)}))


# ---------- Customers ----------

class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    driving_license: Optional[str] = None


@router.get("/api/customers")
def list_customers(db=Depends(get_db), user_id: str = Depends(current_user_id)):
    return [serialize_doc(c) for c in get_documents(db, "customer", {"user_id": user_id})]


@router.post("/api/customers")
def add_customer(payload: CreateCustomerRequest, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    customer_id = create_document(db, "customer", Customer(user_id=user_id, **payload.model_dump()))
    return serialize_doc(find_document(db, "customer", {"_id": object_id(customer_id)}))


# ---------- Rentals ----------

class QuoteRequest(BaseModel):
    vehicle_id: str
    start_date: date
    end_date: date


class CreateRentalRequest(BaseModel):
    vehicle_id: str
    customer_id: str
    start_date: date
    end_date: date
    status: RentalStatus = "active"
    payment_status: PaymentStatus = "pending"
    paid_amount: Optional[float] = Field(None, ge=0)
    additional_fees: AdditionalFees = Field(default_factory=AdditionalFees)
    payment_method: PaymentMethod = "cash"
    wilaya: Optional[str] = None


class RentalStatusRequest(BaseModel):
    status: RentalStatus


class RentalPaymentRequest(BaseModel):
    payment_status: PaymentStatus
    paid_amount: Optional[float] = Field(None, ge=0)


class RentalDatesRequest(BaseModel):
    start_date: date
    end_date: date


def rental_view(rental_id: str, rental: Rental) -> Dict[str, Any]:
    out = serialize_doc(rental.model_dump())
    out["id"] = rental_id
    out["days"] = pricing.rental_days(rental.start_date, rental.end_date)
    out["payment"] = rental_breakdown(rental).model_dump()
    return out


def set_vehicle_status(db, vehicle_id: str, status: str) -> None:
    update_document(db, "vehicle", object_id(vehicle_id), {"status": status})
    logger.info("vehicle %s is now %s", vehicle_id, status)


@router.post("/api/rentals/quote")
def quote_rental(payload: QuoteRequest, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    _, vehicle = load_owned(db, "vehicle", Vehicle, payload.vehicle_id, user_id)
    quote = pricing.quote_rental(payload.start_date, payload.end_date, vehicle.daily_rate)
    return serialize_doc(quote.model_dump())


@router.post("/api/rentals")
def create_rental(payload: CreateRentalRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    _, vehicle = load_owned(db, "vehicle", Vehicle, payload.vehicle_id, user_id)
    load_owned(db, "customer", Customer, payload.customer_id, user_id)
    if payload.status == "active" and vehicle.status != "available":
        raise HTTPException(status_code=400, detail="Vehicle is not available")

    rental = Rental(
        user_id=user_id,
        total_cost=pricing.rental_cost(payload.start_date, payload.end_date, vehicle.daily_rate),
        **payload.model_dump(),
    )
    # Store the paid amount the status implies so reads never disagree
    rental.paid_amount = rental_breakdown(rental).paid_amount
    rental_id = create_document(db, "rental", rental)

    if rental.status == "active":
        set_vehicle_status(db, payload.vehicle_id, "rented")
    return rental_view(rental_id, rental)


@router.get("/api/rentals")
def list_rentals(status: Optional[str] = None, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    filt: Dict[str, Any] = {"user_id": user_id}
    if status:
        filt["status"] = status
    docs = get_documents(db, "rental", filt, sort=[("start_date", -1)])
    return [rental_view(*decode_with_id(Rental, d)) for d in docs]


@router.get("/api/rentals/{rental_id}")
def get_rental(rental_id: str, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    _, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    return rental_view(rental_id, rental)


@router.get("/api/rentals/{rental_id}/payment")
def get_rental_payment(rental_id: str, db=Depends(get_db), user_id: str = Depends(current_user_id)):
    _, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    return rental_breakdown(rental).model_dump()


@router.patch("/api/rentals/{rental_id}/status")
def update_rental_status(rental_id: str, payload: RentalStatusRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    oid, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    was_active = rental.status == "active"
    becomes_active = payload.status == "active" and not was_active
    if becomes_active:
        _, vehicle = load_owned(db, "vehicle", Vehicle, rental.vehicle_id, user_id)
        if vehicle.status != "available":
            raise HTTPException(status_code=400, detail="Vehicle is not available")

    update_document(db, "rental", oid, {"status": payload.status})
    logger.info("rental %s: %s -> %s", rental_id, rental.status, payload.status)

    # Only the rental holding the vehicle may hand it back
    if was_active and payload.status != "active":
        set_vehicle_status(db, rental.vehicle_id, "available")
    elif becomes_active:
        set_vehicle_status(db, rental.vehicle_id, "rented")
    rental.status = payload.status
    return rental_view(rental_id, rental)


@router.patch("/api/rentals/{rental_id}/payment")
def update_rental_payment(rental_id: str, payload: RentalPaymentRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    oid, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    rental.payment_status = payload.payment_status
    rental.paid_amount = payload.paid_amount
    breakdown = rental_breakdown(rental)
    rental.paid_amount = breakdown.paid_amount
    update_document(db, "rental", oid, {"payment_status": rental.payment_status, "paid_amount": rental.paid_amount})
    return rental_view(rental_id, rental)


@router.patch("/api/rentals/{rental_id}/dates")
def update_rental_dates(rental_id: str, payload: RentalDatesRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    oid, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    _, vehicle = load_owned(db, "vehicle", Vehicle, rental.vehicle_id, user_id)
    rental.start_date = payload.start_date
    rental.end_date = payload.end_date
    rental.total_cost = pricing.rental_cost(payload.start_date, payload.end_date, vehicle.daily_rate)
    rental.paid_amount = rental_breakdown(rental).paid_amount
    update_document(db, "rental", oid, {
        "start_date": rental.start_date,
        "end_date": rental.end_date,
        "total_cost": rental.total_cost,
        "paid_amount": rental.paid_amount,
    })
    return rental_view(rental_id, rental)


@router.delete("/api/rentals/{rental_id}")
def delete_rental(rental_id: str, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    oid, rental = load_owned(db, "rental", Rental, rental_id, user_id)
    delete_document(db, "rental", oid)
    if rental.status == "active":
        set_vehicle_status(db, rental.vehicle_id, "available")
    return {"ok": True}


# ---------- Expenses ----------

class VehicleExpenseRequest(BaseModel):
    car_id: Optional[str] = None
    name: str
    amount: float = Field(..., ge=0)
    date: datetime


class BusinessExpenseRequest(BaseModel):
    designation: str
    amount: float = Field(..., ge=0)
    date: datetime


@router.post("/api/expenses")
def add_vehicle_expense(payload: VehicleExpenseRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    if payload.car_id:
        load_owned(db, "vehicle", Vehicle, payload.car_id, user_id)
    expense_id = create_document(db, "expense", VehicleExpense(user_id=user_id, **payload.model_dump()))
    return serialize_doc(find_document(db, "expense", {"_id": object_id(expense_id)}))


@router.get("/api/expenses")
def list_vehicle_expenses(db=Depends(get_db), user_id: str = Depends(current_user_id)):
    return [serialize_doc(e) for e in get_documents(db, "expense", {"user_id": user_id}, sort=[("date", -1)])]


@router.post("/api/business-expenses")
def add_business_expense(payload: BusinessExpenseRequest, db=Depends(get_db), user_id: str = Depends(require_subscription)):
    expense_id = create_document(db, "business_expense", BusinessExpense(user_id=user_id, **payload.model_dump()))
    return serialize_doc(find_document(db, "business_expense", {"_id": object_id(expense_id)}))


@router.get("/api/business-expenses")
def list_business_expenses(db=Depends(get_db), user_id: str = Depends(current_user_id)):
    return [serialize_doc(e) for e in get_documents(db, "business_expense", {"user_id": user_id}, sort=[("date", -1)])]


# ---------- Cash journal ----------

@router.get("/api/cash-journal")
def get_cash_journal(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db=Depends(get_db),
    user_id: str = Depends(require_subscription),
    now: datetime = Depends(get_now),
):
    start, end = cash_journal.month_window(year or now.year, month or now.month)
    in_window = {"$gte": mongo_datetime(start), "$lt": mongo_datetime(end)}

    vehicles = {
        vid: v for vid, v in (decode_with_id(Vehicle, d) for d in get_documents(db, "vehicle", {"user_id": user_id}))
    }
    rentals = [decode_with_id(Rental, d) for d in get_documents(db, "rental", {"user_id": user_id, "start_date": in_window})]
    vehicle_expenses = [decode_with_id(VehicleExpense, d) for d in get_documents(db, "expense", {"user_id": user_id, "date": in_window})]
    business_expenses = [
        decode_with_id(BusinessExpense, d) for d in get_documents(db, "business_expense", {"user_id": user_id, "date": in_window})
    ]

    journal = cash_journal.build_journal(rentals, vehicle_expenses, business_expenses, vehicles, start, end)
    return serialize_doc(journal.model_dump())


# ---------- Plans & subscriptions ----------

class CreateSubscriptionRequest(BaseModel):
    plan_id: PlanId
    billing_period: BillingPeriod = "monthly"


class RenewRequest(BaseModel):
    billing_period: BillingPeriod = "monthly"


class UpgradeRequest(BaseModel):
    plan_id: PlanId


def subscription_view(subscription_id: str, subscription: Subscription, settings: Settings) -> Dict[str, Any]:
    out = serialize_doc(subscription.model_dump())
    out["id"] = subscription_id
    out["display_price"] = subscriptions.format_price(subscription.price, subscription.billing_period, settings.currency)
    return out


def save_subscription(db, oid, subscription: Subscription) -> None:
    changes = subscription.model_dump(exclude={"user_id", "schema_version"})
    update_document(db, "subscription", oid, changes)


def last_invoice_sequence(db) -> int:
    # Numbers outgrow their zero padding, so order on the integer counter
    docs = get_documents(db, "invoice", {}, sort=[("sequence", -1)], limit=1)
    if not docs:
        return 0
    return decode(Invoice, docs[0]).sequence


def issue_invoice(db, subscription_id: str, subscription: Subscription, now: datetime) -> Dict[str, Any]:
    invoice = subscriptions.build_invoice(subscription_id, subscription, last_invoice_sequence(db), now)
    invoice_id = create_document(db, "invoice", invoice)
    logger.info("issued invoice %s for subscription %s", invoice.number, subscription_id)
    return serialize_doc(find_document(db, "invoice", {"_id": object_id(invoice_id)}))


@router.get("/api/plans")
def list_plans(settings: Settings = Depends(get_settings)):
    plans = []
    for plan in subscriptions.PLANS:
        item = plan.model_dump()
        item["display_monthly_price"] = subscriptions.format_price(plan.monthly_price, "monthly", settings.currency)
        item["display_annual_price"] = subscriptions.format_price(plan.annual_price, "annual", settings.currency)
        plans.append(item)
    return plans


@router.post("/api/subscriptions")
def create_subscription(
    payload: CreateSubscriptionRequest,
    db=Depends(get_db),
    user_id: str = Depends(current_user_id),
    now: datetime = Depends(get_now),
    settings: Settings = Depends(get_settings),
):
    found = latest_subscription(db, user_id)
    if found and found[1].status in subscriptions.CURRENT_STATUSES and subscriptions.days_remaining(found[1].end_date, now) > 0:
        raise HTTPException(status_code=400, detail="Subscription already exists")

    subscription = subscriptions.new_subscription(user_id, payload.plan_id, payload.billing_period, now)
    subscription_id = create_document(db, "subscription", subscription)
    response = subscription_view(subscription_id, subscription, settings)
    if subscription.price > 0:
        response["invoice"] = issue_invoice(db, subscription_id, subscription, now)
    return response


@router.get("/api/subscriptions/status")
def subscription_status(db=Depends(get_db), user_id: str = Depends(current_user_id), now: datetime = Depends(get_now)):
    found = latest_subscription(db, user_id)
    check = subscriptions.check_subscription(found[1] if found else None, now)
    if found and check.status == "expired" and found[1].status != "expired":
        subscription_id, subscription = found
        save_subscription(db, object_id(subscription_id), subscriptions.expire(subscription))
    return check.model_dump()


@router.post("/api/subscriptions/{subscription_id}/renew")
def renew_subscription(
    subscription_id: str,
    payload: RenewRequest,
    db=Depends(get_db),
    user_id: str = Depends(current_user_id),
    now: datetime = Depends(get_now),
    settings: Settings = Depends(get_settings),
):
    oid, subscription = load_owned(db, "subscription", Subscription, subscription_id, user_id)
    renewed = subscriptions.renew(subscription, payload.billing_period, now)
    save_subscription(db, oid, renewed)
    return subscription_view(subscription_id, renewed, settings)


@router.post("/api/subscriptions/{subscription_id}/upgrade")
def upgrade_subscription(
    subscription_id: str,
    payload: UpgradeRequest,
    db=Depends(get_db),
    user_id: str = Depends(current_user_id),
    settings: Settings = Depends(get_settings),
):
    oid, subscription = load_owned(db, "subscription", Subscription, subscription_id, user_id)
    upgraded = subscriptions.upgrade(subscription, payload.plan_id)
    save_subscription(db, oid, upgraded)
    return subscription_view(subscription_id, upgraded, settings)


@router.post("/api/subscriptions/{subscription_id}/invoices")
def create_invoice(subscription_id: str, db=Depends(get_db), user_id: str = Depends(current_user_id), now: datetime = Depends(get_now)):
    _, subscription = load_owned(db, "subscription", Subscription, subscription_id, user_id)
    return issue_invoice(db, subscription_id, subscription, now)


def administer(db, subscription_id: str, transition: Callable[[Subscription], Subscription], settings: Settings):
    oid, subscription = load_owned(db, "subscription", Subscription, subscription_id, None)
    changed = transition(subscription)
    save_subscription(db, oid, changed)
    return subscription_view(subscription_id, changed, settings)


@router.post("/api/subscriptions/{subscription_id}/approve")
def approve_subscription(subscription_id: str, db=Depends(get_db), _admin: str = Depends(require_admin), settings: Settings = Depends(get_settings)):
    return administer(db, subscription_id, subscriptions.approve, settings)


@router.post("/api/subscriptions/{subscription_id}/reject")
def reject_subscription(subscription_id: str, db=Depends(get_db), _admin: str = Depends(require_admin), settings: Settings = Depends(get_settings)):
    return administer(db, subscription_id, subscriptions.reject, settings)


@router.post("/api/subscriptions/{subscription_id}/suspend")
def suspend_subscription(subscription_id: str, db=Depends(get_db), _admin: str = Depends(require_admin), settings: Settings = Depends(get_settings)):
    return administer(db, subscription_id, subscriptions.suspend, settings)


# ---------- Invoices & revenue ----------

@router.get("/api/invoices")
def list_invoices(db=Depends(get_db), user_id: str = Depends(current_user_id)):
    docs = get_documents(db, "invoice", {"user_id": user_id}, sort=[("issue_date", -1)], limit=50)
    return [serialize_doc(d) for d in docs]


@router.post("/api/invoices/{invoice_id}/pay")
def mark_invoice_paid(invoice_id: str, db=Depends(get_db), _admin: str = Depends(require_admin), now: datetime = Depends(get_now)):
    oid, invoice = load_owned(db, "invoice", Invoice, invoice_id, None)
    if invoice.status != "pending":
        raise HTTPException(status_code=400, detail=f"Invoice is {invoice.status}")
    update_document(db, "invoice", oid, {"status": "paid", "paid_date": now})
    create_document(db, "payment", Payment(user_id=invoice.user_id, invoice_id=invoice_id, amount=invoice.amount, date=now))
    return serialize_doc(find_document(db, "invoice", {"_id": oid}))


@router.get("/api/metrics/revenue")
def revenue_metrics(db=Depends(get_db), _admin: str = Depends(require_admin), now: datetime = Depends(get_now)):
    current_start, current_end = cash_journal.month_window(now.year, now.month)
    if now.month == 1:
        previous_start, _ = cash_journal.month_window(now.year - 1, 12)
    else:
        previous_start, _ = cash_journal.month_window(now.year, now.month - 1)

    def total(start: datetime, end: datetime) -> float:
        docs = get_documents(db, "payment", {"date": {"$gte": mongo_datetime(start), "$lt": mongo_datetime(end)}})
        return sum(decode(Payment, d).amount for d in docs)

    current = total(current_start, current_end)
    previous = total(previous_start, current_start)
    return {
        "revenue_this_month": current,
        "revenue_last_month": previous,
        "percentage_change": round(cash_journal.percentage_change(previous, current), 2),
    }


# ---------- App ----------

async def handle_app_error(request: Request, exc: RentalAppError):
    logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    if db is None:
        db = connect(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.db is not None:
            app.state.db.client.close()

    app = FastAPI(title="Fleet Rental API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.clock = clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RentalAppError, handle_app_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
