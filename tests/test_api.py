from datetime import timedelta

from fastapi.testclient import TestClient

from config import Settings
from main import create_app

USER = {"X-User-Id": "u1"}
ADMIN = {"X-User-Role": "admin"}


def start_trial(client, headers=USER):
    res = client.post("/api/subscriptions", json={"plan_id": "trial"}, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


def add_fleet(client):
    vehicle = client.post("/api/vehicles", json={
        "brand": "Renault", "model": "Clio", "year": 2021, "registration": "12345-121-16", "daily_rate": 5000,
    }, headers=USER).json()
    customer = client.post("/api/customers", json={"first_name": "Amina", "last_name": "Belkacem"}, headers=USER).json()
    return vehicle, customer


def test_root(client):
    assert client.get("/").json() == {"message": "Fleet Rental Backend is running"}


def test_missing_user_header(client):
    assert client.get("/api/vehicles").status_code == 401


def test_quote_same_day_and_multi_day(client):
    start_trial(client)
    vehicle, _ = add_fleet(client)

    same_day = client.post("/api/rentals/quote", json={
        "vehicle_id": vehicle["id"], "start_date": "2024-01-01", "end_date": "2024-01-01",
    }, headers=USER).json()
    assert same_day["days"] == 1
    assert same_day["total_cost"] == 5000

    three = client.post("/api/rentals/quote", json={
        "vehicle_id": vehicle["id"], "start_date": "2024-01-01", "end_date": "2024-01-04",
    }, headers=USER).json()
    assert three["days"] == 3
    assert three["total_cost"] == 15000


def test_rental_lifecycle(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)

    res = client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"],
        "customer_id": customer["id"],
        "start_date": "2024-01-01",
        "end_date": "2024-01-04",
        "payment_status": "partial",
        "paid_amount": 10000,
        "additional_fees": {"description": "Child seat", "amount": 2000},
    }, headers=USER)
    assert res.status_code == 200, res.text
    rental = res.json()
    assert rental["total_cost"] == 15000
    assert rental["days"] == 3
    assert rental["payment"] == {"total_due": 17000, "paid_amount": 10000, "remaining_amount": 7000}
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "rented"

    busy = client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"], "customer_id": customer["id"],
        "start_date": "2024-01-05", "end_date": "2024-01-06",
    }, headers=USER)
    assert busy.status_code == 400

    paid = client.patch(f"/api/rentals/{rental['id']}/payment", json={"payment_status": "paid"}, headers=USER).json()
    assert paid["payment"]["remaining_amount"] == 0
    assert paid["paid_amount"] == 17000

    done = client.patch(f"/api/rentals/{rental['id']}/status", json={"status": "completed"}, headers=USER)
    assert done.json()["status"] == "completed"
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "available"

    moved = client.patch(f"/api/rentals/{rental['id']}/dates", json={
        "start_date": "2024-01-02", "end_date": "2024-01-02",
    }, headers=USER).json()
    assert moved["total_cost"] == 5000
    assert moved["payment"]["paid_amount"] == 7000

    assert client.delete(f"/api/rentals/{rental['id']}", headers=USER).json() == {"ok": True}
    assert client.get(f"/api/rentals/{rental['id']}", headers=USER).status_code == 404


def test_overpaid_partial_rental_is_rejected(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    res = client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"], "customer_id": customer["id"],
        "start_date": "2024-01-01", "end_date": "2024-01-02",
        "payment_status": "partial", "paid_amount": 9000,
    }, headers=USER)
    assert res.status_code == 422


def test_rentals_belong_to_their_owner(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    rental = client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"], "customer_id": customer["id"],
        "start_date": "2024-01-01", "end_date": "2024-01-02",
    }, headers=USER).json()
    assert client.get(f"/api/rentals/{rental['id']}", headers={"X-User-Id": "u2"}).status_code == 404
    assert client.get("/api/rentals/not-an-id", headers=USER).status_code == 400


def test_corrupt_stored_status_is_a_conflict(client, db):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    rental = client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"], "customer_id": customer["id"],
        "start_date": "2024-01-01", "end_date": "2024-01-02",
    }, headers=USER).json()
    db["rental"].update_one({}, {"$set": {"payment_status": "refunded"}})
    assert client.get(f"/api/rentals/{rental['id']}/payment", headers=USER).status_code == 409


def test_cash_journal(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    client.post("/api/rentals", json={
        "vehicle_id": vehicle["id"], "customer_id": customer["id"],
        "start_date": "2024-01-01", "end_date": "2024-01-04",
        "payment_status": "partial", "paid_amount": 10000,
        "additional_fees": {"description": "Delivery", "amount": 2000},
    }, headers=USER)
    client.post("/api/expenses", json={
        "car_id": vehicle["id"], "name": "Oil change", "amount": 3000, "date": "2024-01-10T09:00:00Z",
    }, headers=USER)
    client.post("/api/business-expenses", json={
        "designation": "Office rent", "amount": 1000, "date": "2024-01-12T09:00:00Z",
    }, headers=USER)
    client.post("/api/business-expenses", json={
        "designation": "Last month", "amount": 999, "date": "2023-12-31T09:00:00Z",
    }, headers=USER)

    journal = client.get("/api/cash-journal", params={"year": 2024, "month": 1}, headers=USER).json()
    assert [e["designation"] for e in journal["entries"]] == [
        "Business expense - Office rent",
        "Oil change - Renault Clio",
        "Rental - Renault Clio",
    ]
    assert journal["total_revenue"] == 10000
    assert journal["total_expense"] == 4000
    assert journal["total_pending"] == 7000
    assert journal["net_cash"] == 6000


def test_protected_routes_need_a_subscription(client):
    res = client.post("/api/business-expenses", json={
        "designation": "Office rent", "amount": 1000, "date": "2024-01-12T09:00:00Z",
    }, headers=USER)
    assert res.status_code == 403


def test_trial_expires_with_time(client, clock):
    start_trial(client)
    status = client.get("/api/subscriptions/status", headers=USER).json()
    assert status["is_valid"] is True
    assert status["days_remaining"] == 14

    clock.now = clock.now + timedelta(days=10)
    status = client.get("/api/subscriptions/status", headers=USER).json()
    assert status["warning"] is True
    assert status["days_remaining"] == 4

    clock.now = clock.now + timedelta(days=10)
    status = client.get("/api/subscriptions/status", headers=USER).json()
    assert status == {
        "is_valid": False,
        "days_remaining": 0,
        "status": "expired",
        "warning": False,
        "message": "Your subscription has expired",
    }
    assert client.get("/api/cash-journal", headers=USER).status_code == 403


def test_paid_plan_needs_approval(client):
    sub = client.post("/api/subscriptions", json={"plan_id": "basic"}, headers=USER).json()
    assert sub["status"] == "pending"
    assert sub["display_price"] == "2,999 DZD/month"
    assert sub["invoice"]["number"] == "INV-202401-0001"
    assert sub["invoice"]["amount"] == 2999

    vehicle = {"brand": "Dacia", "model": "Logan", "year": 2020, "registration": "1", "daily_rate": 4000}
    assert client.post("/api/vehicles", json=vehicle, headers=USER).status_code == 403
    assert client.post(f"/api/subscriptions/{sub['id']}/approve", headers=USER).status_code == 403

    approved = client.post(f"/api/subscriptions/{sub['id']}/approve", headers=ADMIN).json()
    assert approved["status"] == "active"
    assert client.post("/api/vehicles", json=vehicle, headers=USER).status_code == 200


def test_invoice_payment_feeds_revenue_metric(client):
    sub = client.post("/api/subscriptions", json={"plan_id": "pro"}, headers=USER).json()
    second = client.post(f"/api/subscriptions/{sub['id']}/invoices", headers=USER).json()
    assert second["number"] == "INV-202401-0002"

    invoices = client.get("/api/invoices", headers=USER).json()
    assert len(invoices) == 2

    paid = client.post(f"/api/invoices/{sub['invoice']['id']}/pay", headers=ADMIN).json()
    assert paid["status"] == "paid"
    assert client.post(f"/api/invoices/{sub['invoice']['id']}/pay", headers=ADMIN).status_code == 400

    metrics = client.get("/api/metrics/revenue", headers=ADMIN).json()
    assert metrics == {"revenue_this_month": 4999, "revenue_last_month": 0, "percentage_change": 100.0}


def test_plans_show_quote_on_request(client):
    plans = {p["id"]: p for p in client.get("/api/plans").json()}
    assert set(plans) == {"trial", "basic", "pro", "enterprise"}
    assert plans["enterprise"]["display_monthly_price"] == "quote on request"
    assert plans["trial"]["display_monthly_price"] == "free"


def test_enterprise_subscription_has_no_numeric_price(client):
    sub = client.post("/api/subscriptions", json={"plan_id": "enterprise"}, headers=USER).json()
    assert sub["display_price"] == "quote on request"
    assert "invoice" not in sub


def test_vehicle_limit_on_trial(client):
    start_trial(client)
    for i in range(5):
        res = client.post("/api/vehicles", json={
            "brand": "Kia", "model": "Picanto", "year": 2022, "registration": f"R{i}", "daily_rate": 3000,
        }, headers=USER)
        assert res.status_code == 200
    res = client.post("/api/vehicles", json={
        "brand": "Kia", "model": "Picanto", "year": 2022, "registration": "R5", "daily_rate": 3000,
    }, headers=USER)
    assert res.status_code == 403


def test_no_database_is_service_unavailable():
    client = TestClient(create_app(Settings(), db=None))
    res = client.get("/api/vehicles", headers=USER)
    assert res.status_code == 503
    assert res.json() == {"detail": "Database not available"}


def test_diagnostics_report_configured_database_url(client, db, clock):
    assert client.get("/test").json()["database_url"] == "❌ Not Set"

    settings = Settings(database_url="mongodb://db.internal:27017", database_name="rental_test")
    configured = TestClient(create_app(settings, db=db, clock=clock))
    body = configured.get("/test").json()
    assert body["database_url"] == "✅ Set"
    assert body["database_name"] == "rental_test"


def test_reservation_cannot_start_on_a_rented_vehicle(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    booking = {"vehicle_id": vehicle["id"], "customer_id": customer["id"]}
    active = client.post("/api/rentals", json={
        **booking, "start_date": "2024-01-01", "end_date": "2024-01-04",
    }, headers=USER).json()
    reserved = client.post("/api/rentals", json={
        **booking, "start_date": "2024-02-01", "end_date": "2024-02-03", "status": "reservation",
    }, headers=USER).json()
    assert reserved["status"] == "reservation"

    res = client.patch(f"/api/rentals/{reserved['id']}/status", json={"status": "active"}, headers=USER)
    assert res.status_code == 400
    assert client.get(f"/api/rentals/{reserved['id']}", headers=USER).json()["status"] == "reservation"
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "rented"

    client.patch(f"/api/rentals/{active['id']}/status", json={"status": "completed"}, headers=USER)
    res = client.patch(f"/api/rentals/{reserved['id']}/status", json={"status": "active"}, headers=USER)
    assert res.status_code == 200
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "rented"


def test_closing_an_inactive_rental_keeps_the_vehicle(client):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    booking = {"vehicle_id": vehicle["id"], "customer_id": customer["id"]}
    active = client.post("/api/rentals", json={
        **booking, "start_date": "2024-01-01", "end_date": "2024-01-04",
    }, headers=USER).json()
    reserved = client.post("/api/rentals", json={
        **booking, "start_date": "2024-02-01", "end_date": "2024-02-03", "status": "reservation",
    }, headers=USER).json()

    cancelled = client.patch(f"/api/rentals/{reserved['id']}/status", json={"status": "cancelled"}, headers=USER)
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "rented"

    client.patch(f"/api/rentals/{active['id']}/status", json={"status": "completed"}, headers=USER)
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "available"

    # A later rental takes the car; the finished one must not release it again
    later = client.post("/api/rentals", json={
        **booking, "start_date": "2024-03-01", "end_date": "2024-03-02",
    }, headers=USER).json()
    assert later["status"] == "active"
    client.patch(f"/api/rentals/{active['id']}/status", json={"status": "cancelled"}, headers=USER)
    assert client.get(f"/api/vehicles/{vehicle['id']}", headers=USER).json()["status"] == "rented"


def test_invoice_numbers_keep_counting_past_four_digits(client, db):
    sub = client.post("/api/subscriptions", json={"plan_id": "basic"}, headers=USER).json()
    db["invoice"].update_one({}, {"$set": {"number": "INV-202401-9999", "sequence": 9999}})

    first = client.post(f"/api/subscriptions/{sub['id']}/invoices", headers=USER).json()
    assert first["number"] == "INV-202401-10000"
    assert first["sequence"] == 10000
    second = client.post(f"/api/subscriptions/{sub['id']}/invoices", headers=USER).json()
    assert second["number"] == "INV-202401-10001"


def test_stored_vehicle_without_rate_cannot_be_priced(client, db):
    start_trial(client)
    vehicle, customer = add_fleet(client)
    quote = {"vehicle_id": vehicle["id"], "start_date": "2024-01-01", "end_date": "2024-01-02"}

    db["vehicle"].update_one({}, {"$unset": {"daily_rate": ""}})
    res = client.post("/api/rentals/quote", json=quote, headers=USER)
    assert res.status_code == 422
    assert res.json() == {"detail": "Vehicle has no daily rate"}
    res = client.post("/api/rentals", json={**quote, "customer_id": customer["id"]}, headers=USER)
    assert res.status_code == 422

    db["vehicle"].update_one({}, {"$set": {"daily_rate": -100}})
    assert client.post("/api/rentals/quote", json=quote, headers=USER).status_code == 422
