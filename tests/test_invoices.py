import re

import pytest
from bson import ObjectId

from conftest import auth, create_customer, create_invoice, create_product
from errors import ValidationError
from invoices import compute_totals, line_total, round_half_up
from schemas import InvoiceItem


def item(total, tax_rate):
    return InvoiceItem(product=str(ObjectId()), name="x", hsn_code="1", unit="kg",
                       quantity=1, price=total, tax_rate=tax_rate, total=total)


def test_round_half_up():
    assert round_half_up(2.5) == 3.0
    assert round_half_up(3.49) == 3.0
    assert round_half_up(255.5) == 256.0


def test_line_total_applies_discount():
    assert line_total(100, 2, 10) == 190


def test_discount_larger_than_line_is_rejected():
    with pytest.raises(ValidationError):
        line_total(10, 1, 11)


def test_compute_totals():
    totals = compute_totals([item(190, 5), item(49.99, 12)])

    assert totals == {
        "subtotal": 239.99,
        "tax_amount": 15.5,
        "total": 255.49,
        "final_total": 255.0,
        "round_off": -0.49,
    }


@pytest.fixture
def stock(client, admin):
    headers = auth(admin)
    seeds = create_product(client, headers, sku="SEED-1", price=100, tax_rate=5, stock=10)
    urea = create_product(client, headers, name="Urea 45kg", category="Fertilizers", sku="FERT-1",
                          unit="kg", price=49.99, tax_rate=12, stock=2)
    return seeds, urea


@pytest.fixture
def customer(client, staff):
    return create_customer(client, auth(staff))


def product_stock(db, product):
    return db.product.find_one({"_id": ObjectId(product["_id"])})["stock"]


def test_invoice_totals_and_stock(client, staff, db, stock, customer):
    seeds, urea = stock

    invoice = create_invoice(client, auth(staff), customer["_id"], [
        {"product": seeds["_id"], "quantity": 2, "discount": 10},
        {"product": urea["_id"], "quantity": 1},
    ])

    assert re.match(r"^INV-\d{8}-0001$", invoice["invoice_number"])
    assert [line["total"] for line in invoice["items"]] == [190, 49.99]
    assert invoice["subtotal"] == 239.99
    assert invoice["tax_amount"] == 15.5
    assert invoice["total"] == 255.49
    assert invoice["final_total"] == 255
    assert invoice["round_off"] == -0.49
    assert invoice["payment_status"] == "pending"
    assert invoice["customer_details"]["name"] == "Ramesh Patil"
    assert invoice["customer_details"]["address"] == "12 Market Road, Nashik, Maharashtra 422001, India"
    assert product_stock(db, seeds) == 8
    assert product_stock(db, urea) == 1


def test_invoice_numbers_increase(client, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)

    first = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])
    second = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])

    assert first["invoice_number"].endswith("-0001")
    assert second["invoice_number"].endswith("-0002")


def test_insufficient_stock_rolls_back_every_line(client, staff, db, stock, customer):
    seeds, urea = stock

    res = client.post("/invoices", json={"customer": customer["_id"], "items": [
        {"product": seeds["_id"], "quantity": 3},
        {"product": urea["_id"], "quantity": 5},
    ]}, headers=auth(staff))

    assert res.status_code == 400
    assert "Insufficient stock for Urea 45kg" in res.json()["message"]
    assert product_stock(db, seeds) == 10
    assert product_stock(db, urea) == 2
    assert db.invoice.count_documents({}) == 0


def test_unknown_product_is_rejected(client, staff, customer):
    res = client.post("/invoices", json={"customer": customer["_id"], "items": [
        {"product": str(ObjectId()), "quantity": 1},
    ]}, headers=auth(staff))

    assert res.status_code == 400


def test_cannot_bill_another_users_customer(client, other_staff, stock, customer):
    seeds, _ = stock

    res = client.post("/invoices", json={"customer": customer["_id"], "items": [
        {"product": seeds["_id"], "quantity": 1},
    ]}, headers=auth(other_staff))

    assert res.status_code == 403


def test_snapshot_survives_customer_rename(client, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])

    client.put(f"/customers/{customer['_id']}", json={"name": "R. Patil"}, headers=headers)

    fetched = client.get(f"/invoices/{invoice['_id']}", headers=headers).json()["data"]
    assert fetched["customer_details"]["name"] == "Ramesh Patil"


def test_invoice_payment_cannot_exceed_remaining(client, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])

    too_much = client.post(f"/invoices/{invoice['_id']}/payments",
                           json={"amount": 500, "payment_method": "cash"}, headers=headers)
    partial = client.post(f"/invoices/{invoice['_id']}/payments",
                          json={"amount": 50, "payment_method": "upi"}, headers=headers)

    assert too_much.status_code == 400
    assert partial.status_code == 200
    data = partial.json()["data"]
    assert data["paid_amount"] == 50
    assert data["payment_status"] == "partial"
    balance = client.get(f"/customers/{customer['_id']}/balance", headers=headers).json()["data"]
    assert balance["outstanding_balance"] == 55


def test_delete_unpaid_invoice_restores_stock(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 4}])
    assert product_stock(db, seeds) == 6

    res = client.delete(f"/invoices/{invoice['_id']}", headers=headers)

    assert res.status_code == 200
    assert product_stock(db, seeds) == 10
    assert db.customer.find_one({"_id": ObjectId(customer["_id"])})["outstanding_balance"] == 0


def test_delete_paid_invoice_is_refused(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}],
                             paid_amount=50)

    res = client.delete(f"/invoices/{invoice['_id']}", headers=headers)

    assert res.status_code == 400
    assert db.invoice.count_documents({}) == 1


def test_listing_is_scoped_to_creator(client, admin, staff, other_staff, stock):
    seeds, _ = stock
    for user in (staff, other_staff):
        mine = create_customer(client, auth(user))
        create_invoice(client, auth(user), mine["_id"], [{"product": seeds["_id"], "quantity": 1}])

    assert client.get("/invoices", headers=auth(staff)).json()["total"] == 1
    assert client.get("/invoices", headers=auth(admin)).json()["total"] == 2


def test_invoice_stats_by_status(client, admin, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])
    create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}], paid_amount=105)

    data = client.get("/invoices/stats", headers=auth(admin)).json()["data"]

    assert data["total"] == 2
    assert [(group["_id"], group["count"]) for group in data["by_payment_status"]] == [("paid", 1), ("pending", 1)]


def purchases(db, customer):
    return db.customer.find_one({"_id": ObjectId(customer["_id"])})["total_purchases"]


def set_status(client, headers, invoice, **payload):
    return client.put(f"/invoices/{invoice['_id']}/status", json=payload, headers=headers)


def test_delete_takes_invoice_out_of_purchases(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 2}])
    assert purchases(db, customer) == 210

    client.delete(f"/invoices/{invoice['_id']}", headers=headers)

    assert purchases(db, customer) == 0


def test_status_paid_settles_remaining_balance(client, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}],
                             paid_amount=5)

    res = set_status(client, headers, invoice, status="paid", payment_method="upi", reference_number="UPI-881")

    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert (data["paid_amount"], data["payment_status"]) == (105, "paid")
    assert [(p["amount"], p["payment_method"]) for p in data["payments"]][-1] == (100, "upi")
    balance = client.get(f"/customers/{customer['_id']}/balance", headers=headers).json()["data"]
    assert balance["outstanding_balance"] == 0
    assert set_status(client, headers, invoice, status="paid", payment_method="cash").status_code == 400


def test_status_partial_must_leave_something_owed(client, staff, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])

    partial = set_status(client, headers, invoice, status="partial", payment_method="cash", amount=40)
    settling = set_status(client, headers, invoice, status="partial", payment_method="cash", amount=65)

    assert partial.json()["data"]["payment_status"] == "partial"
    assert settling.status_code == 400
    assert settling.json()["message"] == "A partial payment must be less than the remaining balance"


@pytest.mark.parametrize("payload, message", [
    ({"status": "paid"}, "Payment method is required"),
    ({"status": "paid", "payment_method": "cash", "amount": 50}, "Amount does not settle the invoice"),
    ({"status": "overdue", "payment_method": "cash"}, "Validation Error"),
])
def test_invalid_status_update_is_rejected(client, staff, db, stock, customer, payload, message):
    seeds, _ = stock
    invoice = create_invoice(client, auth(staff), customer["_id"], [{"product": seeds["_id"], "quantity": 1}])

    res = set_status(client, auth(staff), invoice, **payload)

    assert res.status_code == 400
    assert res.json()["message"] == message
    assert db.invoice.find_one({"_id": ObjectId(invoice["_id"])})["paid_amount"] == 0


def test_cancel_returns_stock_and_clears_balance(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 3}],
                             paid_amount=100)
    assert product_stock(db, seeds) == 7

    res = set_status(client, headers, invoice, status="cancelled", notes="Returned unopened")

    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert (data["status"], data["refunded_amount"], data["notes"]) == ("cancelled", 100, "Returned unopened")
    assert data["cancelled_at"]
    assert product_stock(db, seeds) == 10
    assert purchases(db, customer) == 0
    balance = client.get(f"/customers/{customer['_id']}/balance", headers=headers).json()["data"]
    assert (balance["outstanding_balance"], balance["pending_invoices"]) == (0, 0)


def test_cancelled_invoice_is_frozen(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 1}])
    set_status(client, headers, invoice, status="cancelled")

    again = set_status(client, headers, invoice, status="paid", payment_method="cash")
    payment = client.post(f"/invoices/{invoice['_id']}/payments",
                          json={"amount": 10, "payment_method": "cash"}, headers=headers)
    customer_payment = client.post(f"/customers/{customer['_id']}/payments",
                                   json={"amount": 10, "payment_method": "cash"}, headers=headers)

    assert again.json()["message"] == "Cannot update a cancelled invoice"
    assert payment.status_code == 400
    assert payment.json()["message"] == "Cannot pay a cancelled invoice"
    assert customer_payment.json()["data"]["applied_amount"] == 0
    assert db.invoice.find_one({"_id": ObjectId(invoice["_id"])})["paid_amount"] == 0


def test_deleting_cancelled_invoice_does_not_restore_twice(client, staff, db, stock, customer):
    seeds, _ = stock
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": seeds["_id"], "quantity": 3}])
    set_status(client, headers, invoice, status="cancelled")

    res = client.delete(f"/invoices/{invoice['_id']}", headers=headers)

    assert res.status_code == 200
    assert product_stock(db, seeds) == 10
    assert purchases(db, customer) == 0
    assert db.invoice.count_documents({}) == 0
