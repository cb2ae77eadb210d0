import pytest
from bson import ObjectId

import ledger
from conftest import auth, create_customer, create_invoice, create_product
from errors import ConflictError


@pytest.fixture
def billing(client, admin, staff):
    product = create_product(client, auth(admin), price=500, tax_rate=0, stock=20)
    customer = create_customer(client, auth(staff), credit_limit=1000)
    return product, customer


def balance(client, headers, customer_id):
    res = client.get(f"/customers/{customer_id}/balance", headers=headers)
    assert res.status_code == 200, res.text
    return res.json()["data"]


def pay(client, headers, customer_id, amount, method="cash"):
    return client.post(
        f"/customers/{customer_id}/payments",
        json={"amount": amount, "payment_method": method},
        headers=headers,
    )


def test_available_credit_may_be_negative():
    assert ledger.available_credit(1000, 1200) == -200
    assert ledger.available_credit(1000, 250.5) == 749.5


def test_payment_status_thresholds():
    assert ledger.payment_status(100, 0) == "pending"
    assert ledger.payment_status(100, 40) == "partial"
    assert ledger.payment_status(100, 100) == "paid"


def test_payment_settles_open_invoice(client, staff, billing):
    product, customer = billing
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 1}])

    assert balance(client, headers, customer["_id"])["outstanding_balance"] == 500

    res = pay(client, headers, customer["_id"], 500)

    assert res.status_code == 201, res.text
    body = res.json()["data"]
    assert body["new_outstanding_balance"] == 0
    assert body["applied_amount"] == 500
    paid = client.get(f"/invoices/{invoice['_id']}", headers=headers).json()["data"]
    assert paid["payment_status"] == "paid"
    assert paid["paid_amount"] == 500


def test_overpayment_is_absorbed(client, staff, billing, db):
    product, customer = billing
    headers = auth(staff)
    create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 1}])

    body = pay(client, headers, customer["_id"], 600).json()["data"]

    assert body["new_outstanding_balance"] == 0
    assert body["applied_amount"] == 500
    stored = db.customer.find_one({"_id": ObjectId(customer["_id"])})
    assert stored["outstanding_balance"] == 0
    assert [entry["amount"] for entry in stored["payment_history"]] == [600]


def test_payment_with_nothing_owed_is_recorded(client, staff, billing, db):
    _, customer = billing

    body = pay(client, auth(staff), customer["_id"], 250).json()["data"]

    assert body["new_outstanding_balance"] == 0
    assert body["applied_amount"] == 0
    stored = db.customer.find_one({"_id": ObjectId(customer["_id"])})
    assert len(stored["payment_history"]) == 1


def test_balance_is_derived_from_open_invoices(client, staff, billing):
    product, customer = billing
    headers = auth(staff)
    invoice = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 2}],
                             paid_amount=400)

    assert invoice["payment_status"] == "partial"
    data = balance(client, headers, customer["_id"])
    assert data["outstanding_balance"] == 600
    assert data["pending_invoices"] == 1
    assert data["credit_limit"] == 1000
    assert data["available_credit"] == 400


def test_available_credit_goes_negative_over_limit(client, staff, billing):
    product, customer = billing
    headers = auth(staff)
    create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 3}])

    data = balance(client, headers, customer["_id"])

    assert data["outstanding_balance"] == 1500
    assert data["available_credit"] == -500


def test_payment_settles_oldest_invoice_first(client, admin, staff, db):
    headers = auth(staff)
    product = create_product(client, auth(admin), price=100, tax_rate=0, stock=20)
    customer = create_customer(client, headers)
    first = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 3}])
    second = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 2}])

    body = pay(client, headers, customer["_id"], 350).json()["data"]

    assert body["new_outstanding_balance"] == 150
    first_doc = db.invoice.find_one({"_id": ObjectId(first["_id"])})
    second_doc = db.invoice.find_one({"_id": ObjectId(second["_id"])})
    assert (first_doc["payment_status"], first_doc["paid_amount"]) == ("paid", 300)
    assert (second_doc["payment_status"], second_doc["paid_amount"]) == ("partial", 50)


def test_stale_cached_balance_is_reconciled_on_read(client, staff, billing, db):
    product, customer = billing
    headers = auth(staff)
    create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 1}])
    db.customer.update_one({"_id": ObjectId(customer["_id"])}, {"$set": {"outstanding_balance": 999}})

    assert balance(client, headers, customer["_id"])["outstanding_balance"] == 500
    assert db.customer.find_one({"_id": ObjectId(customer["_id"])})["outstanding_balance"] == 500


@pytest.mark.parametrize("amount, method", [(0, "cash"), (-50, "cash"), (100, "cheque")])
def test_invalid_payment_is_rejected_without_writing(client, staff, billing, db, amount, method):
    _, customer = billing

    res = pay(client, auth(staff), customer["_id"], amount, method)

    assert res.status_code == 400
    assert res.json()["success"] is False
    stored = db.customer.find_one({"_id": ObjectId(customer["_id"])})
    assert stored.get("payment_history", []) == []


def test_payment_on_someone_elses_customer_is_forbidden(client, other_staff, billing):
    _, customer = billing

    res = pay(client, auth(other_staff), customer["_id"], 100)

    assert res.status_code == 403


def test_failed_payment_reverts_settled_invoices(client, admin, staff, db, monkeypatch):
    headers = auth(staff)
    product = create_product(client, auth(admin), price=100, tax_rate=0, stock=20)
    customer = create_customer(client, headers)
    first = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 1}])
    second = create_invoice(client, headers, customer["_id"], [{"product": product["_id"], "quantity": 1}])

    apply = ledger._apply_to_invoice
    calls = []

    def contended(invoice, amount, entry, allow_partial):
        calls.append(invoice["_id"])
        if len(calls) > 1:
            raise ConflictError("Invoice was updated concurrently, please retry")
        return apply(invoice, amount, entry, allow_partial)

    monkeypatch.setattr(ledger, "_apply_to_invoice", contended)

    res = pay(client, headers, customer["_id"], 150)

    assert res.status_code == 400
    assert len(calls) == 2
    stored = db.customer.find_one({"_id": ObjectId(customer["_id"])})
    assert stored.get("payment_history", []) == []
    assert stored["outstanding_balance"] == 200
    for invoice in (first, second):
        doc = db.invoice.find_one({"_id": ObjectId(invoice["_id"])})
        assert (doc["paid_amount"], doc["payment_status"], doc["payments"]) == (0, "pending", [])


def test_conflict_on_only_invoice_records_nothing(client, staff, billing, db, monkeypatch):
    product, customer = billing
    create_invoice(client, auth(staff), customer["_id"], [{"product": product["_id"], "quantity": 1}])

    def conflict(*args, **kwargs):
        raise ConflictError("Invoice was updated concurrently, please retry")

    monkeypatch.setattr(ledger, "_apply_to_invoice", conflict)

    res = pay(client, auth(staff), customer["_id"], 100)

    assert res.status_code == 400
    assert db.customer.find_one({"_id": ObjectId(customer["_id"])}).get("payment_history", []) == []


def test_payment_retries_after_a_concurrent_write(client, staff, billing, db):
    product, customer = billing
    invoice = create_invoice(client, auth(staff), customer["_id"], [{"product": product["_id"], "quantity": 1}])
    stale = db.invoice.find_one({"_id": ObjectId(invoice["_id"])})
    db.invoice.update_one({"_id": stale["_id"]}, {"$set": {"paid_amount": 300, "payment_status": "partial"}})

    applied = ledger._apply_to_invoice(stale, 400, {"payment_id": "late"}, allow_partial=True)

    assert applied == 200
    doc = db.invoice.find_one({"_id": stale["_id"]})
    assert (doc["paid_amount"], doc["payment_status"]) == (500, "paid")
    assert doc["payments"] == [{"payment_id": "late", "amount": 200}]


def test_payment_gives_up_after_repeated_concurrent_writes(client, staff, billing, db, monkeypatch):
    product, customer = billing
    invoice = create_invoice(client, auth(staff), customer["_id"], [{"product": product["_id"], "quantity": 1}])
    invoices = db.invoice

    class ContendedInvoices:
        def __getattr__(self, name):
            return getattr(invoices, name)

        def update_one(self, query, update, *args, **kwargs):
            # another writer lands between the read and every compare-and-swap
            invoices.update_one({"_id": query["_id"]}, {"$inc": {"paid_amount": 1}})
            return invoices.update_one(query, update, *args, **kwargs)

    monkeypatch.setattr(ledger, "collection", lambda name: ContendedInvoices() if name == "invoice" else db[name])

    with pytest.raises(ConflictError):
        ledger._apply_to_invoice(invoices.find_one({"_id": ObjectId(invoice["_id"])}), 100,
                                 {"payment_id": "lost"}, allow_partial=True)

    doc = invoices.find_one({"_id": ObjectId(invoice["_id"])})
    assert doc["paid_amount"] == ledger.CAS_RETRIES
    assert doc["payments"] == []
