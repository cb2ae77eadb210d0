"""
Customer ledger: payments, outstanding balance and available credit.

Open invoices are the source of truth for what a customer owes. The
``outstanding_balance`` stored on the customer is a projection of them,
rewritten by ``refresh_balance`` after every ledger write and whenever a
balance is read. Cancelled invoices are never owed.

Invoice payments are compare-and-swap writes on ``paid_amount`` so two
concurrent payments against the same invoice can never both apply to the
same remaining amount.
"""
import logging
import math
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from bson import ObjectId

from database import collection, object_id, utcnow
from errors import ConflictError, ValidationError
from schemas import OPEN_PAYMENT_STATUSES, PAYMENT_METHODS, Payment
from security import Principal

logger = logging.getLogger("agri.ledger")

CAS_RETRIES = 5
NOT_CANCELLED = {"$ne": "cancelled"}


def money(value: float) -> float:
    return round(float(value), 2)


def available_credit(credit_limit: float, outstanding_balance: float) -> float:
    """May be negative when the customer is over the limit."""
    return money((credit_limit or 0) - (outstanding_balance or 0))


def payment_status(total: float, paid_amount: float) -> str:
    if money(paid_amount) <= 0:
        return "pending"
    if money(paid_amount) >= money(total):
        return "paid"
    return "partial"


def remaining_due(invoice: dict) -> float:
    return money(invoice["total"] - invoice.get("paid_amount", 0))


def _validate_payment(amount: float, payment_method: str) -> None:
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")


def open_invoices(customer_id: str) -> List[dict]:
    """Unpaid and partially paid invoices, oldest first."""
    cursor = collection("invoice").find({
        "customer": customer_id,
        "status": NOT_CANCELLED,
        "payment_status": {"$in": list(OPEN_PAYMENT_STATUSES)},
    })
    return list(cursor.sort([("created_at", 1), ("_id", 1)]))


def derived_outstanding(customer_id: str) -> Tuple[float, int]:
    """Sum of ``total - paid_amount`` over open invoices, and how many there are."""
    invoices = open_invoices(customer_id)
    outstanding = sum(inv["total"] - inv.get("paid_amount", 0) for inv in invoices)
    return money(max(outstanding, 0)), len(invoices)


def refresh_balance(customer: dict) -> float:
    """Recompute the customer's cached balance from its invoices and store it if it drifted."""
    customer_id = str(customer["_id"])
    outstanding, _ = derived_outstanding(customer_id)
    cached = customer.get("outstanding_balance", 0)
    if money(cached) != outstanding:
        collection("customer").update_one(
            {"_id": customer["_id"]},
            {"$set": {"outstanding_balance": outstanding, "updated_at": utcnow()}},
        )
        logger.info("Reconciled balance of customer %s: %.2f -> %.2f", customer_id, cached, outstanding)
    customer["outstanding_balance"] = outstanding
    return outstanding


def get_balance(customer: dict) -> dict:
    customer_id = str(customer["_id"])
    outstanding, pending = derived_outstanding(customer_id)
    refresh_balance(customer)
    credit_limit = customer.get("credit_limit", 0)
    return {
        "customer": customer_id,
        "customer_name": customer.get("name"),
        "outstanding_balance": outstanding,
        "pending_invoices": pending,
        "credit_limit": credit_limit,
        "available_credit": available_credit(credit_limit, outstanding),
    }


def _apply_to_invoice(invoice: dict, amount: float, entry: dict, allow_partial: bool) -> float:
    """Apply up to ``amount`` to one invoice; returns what was applied.

    With ``allow_partial`` the amount is capped at what the invoice still owes,
    otherwise a larger amount is rejected.
    """
    invoices = collection("invoice")
    current = invoice
    for _ in range(CAS_RETRIES):
        if current.get("status") == "cancelled":
            raise ValidationError("Cannot pay a cancelled invoice")
        paid = current.get("paid_amount", 0)
        total = current["total"]
        if allow_partial:
            applied = min(amount, remaining_due(current))
        else:
            ceiling = money(max(total, current.get("final_total", total)) - paid)
            if amount > ceiling:
                raise ValidationError("Payment amount exceeds remaining balance")
            applied = amount
        if applied <= 0:
            return 0.0

        new_paid = money(paid + applied)
        result = invoices.update_one(
            {"_id": current["_id"], "paid_amount": paid, "status": NOT_CANCELLED},
            {
                "$set": {
                    "paid_amount": new_paid,
                    "payment_status": payment_status(total, new_paid),
                    "updated_at": utcnow(),
                },
                "$push": {"payments": {**entry, "amount": applied}},
            },
        )
        if result.modified_count:
            return applied
        current = invoices.find_one({"_id": current["_id"]})
        if current is None:
            return 0.0
    raise ConflictError("Invoice was updated concurrently, please retry")


def _revert_invoice(invoice_id: ObjectId, amount: float, payment_id: str) -> None:
    """Take ``amount`` of payment ``payment_id`` back off an invoice."""
    invoices = collection("invoice")
    for _ in range(CAS_RETRIES):
        current = invoices.find_one({"_id": invoice_id})
        if current is None:
            return
        paid = current.get("paid_amount", 0)
        new_paid = money(max(paid - amount, 0))
        result = invoices.update_one(
            {"_id": invoice_id, "paid_amount": paid},
            {
                "$set": {
                    "paid_amount": new_paid,
                    "payment_status": payment_status(current["total"], new_paid),
                    "updated_at": utcnow(),
                },
                "$pull": {"payments": {"payment_id": payment_id}},
            },
        )
        if result.modified_count:
            return
    logger.error("Could not revert payment %s on invoice %s", payment_id, invoice_id)


def record_payment(
    customer: dict,
    amount: float,
    payment_method: str,
    principal: Principal,
    payment_date: Optional[datetime] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """Settle open invoices with a payment, then append it to the customer's history.

    Invoices are settled oldest first. Whatever exceeds the amount owed is
    absorbed: the balance bottoms out at zero and no credit is carried. If
    settling fails part way, the invoices already settled are reverted and
    nothing is added to the history.
    """
    _validate_payment(amount, payment_method)
    payment = Payment(
        payment_id=uuid.uuid4().hex,
        amount=amount,
        payment_method=payment_method,
        payment_date=payment_date or utcnow(),
        reference_number=reference_number,
        notes=notes,
        recorded_by=principal.id,
    )
    entry = payment.model_dump(exclude_none=True)
    customer_id = str(customer["_id"])
    previous = customer.get("outstanding_balance", 0)

    remaining = money(amount)
    settled: List[Tuple[ObjectId, float]] = []
    try:
        for invoice in open_invoices(customer_id):
            if remaining <= 0:
                break
            applied = _apply_to_invoice(invoice, remaining, entry, allow_partial=True)
            if applied > 0:
                settled.append((invoice["_id"], applied))
            remaining = money(remaining - applied)
    except Exception:
        logger.warning("Payment %s for customer %s failed; reverting %d invoice(s)",
                       entry["payment_id"], customer_id, len(settled))
        for invoice_id, applied in settled:
            _revert_invoice(invoice_id, applied, entry["payment_id"])
        refresh_balance(customer)
        raise

    collection("customer").update_one(
        {"_id": customer["_id"]},
        {"$push": {"payment_history": entry}, "$set": {"updated_at": utcnow()}},
    )

    new_balance = refresh_balance(customer)
    logger.info(
        "Recorded %s payment of %.2f for customer %s by %s; balance %.2f -> %.2f",
        payment_method, amount, customer_id, principal.id, previous, new_balance,
    )
    if remaining > 0:
        logger.info("Payment for customer %s exceeded the amount owed by %.2f", customer_id, remaining)

    return {
        "customer": customer_id,
        "customer_name": customer.get("name"),
        "payment": entry,
        "applied_amount": money(amount - remaining),
        "new_outstanding_balance": new_balance,
    }


def record_invoice_payment(
    invoice: dict,
    amount: float,
    payment_method: str,
    principal: Principal,
    payment_date: Optional[datetime] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """Pay a single invoice. Paying more than it still owes is rejected."""
    _validate_payment(amount, payment_method)
    entry = {
        "payment_id": uuid.uuid4().hex,
        "payment_method": payment_method,
        "payment_date": payment_date or utcnow(),
        "reference_number": reference_number,
        "notes": notes,
        "recorded_by": principal.id,
    }
    entry = {k: v for k, v in entry.items() if v is not None}
    _apply_to_invoice(invoice, money(amount), entry, allow_partial=False)

    updated = collection("invoice").find_one({"_id": invoice["_id"]})
    customer = collection("customer").find_one({"_id": object_id(updated["customer"], "customer")})
    if customer is not None:
        refresh_balance(customer)
    logger.info("Recorded %s payment of %.2f on invoice %s by %s",
                payment_method, amount, updated.get("invoice_number"), principal.id)
    return updated


def record_purchase(customer: dict, amount: float) -> None:
    """Book a newly raised invoice against the customer."""
    collection("customer").update_one(
        {"_id": customer["_id"]},
        {"$inc": {"total_purchases": money(amount)}, "$set": {"last_purchase_date": utcnow()}},
    )
    refresh_balance(customer)


def reverse_purchase(customer: dict, amount: float) -> None:
    """Take a deleted or cancelled invoice back out of the customer's purchases."""
    customers = collection("customer")
    customers.update_one(
        {"_id": customer["_id"]},
        {"$inc": {"total_purchases": -money(amount)}, "$set": {"updated_at": utcnow()}},
    )
    # float drift must not leave a negative total behind
    customers.update_one({"_id": customer["_id"], "total_purchases": {"$lt": 0}}, {"$set": {"total_purchases": 0}})
    refresh_balance(customer)
