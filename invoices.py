import logging
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from pymongo.errors import DuplicateKeyError

import config
import ledger
import reports
from crud import build, get_or_404, ok, page_response
from database import collection, create_document, object_id, utcnow
from errors import ConflictError, ValidationError
from query_features import QueryFeatures
from schemas import Address, CustomerSnapshot, Invoice, InvoiceCreate, InvoiceItem, InvoiceStatusUpdate, PaymentCreate
from security import Principal, ensure_owner_or_admin, get_current_user

logger = logging.getLogger("agri.invoices")

router = APIRouter(prefix="/invoices", tags=["invoices"])

FIELDS = {
    "invoice_number": str,
    "customer": str,
    "customer_details.name": str,
    "customer_details.phone": str,
    "subtotal": float,
    "tax_amount": float,
    "total": float,
    "final_total": float,
    "payment_status": str,
    "payment_method": str,
    "paid_amount": float,
    "status": str,
    "due_date": datetime,
    "created_by": str,
}
SEARCH_FIELDS = ("invoice_number", "customer_details.name", "customer_details.phone")

NUMBER_RETRIES = 5


def round_half_up(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def line_total(price: float, quantity: float, discount: float = 0) -> float:
    gross = price * quantity
    if discount > gross:
        raise ValidationError("Discount cannot exceed the line amount")
    return ledger.money(gross - discount)


def compute_totals(items: List[InvoiceItem]) -> dict:
    """Invoice totals from already-priced line items."""
    subtotal = ledger.money(sum(item.total for item in items))
    tax_amount = ledger.money(sum(item.total * item.tax_rate / 100 for item in items))
    total = ledger.money(subtotal + tax_amount)
    final_total = round_half_up(total)
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total": total,
        "final_total": final_total,
        "round_off": ledger.money(final_total - total),
    }


def generate_invoice_number(offset: int = 0) -> str:
    date_part = utcnow().strftime("%Y%m%d")
    seq = collection("invoice").count_documents({"invoice_number": {"$regex": f"^INV-{date_part}-"}}) + 1 + offset
    return f"INV-{date_part}-{seq:04d}"


def _reserve_stock(lines: List[Tuple[dict, int]]) -> None:
    """Conditionally decrement stock line by line; undo everything if one line is short."""
    products = collection("product")
    reserved: List[Tuple[dict, int]] = []
    for product, quantity in lines:
        result = products.update_one(
            {"_id": product["_id"], "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
        )
        if result.modified_count == 0:
            _release_stock(reserved)
            current = products.find_one({"_id": product["_id"]}) or {}
            raise ValidationError(f"Insufficient stock for {product['name']}. Available: {current.get('stock', 0)}")
        reserved.append((product, quantity))


def _release_stock(lines: List[Tuple[dict, int]]) -> None:
    products = collection("product")
    for product, quantity in lines:
        products.update_one({"_id": product["_id"]}, {"$inc": {"stock": quantity}})


def _restore_items(invoice: dict) -> None:
    """Put the stock of every invoice line back."""
    products = collection("product")
    for item in invoice.get("items", []):
        products.update_one({"_id": object_id(item["product"], "product")}, {"$inc": {"stock": item["quantity"]}})


def _invoice_customer(invoice: dict) -> Optional[dict]:
    return collection("customer").find_one({"_id": object_id(invoice["customer"], "customer")})


def _cancel_invoice(invoice: dict, principal: Principal, notes: Optional[str] = None) -> dict:
    """Cancel an invoice: its stock goes back and it no longer counts as owed or purchased."""
    now = utcnow()
    changes = {"status": "cancelled", "cancelled_at": now, "updated_at": now}
    paid = invoice.get("paid_amount", 0)
    if paid > 0:
        changes["refunded_amount"] = paid
    if notes:
        changes["notes"] = notes

    result = collection("invoice").update_one(
        {"_id": invoice["_id"], "status": ledger.NOT_CANCELLED, "paid_amount": paid},
        {"$set": changes},
    )
    if result.modified_count == 0:
        current = collection("invoice").find_one({"_id": invoice["_id"]}) or {}
        if current.get("status") == "cancelled":
            raise ValidationError("Cannot update a cancelled invoice")
        raise ConflictError("Invoice was updated concurrently, please retry")

    _restore_items(invoice)
    customer = _invoice_customer(invoice)
    if customer is not None:
        ledger.reverse_purchase(customer, invoice.get("final_total", invoice["total"]))
    logger.info("Invoice %s cancelled by %s (refunded %.2f)", invoice.get("invoice_number"), principal.id, paid)
    return collection("invoice").find_one({"_id": invoice["_id"]})


def load_invoice(invoice_id: str, principal: Principal, action: str = "access") -> dict:
    invoice = get_or_404("invoice", invoice_id, "Invoice")
    ensure_owner_or_admin(principal, invoice.get("created_by"), action, "invoice")
    return invoice


@router.get("")
def list_invoices(request: Request, principal: Principal = Depends(get_current_user)):
    scope = None if principal.is_admin else {"created_by": principal.id}
    features = QueryFeatures(request.query_params.multi_items(), FIELDS, search_fields=SEARCH_FIELDS)
    return page_response(features.execute(collection("invoice"), scope))


@router.get("/stats")
def invoice_stats(principal: Principal = Depends(get_current_user)):
    return ok(reports.invoice_stats(None if principal.is_admin else principal.id))


@router.get("/{invoice_id}")
def get_invoice(invoice_id: str, principal: Principal = Depends(get_current_user)):
    return ok(load_invoice(invoice_id, principal))


@router.post("", status_code=201)
def create_invoice(payload: InvoiceCreate, principal: Principal = Depends(get_current_user)):
    customer = get_or_404("customer", payload.customer, "Customer")
    ensure_owner_or_admin(principal, customer.get("owner"), "bill", "customer")

    items: List[InvoiceItem] = []
    reservations: List[Tuple[dict, int]] = []
    for line in payload.items:
        product = collection("product").find_one({"_id": object_id(line.product, "product")})
        if not product or not product.get("is_active", True):
            raise ValidationError(f"Product not found: {line.product}")
        price = line.price if line.price is not None else product["price"]
        tax_rate = line.tax_rate if line.tax_rate is not None else product.get("tax_rate", 0)
        items.append(InvoiceItem(
            product=str(product["_id"]),
            name=product["name"],
            hsn_code=product["hsn_code"],
            unit=product.get("unit", "piece"),
            quantity=line.quantity,
            price=price,
            discount=line.discount,
            tax_rate=tax_rate,
            total=line_total(price, line.quantity, line.discount),
        ))
        reservations.append((product, line.quantity))

    totals = compute_totals(items)
    paid_amount = ledger.money(payload.paid_amount)
    if paid_amount > max(totals["total"], totals["final_total"]):
        raise ValidationError("Paid amount cannot exceed the invoice total")

    address = customer.get("address")
    snapshot = CustomerSnapshot(
        name=customer["name"],
        phone=customer["phone"],
        email=customer.get("email"),
        address=build(Address, address).one_line() if address else None,
        gstin=customer.get("gstin"),
    )
    payments = []
    if paid_amount > 0:
        payments.append({
            "payment_id": uuid.uuid4().hex,
            "amount": paid_amount,
            "payment_method": payload.payment_method,
            "payment_date": utcnow(),
            "recorded_by": principal.id,
        })

    _reserve_stock(reservations)
    try:
        invoice_id = None
        for attempt in range(NUMBER_RETRIES):
            invoice = build(Invoice, {
                "invoice_number": generate_invoice_number(attempt),
                "customer": str(customer["_id"]),
                "customer_details": snapshot.model_dump(),
                "items": [item.model_dump() for item in items],
                **totals,
                "payment_status": ledger.payment_status(totals["total"], paid_amount),
                "payment_method": payload.payment_method,
                "paid_amount": paid_amount,
                "payments": payments,
                "due_date": payload.due_date or utcnow() + timedelta(days=config.INVOICE_DUE_DAYS),
                "notes": payload.notes,
                "created_by": principal.id,
            })
            try:
                invoice_id = create_document("invoice", invoice)
                break
            except DuplicateKeyError:
                continue
        if invoice_id is None:
            raise ConflictError("Could not allocate an invoice number, please retry")
    except Exception:
        _release_stock(reservations)
        raise

    ledger.record_purchase(customer, totals["final_total"])
    logger.info("Invoice %s raised for customer %s by %s (total %.2f)",
                invoice.invoice_number, customer["_id"], principal.id, totals["total"])
    return ok(get_or_404("invoice", invoice_id, "Invoice"))


@router.post("/{invoice_id}/payments")
def record_invoice_payment(invoice_id: str, payload: PaymentCreate, principal: Principal = Depends(get_current_user)):
    invoice = load_invoice(invoice_id, principal, "update")
    updated = ledger.record_invoice_payment(
        invoice,
        payload.amount,
        payload.payment_method,
        principal,
        payment_date=payload.payment_date,
        reference_number=payload.reference_number,
        notes=payload.notes,
    )
    return ok(updated)


@router.put("/{invoice_id}/status")
def update_invoice_status(invoice_id: str, payload: InvoiceStatusUpdate,
                          principal: Principal = Depends(get_current_user)):
    invoice = load_invoice(invoice_id, principal, "update")
    if invoice.get("status") == "cancelled":
        raise ValidationError("Cannot update a cancelled invoice")

    if payload.status == "cancelled":
        return ok(_cancel_invoice(invoice, principal, payload.notes))

    if not payload.payment_method:
        raise ValidationError("Payment method is required")
    due = ledger.remaining_due(invoice)
    if due <= 0:
        raise ValidationError("Invoice is already paid")
    amount = ledger.money(payload.amount) if payload.amount is not None else due
    if payload.status == "paid" and amount < due:
        raise ValidationError("Amount does not settle the invoice")
    if payload.status == "partial" and amount >= due:
        raise ValidationError("A partial payment must be less than the remaining balance")

    updated = ledger.record_invoice_payment(
        invoice,
        amount,
        payload.payment_method,
        principal,
        payment_date=payload.payment_date,
        reference_number=payload.reference_number,
        notes=payload.notes,
    )
    return ok(updated)


@router.delete("/{invoice_id}")
def delete_invoice(invoice_id: str, principal: Principal = Depends(get_current_user)):
    invoice = load_invoice(invoice_id, principal, "delete")
    paid = invoice.get("paid_amount", 0)
    if paid > 0:
        raise ConflictError("Cannot delete a paid or partially paid invoice")

    cancelled = invoice.get("status") == "cancelled"
    result = collection("invoice").delete_one({
        "_id": invoice["_id"],
        "paid_amount": paid,
        "status": "cancelled" if cancelled else ledger.NOT_CANCELLED,
    })
    if result.deleted_count == 0:
        raise ConflictError("Invoice was updated concurrently, please retry")

    customer = _invoice_customer(invoice)
    # a cancelled invoice already gave its stock and purchase total back
    if not cancelled:
        _restore_items(invoice)
        if customer is not None:
            ledger.reverse_purchase(customer, invoice.get("final_total", invoice["total"]))
    elif customer is not None:
        ledger.refresh_balance(customer)
    logger.info("Invoice %s deleted by %s", invoice.get("invoice_number"), principal.id)
    return ok({})
