import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request

import invoices
import ledger
import reports
from crud import build, get_or_404, insert_unique, merge_changes, ok, page_response, update_unique
from database import collection, set_fields
from errors import ConflictError
from query_features import QueryFeatures
from schemas import CreditLimitUpdate, Customer, CustomerCreate, CustomerUpdate, PaymentCreate
from security import Principal, ensure_owner_or_admin, get_current_user

logger = logging.getLogger("agri.customers")

router = APIRouter(prefix="/customers", tags=["customers"])

FIELDS = {
    "name": str,
    "phone": str,
    "email": str,
    "gstin": str,
    "address.city": str,
    "address.state": str,
    "address.pincode": str,
    "customer_type": str,
    "credit_limit": float,
    "outstanding_balance": float,
    "total_purchases": float,
    "last_purchase_date": datetime,
    "is_active": bool,
    "owner": str,
}
SEARCH_FIELDS = ("name", "phone", "email")


def load_customer(customer_id: str, principal: Principal, action: str = "access") -> dict:
    customer = get_or_404("customer", customer_id, "Customer")
    ensure_owner_or_admin(principal, customer.get("owner"), action, "customer")
    return customer


@router.get("")
def list_customers(request: Request, principal: Principal = Depends(get_current_user)):
    scope = None if principal.is_admin else {"owner": principal.id}
    features = QueryFeatures(request.query_params.multi_items(), FIELDS, search_fields=SEARCH_FIELDS)
    return page_response(features.execute(collection("customer"), scope))


@router.get("/stats")
def customer_stats(principal: Principal = Depends(get_current_user)):
    return ok(reports.customer_stats(None if principal.is_admin else principal.id))


@router.get("/{customer_id}")
def get_customer(customer_id: str, principal: Principal = Depends(get_current_user)):
    return ok(load_customer(customer_id, principal))


@router.post("", status_code=201)
def create_customer(payload: CustomerCreate, principal: Principal = Depends(get_current_user)):
    customer = build(Customer, {**payload.model_dump(exclude_none=True), "owner": principal.id})
    customer_id = insert_unique("customer", customer, "Customer with this phone or email already exists")
    logger.info("Customer %s created by %s", customer_id, principal.id)
    return ok(get_or_404("customer", customer_id, "Customer"))


@router.put("/{customer_id}")
def update_customer(customer_id: str, payload: CustomerUpdate, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal, "update")
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return ok(customer)
    changes = merge_changes(Customer, customer, changes)
    updated = update_unique("customer", customer, changes, "Email or phone number already in use by another customer")
    return ok(updated)


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal, "delete")
    invoice_count = collection("invoice").count_documents({"customer": str(customer["_id"])})
    if invoice_count > 0:
        raise ConflictError(f"Cannot delete customer with {invoice_count} associated invoices")
    collection("customer").delete_one({"_id": customer["_id"]})
    logger.info("Customer %s deleted by %s", customer_id, principal.id)
    return ok({})


@router.get("/{customer_id}/invoices")
def customer_invoices(customer_id: str, request: Request, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal)
    features = QueryFeatures(request.query_params.multi_items(), invoices.FIELDS, search_fields=invoices.SEARCH_FIELDS)
    return page_response(features.execute(collection("invoice"), {"customer": str(customer["_id"])}))


@router.get("/{customer_id}/balance")
def customer_balance(customer_id: str, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal)
    return ok(ledger.get_balance(customer))


@router.put("/{customer_id}/credit-limit")
def update_credit_limit(customer_id: str, payload: CreditLimitUpdate, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal, "update")
    collection("customer").update_one({"_id": customer["_id"]}, set_fields({"credit_limit": payload.credit_limit}))
    return ok({
        "customer": str(customer["_id"]),
        "customer_name": customer.get("name"),
        "credit_limit": payload.credit_limit,
        "available_credit": ledger.available_credit(payload.credit_limit, customer.get("outstanding_balance", 0)),
    })


@router.post("/{customer_id}/payments", status_code=201)
def record_customer_payment(customer_id: str, payload: PaymentCreate, principal: Principal = Depends(get_current_user)):
    customer = load_customer(customer_id, principal, "update")
    result = ledger.record_payment(
        customer,
        payload.amount,
        payload.payment_method,
        principal,
        payment_date=payload.payment_date,
        reference_number=payload.reference_number,
        notes=payload.notes,
    )
    return ok(result)
