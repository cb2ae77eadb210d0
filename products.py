import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, File, Query, Request, UploadFile

import config
import reports
import storage
from crud import build, get_or_404, insert_unique, merge_changes, ok, page_response, update_unique
from database import collection, set_fields
from query_features import QueryFeatures
from schemas import Product, ProductCreate, ProductUpdate
from security import Principal, ensure_owner_or_admin, get_current_user, require_admin

logger = logging.getLogger("agri.products")

router = APIRouter(prefix="/products", tags=["products"])

FIELDS = {
    "name": str,
    "description": str,
    "category": str,
    "subcategory": str,
    "sku": str,
    "hsn_code": str,
    "unit": str,
    "price": float,
    "cost_price": float,
    "mrp": float,
    "tax_rate": float,
    "stock": int,
    "min_stock_level": int,
    "max_stock_level": int,
    "expiry_date": datetime,
    "batch_number": str,
    "manufacturer": str,
    "barcode": str,
    "image": str,
    "is_active": bool,
    "created_by": str,
}
SEARCH_FIELDS = ("name", "description", "sku")
SKU_CONFLICT = "Product with this SKU already exists"


@router.get("")
def list_products(request: Request):
    features = QueryFeatures(request.query_params.multi_items(), FIELDS, search_fields=SEARCH_FIELDS)
    return page_response(features.execute(collection("product")))


@router.get("/stats")
def product_stats(_: Principal = Depends(require_admin)):
    return ok(reports.product_stats())


@router.get("/low-stock")
def low_stock_products(_: Principal = Depends(require_admin)):
    docs = list(collection("product").find({"stock": {"$lte": config.LOW_STOCK_THRESHOLD}}).sort("stock", 1))
    return ok(docs, count=len(docs))


@router.get("/stats/out-of-stock")
def out_of_stock_products(_: Principal = Depends(require_admin)):
    docs = list(collection("product").find({"stock": {"$lte": 0}, "is_active": True}).sort("name", 1))
    return ok(docs, count=len(docs))


@router.get("/stats/top-selling")
def top_selling_products(
    limit: int = Query(10, ge=1, le=config.MAX_PAGE_LIMIT),
    _: Principal = Depends(require_admin),
):
    docs = reports.top_products(limit)
    return ok(docs, count=len(docs))


@router.get("/category/{category}")
def products_by_category(category: str):
    docs = list(collection("product").find({"category": category}).sort("name", 1))
    return ok(docs, count=len(docs))


@router.get("/{product_id}")
def get_product(product_id: str):
    return ok(get_or_404("product", product_id, "Product"))


@router.post("", status_code=201)
def create_product(payload: ProductCreate, principal: Principal = Depends(require_admin)):
    product = build(Product, {**payload.model_dump(exclude_none=True), "created_by": principal.id})
    product_id = insert_unique("product", product, SKU_CONFLICT)
    logger.info("Product %s (%s) created by %s", product_id, product.sku, principal.id)
    return ok(get_or_404("product", product_id, "Product"))


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, principal: Principal = Depends(get_current_user)):
    product = get_or_404("product", product_id, "Product")
    ensure_owner_or_admin(principal, product.get("created_by"), "update", "product")

    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return ok(product)
    changes = merge_changes(Product, product, changes)
    return ok(update_unique("product", product, changes, SKU_CONFLICT))


@router.delete("/{product_id}")
def delete_product(product_id: str, background_tasks: BackgroundTasks, principal: Principal = Depends(get_current_user)):
    product = get_or_404("product", product_id, "Product")
    ensure_owner_or_admin(principal, product.get("created_by"), "delete", "product")

    collection("product").delete_one({"_id": product["_id"]})
    if product.get("image"):
        background_tasks.add_task(storage.discard, "products", product["image"])
    logger.info("Product %s deleted by %s", product_id, principal.id)
    return ok({})


@router.put("/{product_id}/image")
def upload_product_image(
    product_id: str,
    background_tasks: BackgroundTasks,
    image: UploadFile = File(...),
    principal: Principal = Depends(get_current_user),
):
    product = get_or_404("product", product_id, "Product")
    ensure_owner_or_admin(principal, product.get("created_by"), "update", "product")

    name = storage.save_upload(image, "products")
    collection("product").update_one({"_id": product["_id"]}, set_fields({"image": name}))
    if product.get("image"):
        background_tasks.add_task(storage.discard, "products", product["image"])
    return ok(name)
