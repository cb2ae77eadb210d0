from typing import Any, Dict, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from database import collection, create_document, object_id, serialize, set_fields
from errors import ConflictError, NotFoundError, ValidationError
from query_features import Page


def ok(data: Any = None, **extra) -> dict:
    return {"success": True, "data": serialize(data if data is not None else {}), **extra}


def page_response(page: Page) -> dict:
    return {
        "success": True,
        "count": page.count,
        "total": page.total,
        "total_pages": page.total_pages,
        "current_page": page.page,
        "pagination": page.pagination,
        "data": serialize(page.results),
    }


def get_or_404(collection_name: str, doc_id: str, label: str) -> dict:
    doc = collection(collection_name).find_one({"_id": object_id(doc_id, label.lower())})
    if not doc:
        raise NotFoundError(f"{label} not found with id of {doc_id}")
    return doc


def validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts) or "Invalid input"


def build(model: Type[BaseModel], data: Dict[str, Any]) -> BaseModel:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(validation_message(exc))


def merge_changes(model: Type[BaseModel], existing: dict, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``existing`` merged with ``changes`` and return the normalized changed fields."""
    merged = build(model, {**existing, **changes}).model_dump()
    return {key: merged.get(key) for key in changes}


def insert_unique(collection_name: str, document: BaseModel, conflict: str) -> str:
    try:
        return create_document(collection_name, document)
    except DuplicateKeyError:
        raise ConflictError(conflict)


def update_unique(collection_name: str, doc: dict, changes: Dict[str, Any], conflict: str) -> dict:
    """Apply ``changes`` in a single write; a unique index violation leaves the document untouched."""
    coll = collection(collection_name)
    try:
        coll.update_one({"_id": doc["_id"]}, set_fields(changes))
    except DuplicateKeyError:
        raise ConflictError(conflict)
    return coll.find_one({"_id": doc["_id"]})
