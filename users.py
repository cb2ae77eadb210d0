import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Request, UploadFile

import reports
import storage
from crud import build, get_or_404, insert_unique, merge_changes, ok, page_response, update_unique
from database import collection, object_id, set_fields
from errors import AuthorizationError, ValidationError
from query_features import QueryFeatures
from schemas import MeUpdate, PasswordUpdate, User, UserCreate, UserUpdate
from security import (
    Principal,
    ensure_owner_or_admin,
    get_current_user,
    get_password_hash,
    require_admin,
    token_for,
    verify_password,
)

logger = logging.getLogger("agri.users")

router = APIRouter(prefix="/users", tags=["users"])

FIELDS = {
    "name": str,
    "email": str,
    "phone": str,
    "role": str,
    "is_active": bool,
    "photo": str,
    "created_by": str,
}
HIDDEN = ("password_hash",)
SEARCH_FIELDS = ("name", "email")
EMAIL_CONFLICT = "Email already in use"


def public(user: dict) -> dict:
    return {k: v for k, v in user.items() if k not in HIDDEN}


def _current(principal: Principal) -> dict:
    return get_or_404("user", principal.id, "User")


def _apply_changes(user: dict, changes: dict) -> dict:
    if not changes:
        return user
    changes = merge_changes(User, user, changes)
    return update_unique("user", user, changes, EMAIL_CONFLICT)


@router.get("")
def list_users(request: Request, _: Principal = Depends(require_admin)):
    features = QueryFeatures(request.query_params.multi_items(), FIELDS, hidden=HIDDEN, search_fields=SEARCH_FIELDS)
    return page_response(features.execute(collection("user")))


@router.get("/stats")
def user_stats(_: Principal = Depends(require_admin)):
    return ok(reports.user_stats())


@router.get("/me")
def get_me(principal: Principal = Depends(get_current_user)):
    return ok(public(_current(principal)))


@router.put("/me/update-details")
def update_me(payload: MeUpdate, principal: Principal = Depends(get_current_user)):
    user = _current(principal)
    return ok(public(_apply_changes(user, payload.model_dump(exclude_unset=True))))


@router.put("/me/photo")
def upload_my_photo(
    background_tasks: BackgroundTasks,
    photo: UploadFile = File(...),
    principal: Principal = Depends(get_current_user),
):
    user = _current(principal)
    name = storage.save_upload(photo, "users")
    collection("user").update_one({"_id": user["_id"]}, set_fields({"photo": name}))
    if user.get("photo"):
        background_tasks.add_task(storage.discard, "users", user["photo"])
    return ok(name)


@router.put("/me/update-password")
def update_password(payload: PasswordUpdate, principal: Principal = Depends(get_current_user)):
    user = _current(principal)
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise ValidationError("Current password is incorrect")
    collection("user").update_one(
        {"_id": user["_id"]},
        set_fields({"password_hash": get_password_hash(payload.new_password)}),
    )
    return ok(public(user), token=token_for(user))


@router.put("/me/deactivate")
def deactivate_me(principal: Principal = Depends(get_current_user)):
    collection("user").update_one({"_id": object_id(principal.id, "user")}, set_fields({"is_active": False}))
    logger.info("User %s deactivated their account", principal.id)
    return ok({})


@router.get("/{user_id}")
def get_user(user_id: str, principal: Principal = Depends(get_current_user)):
    user = get_or_404("user", user_id, "User")
    ensure_owner_or_admin(principal, str(user["_id"]), "view", "user")
    return ok(public(user))


@router.post("", status_code=201)
def create_user(payload: UserCreate, principal: Principal = Depends(require_admin)):
    user = build(User, {
        "name": payload.name,
        "email": payload.email,
        "phone": payload.phone,
        "role": payload.role,
        "password_hash": get_password_hash(payload.password),
        "created_by": principal.id,
    })
    user_id = insert_unique("user", user, "User already exists with this email")
    created = get_or_404("user", user_id, "User")
    logger.info("User %s (%s) created by %s", user_id, created["role"], principal.id)
    return ok(public(created), token=token_for(created))


@router.put("/{user_id}")
def update_user(user_id: str, payload: UserUpdate, principal: Principal = Depends(get_current_user)):
    user = get_or_404("user", user_id, "User")
    ensure_owner_or_admin(principal, str(user["_id"]), "update", "user")
    changes = payload.model_dump(exclude_unset=True)
    if not principal.is_admin and ({"role", "is_active"} & changes.keys()):
        raise AuthorizationError("Only an admin can change role or active status")
    return ok(public(_apply_changes(user, changes)))


@router.delete("/{user_id}")
def delete_user(user_id: str, background_tasks: BackgroundTasks, principal: Principal = Depends(require_admin)):
    user = get_or_404("user", user_id, "User")
    if str(user["_id"]) == principal.id:
        raise AuthorizationError("You cannot delete your own account")

    collection("user").delete_one({"_id": user["_id"]})
    if user.get("photo"):
        background_tasks.add_task(storage.discard, "users", user["photo"])
    logger.info("User %s deleted by %s", user_id, principal.id)
    return ok({})
