import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import customers
import database
import invoices
import products
import reports
import users
from crud import build, insert_unique, validation_message
from database import collection, utcnow
from errors import AppError, AuthenticationError, ValidationError
from logging_config import setup_logging
from schemas import AuthRequest, Token, User
from security import get_password_hash, token_for, verify_password

setup_logging(config.LOG_DIR, config.LOG_LEVEL)
logger = logging.getLogger("agri.api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Agri Supplies Back Office API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation Error", "errors": errors})


@app.exception_handler(PydanticValidationError)
async def model_validation_handler(request: Request, exc: PydanticValidationError):
    return JSONResponse(status_code=400, content={"success": False, "message": validation_message(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal Server Error"})


@app.get("/")
def read_root():
    return {"message": "Agri Supplies Back Office API"}


@app.get("/health")
def health():
    return {"success": True, "message": "API is running", "timestamp": utcnow().isoformat()}


# Helper to accept either JSON or form for legacy compatibility
async def parse_auth_request(request: Request) -> AuthRequest:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        data = {
            "email": (form.get("username") or form.get("email") or "").lower(),
            "password": form.get("password") or "",
        }
    else:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON or form data")
    return build(AuthRequest, data)


# Auth routes
@app.post("/auth/register", status_code=201)
async def register(request: Request):
    auth = await parse_auth_request(request)
    if len(auth.password) < 6:
        raise ValidationError("Password must be at least 6 characters")

    user = build(User, {
        "email": auth.email,
        "name": auth.email.split("@")[0],
        "password_hash": get_password_hash(auth.password),
        "role": "customer",
    })
    user_id = insert_unique("user", user, "Email already registered")
    created = collection("user").find_one({"_id": database.object_id(user_id, "user")})
    return Token(access_token=token_for(created))


@app.post("/auth/token", response_model=Token)
async def login(request: Request):
    auth = await parse_auth_request(request)

    user = collection("user").find_one({"email": auth.email.lower()})
    if not user or not verify_password(auth.password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    if not user.get("is_active", True):
        raise AuthenticationError("User account is deactivated")

    return Token(access_token=token_for(user))


app.include_router(users.router)
app.include_router(products.router)
app.include_router(customers.router)
app.include_router(invoices.router)
app.include_router(reports.router)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
