from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import collection
from errors import AuthenticationError, AuthorizationError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, handed explicitly to every handler."""
    id: str
    role: str
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def token_for(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user.get("role")})


def get_current_user(token: str = Depends(oauth2_scheme)) -> Principal:
    credentials_exception = AuthenticationError("Could not validate credentials")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        oid = ObjectId(user_id)
    except (JWTError, InvalidId, TypeError):
        raise credentials_exception

    user = collection("user").find_one({"_id": oid})
    if not user:
        raise credentials_exception
    if not user.get("is_active", True):
        raise AuthenticationError("User account is deactivated")
    return Principal(id=str(user["_id"]), role=user.get("role", "customer"), email=user["email"])


def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise AuthorizationError("Access denied. Admin role required.")
    return principal


def ensure_owner_or_admin(principal: Principal, owner_id: Optional[str], action: str, resource: str) -> None:
    if principal.is_admin or (owner_id is not None and owner_id == principal.id):
        return
    raise AuthorizationError(f"User {principal.id} is not authorized to {action} this {resource}")
