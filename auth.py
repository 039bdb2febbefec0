from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings
from database import USERS, ensure_object_id, serialize_doc
from errors import Unauthenticated, ValidationFailed
from schemas import PRIVILEGED_ROLES, Role

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class Principal:
    """Verified caller identity handed to every core operation."""

    id: str
    role: str = Role.CUSTOMER.value
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    def owns(self, owner_id: Optional[str]) -> bool:
        return owner_id is not None and owner_id == self.id

    def can_access(self, owner_id: Optional[str]) -> bool:
        return self.is_privileged or self.owns(owner_id)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(settings: Settings, data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise Unauthenticated("Invalid or expired token")


def principal_from_authorization(settings: Settings, db: Database, authorization: Optional[str]) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated()
    payload = decode_token(settings, authorization.split(" ", 1)[1])
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token")
    try:
        oid = ensure_object_id(user_id)
    except ValidationFailed:
        raise Unauthenticated("Invalid token")
    user = db[USERS].find_one({"_id": oid})
    if not user:
        raise Unauthenticated("User not found")
    return Principal(id=str(user["_id"]), role=user.get("role", Role.CUSTOMER.value), name=user.get("name"), email=user.get("email"))


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    # Never send password hash
    user.pop("password_hash", None)
    return user
