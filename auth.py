"""
Identity & credential gate.

Every role (admin and client) is checked against a salted bcrypt hash held on
its ``users`` record; tokens are HS256 JWTs.
"""
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import get_settings
from database import USERS, get_db, upstream
from errors import NotFoundError

security = HTTPBearer()

PROFILE_FIELDS = ("name", "about")


@lru_cache()
def password_context() -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=get_settings().BCRYPT_ROUNDS)


def hash_password(p: str) -> str:
    return password_context().hash(p)


def verify_password(p: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return password_context().verify(p, hashed)
    except ValueError:
        # Not a recognised hash, e.g. a legacy plaintext value.
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def authenticate(db: Database, email: str, password: str, role: str) -> Optional[Dict[str, Any]]:
    """Return ``{token, role, id, name, email}`` for valid credentials, else None."""
    clean_email = (email or "").strip().lower()
    user = db[USERS].find_one({"email": clean_email, "role": role})
    if not user or not verify_password((password or "").strip(), user.get("password", "")):
        return None
    token = create_access_token({"sub": str(user["_id"]), "role": role, "email": clean_email})
    return {
        "token": token,
        "role": role,
        "id": str(user["_id"]),
        "name": user.get("name") or "User",
        "email": clean_email,
    }


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), db: Database = Depends(get_db)):
    settings = get_settings()
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db[USERS].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found for token")
    user["id"] = str(user["_id"])
    return user


def require_role(user: dict, allowed: List[str]):
    if user.get("role") not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


# ----------------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------------

def get_profile(db: Database, user_id: str) -> Dict[str, Any]:
    if not ObjectId.is_valid(str(user_id)):
        raise NotFoundError("User", user_id)
    try:
        user = db[USERS].find_one({"_id": ObjectId(str(user_id))})
    except PyMongoError as exc:
        raise upstream("user lookup", exc)
    if not user:
        raise NotFoundError("User", user_id)
    return user


def update_profile(db: Database, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Update the display fields (``name``, ``about``) of a user."""
    user = get_profile(db, user_id)
    fields = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
    if not fields:
        return user
    try:
        db[USERS].update_one({"_id": user["_id"]}, {"$set": fields})
        return db[USERS].find_one({"_id": user["_id"]})
    except PyMongoError as exc:
        raise upstream("user profile update", exc)
