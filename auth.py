"""
Authentication: password hashing, session tokens and the request Principal.
"""

import hashlib
import logging
import os
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database

from database import create_document, get_db, oid, utcnow
from errors import Unauthorized
from rules import Principal
from schemas import Session

logger = logging.getLogger(__name__)

SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", "7"))

_bearer = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def issue_session(database: Database, user: Dict[str, Any]) -> str:
    token = str(uuid4())
    session = Session(
        user_id=str(user["_id"]),
        token=token,
        expires_at=utcnow() + timedelta(days=SESSION_TTL_DAYS),
    )
    create_document(database, "session", session)
    return token


def _unauthorized(message: str) -> Unauthorized:
    return Unauthorized(message, code="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    database: Database = Depends(get_db),
) -> Dict[str, Any]:
    """Resolve the bearer token to its user document."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Authentication required")
    session = database["session"].find_one({"token": credentials.credentials})
    if session is None:
        raise _unauthorized("Invalid token")
    expires_at = session.get("expires_at")
    if expires_at is not None and expires_at <= utcnow():
        raise _unauthorized("Session expired")
    user = database["user"].find_one({"_id": oid(session["user_id"])})
    if user is None:
        logger.warning("Session %s points at a missing user", session["_id"])
        raise _unauthorized("Invalid token")
    return user


def get_principal(user: Dict[str, Any] = Depends(current_user)) -> Principal:
    return Principal(id=str(user["_id"]), role=user["role"])
