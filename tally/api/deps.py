"""
tally.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from tally.config import TallyConfig, load_config
from tally.database.engine import create_db_engine, init_db
from tally.engine.entities import Actor
from tally.services.sync_service import SyncService
from tally.store.sql_store import SqlDocumentStore

_WEAK_SECRETS = frozenset({
    "tally-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    engine = create_db_engine()
    init_db(engine)
    return engine


@lru_cache(maxsize=1)
def get_config() -> TallyConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_store() -> SqlDocumentStore:
    return SqlDocumentStore(get_engine())


@lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    return SyncService(get_store(), get_config())


def _decode(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def _actor(payload: dict) -> Actor:
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return Actor(
        id=str(sub),
        display_name=str(payload.get("username", "")),
        is_admin=bool(payload.get("is_admin")),
    )


def get_current_actor(
    authorization: Annotated[str | None, Header()] = None,
) -> Actor:
    """Validate JWT and return the calling participant. Raises 401 if invalid."""
    return _actor(_decode(authorization))


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> Actor:
    """Validate JWT and return the admin actor. Raises 401/403."""
    payload = _decode(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return _actor(payload)


ActorDep = Annotated[Actor, Depends(get_current_actor)]
AdminDep = Annotated[Actor, Depends(get_current_admin)]
ServiceDep = Annotated[SyncService, Depends(get_sync_service)]
