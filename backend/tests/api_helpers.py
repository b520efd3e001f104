"""Minimal app factory and auth helpers for router tests."""

import jwt
from fastapi import FastAPI, HTTPException
from slowapi.errors import RateLimitExceeded

from app.exceptions import DomainException
from app.main import (
    domain_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.routers import auth
from app.services.validation import ValidationError

TEST_JWT_SECRET = "x" * 32


def build_app(*routers) -> FastAPI:
    app = FastAPI()
    app.state.limiter = auth.limiter
    app.add_exception_handler(RateLimitExceeded, auth.rate_limit_handler)
    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    for router in routers:
        app.include_router(router)
    return app


def bearer(user_id: str) -> dict[str, str]:
    token = jwt.encode({"sub": user_id}, TEST_JWT_SECRET, algorithm=auth.JWT_ALG)
    return {"Authorization": f"Bearer {token}"}
