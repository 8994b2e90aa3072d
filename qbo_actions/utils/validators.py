from __future__ import annotations

from typing import Optional, cast

from fastapi import HTTPException, status

from qbo_actions.schemas.actions import Environment


_ENVIRONMENT_ALIASES = {
    "sandbox": "sandbox",
    "prod": "prod",
    "production": "prod",
}


def resolve_environment(
    value: Optional[str],
    default_env: Environment,
) -> Environment:
    if value is None:
        return default_env
    normalized = value.lower()
    resolved = _ENVIRONMENT_ALIASES.get(normalized)
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid environment value",
        )
    return cast(Environment, resolved)


def parse_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing QuickBooks access token",
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use the Bearer scheme",
        )
    return token.strip()


def require_company_id(value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-QBO-Company-Id header is required",
        )
    return value.strip()
