"""Utilities for decoding session access tokens."""

from __future__ import annotations

import os
from typing import cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "ACCESS_TOKEN_COOKIE",
    "SessionTokenPayload",
    "SessionTokenConfigurationError",
    "SessionTokenValidationError",
    "decode_or_http_error",
    "decode_session_token",
    "extract_bearer_token",
    "get_session_context",
    "looks_like_jwt",
]

# Browsers cannot attach headers to EventSource requests, so the access token is
# also accepted from this cookie.
ACCESS_TOKEN_COOKIE = "splint_access_token"


class SessionTokenConfigurationError(RuntimeError):
    """Raised when session token configuration is invalid."""


class SessionTokenValidationError(ValueError):
    """Raised when the provided session token cannot be validated."""


class _SessionTokenRequiredClaims(TypedDict):
    user_id: str


class SessionTokenPayload(_SessionTokenRequiredClaims, total=False):
    """Decoded JWT payload for an interactive user session."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    organization_id: str | None
    role: str
    type: str


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable with optional requirement enforcement.

    Args:
        name: Name of the environment variable to read.
        required: Whether to raise when the variable is missing or empty.
        default: Value to use when ``required`` is ``False`` and the variable is
            undefined.

    Returns:
        str: Stripped environment variable value or provided default.

    Raises:
        SessionTokenConfigurationError: If ``required`` is ``True`` and the
            variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise SessionTokenConfigurationError(
            f"Environment variable '{name}' must be set for session token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def looks_like_jwt(token: str) -> bool:
    """Return ``True`` when ``token`` has the three dot-separated JWT segments.

    API keys are plain hex strings, so this is enough to route a bearer value
    to the right validator.
    """

    return token.count(".") == 2


def decode_session_token(token: str) -> SessionTokenPayload:
    """Decode and validate a session access token.

    Raises:
        SessionTokenConfigurationError: If mandatory environment configuration is missing.
        SessionTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    secret_key = _get_env("SESSION_TOKEN_SECRET")
    audience = _get_env("SESSION_TOKEN_AUDIENCE")
    issuer = _get_env("SESSION_TOKEN_ISSUER")
    algorithm = _get_env("SESSION_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise SessionTokenValidationError("Session token has expired.") from exc
    except InvalidTokenError as exc:
        raise SessionTokenValidationError("Session token is invalid.") from exc

    if "user_id" not in payload:
        raise SessionTokenValidationError("Session token payload must include 'user_id'.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise SessionTokenValidationError("Session token must be an access token.")

    return cast(SessionTokenPayload, payload)


def extract_bearer_token(request: Request, *, allow_cookie: bool = True) -> str:
    """Return the bearer credential from the header, or the session cookie.

    Raises:
        HTTPException: ``401`` when no usable credential is present.
    """

    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if not credentials or scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authorization header must use Bearer scheme.",
            )
        return credentials.strip()

    if allow_cookie:
        cookie = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if cookie:
            return cookie

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing Authorization header.",
    )


def decode_or_http_error(token: str) -> SessionTokenPayload:
    """Decode ``token`` translating failures to HTTP errors."""

    try:
        return decode_session_token(token)
    except SessionTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except SessionTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


async def get_session_context(request: Request) -> SessionTokenPayload:
    """Extract the session payload from the ``Authorization`` header or cookie.

    Raises:
        HTTPException: With status ``401`` when the credential is missing or
            invalid, or ``500`` if the token configuration is incorrect.
    """

    return decode_or_http_error(extract_bearer_token(request))
