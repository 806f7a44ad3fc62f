from fastapi import HTTPException, Request
from jose import JWTError, jwt
import logging

from app.prepare.errors import PrepareEngineError
from core.config import ALLOW_UNVERIFIED_AUTH_DEV, ENVIRONMENT, PREPARE_JWT_SECRET

logger = logging.getLogger("app.auth")


class AuthenticationFailed(PrepareEngineError):
    kind = "auth-failed"


def _claims_from_token(token: str) -> dict:
    if PREPARE_JWT_SECRET:
        try:
            return jwt.decode(token, PREPARE_JWT_SECRET, algorithms=["HS256"])
        except JWTError:
            raise AuthenticationFailed("Invalid token")

    if ENVIRONMENT == "production":
        raise AuthenticationFailed("PREPARE_JWT_SECRET is not configured")
    if not ALLOW_UNVERIFIED_AUTH_DEV:
        raise AuthenticationFailed(
            "Token verification unavailable; configure PREPARE_JWT_SECRET or set ALLOW_UNVERIFIED_AUTH_DEV=true"
        )
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        raise AuthenticationFailed("Invalid token")
    logger.warning("ALLOW_UNVERIFIED_AUTH_DEV enabled; using unverified token claims in non-production mode")
    return claims


def resolve_user_id(user_id: str | None, token: str | None = None) -> str:
    """Resolve the caller identity for an ``authenticate`` message.

    With a token, the ``sub`` claim is authoritative and must match ``user_id``
    when both are given. Without a token the claimed ``user_id`` is trusted only
    in non-production mode with ``ALLOW_UNVERIFIED_AUTH_DEV`` enabled and no
    signing secret configured.
    """
    claimed = str(user_id or "").strip()
    token = str(token or "").strip()

    if token:
        subject = str((_claims_from_token(token) or {}).get("sub") or "").strip()
        if not subject:
            raise AuthenticationFailed("Invalid token")
        if claimed and claimed != subject:
            raise AuthenticationFailed("Token subject does not match userId")
        return subject

    if PREPARE_JWT_SECRET or ENVIRONMENT == "production":
        raise AuthenticationFailed("Token required")
    if not ALLOW_UNVERIFIED_AUTH_DEV:
        raise AuthenticationFailed("Token required")
    if not claimed:
        raise AuthenticationFailed("userId required")
    return claimed


async def get_user_id_async(request: Request) -> str:
    auth = request.headers.get("Authorization") or ""
    token = auth.replace("Bearer ", "", 1).strip() if auth.startswith("Bearer ") else ""
    claimed = request.headers.get("X-User-Id")
    if not token and not claimed:
        raise HTTPException(401, "Unauthorized")
    try:
        return resolve_user_id(claimed, token)
    except AuthenticationFailed as exc:
        raise HTTPException(401, exc.message)
