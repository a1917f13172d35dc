"""FastAPI dependencies for the caller's identity."""

from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from guanzhao.config import get_settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer()


def decode_access_token(token: str) -> dict:
    """Decode and validate a JWT access token issued by the host application.

    Raises:
        ValueError: If the token is invalid, expired, or malformed
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Access token has expired")
    except jwt.InvalidTokenError as e:
        raise ValueError(f"Invalid access token: {e}")


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """Extract the authenticated user id (the token's ``sub``).

    Raises:
        HTTPException 401: If the token is invalid or carries no usable subject
    """
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError as e:
        logger.info("access_token_rejected", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    try:
        return str(UUID(str(subject)))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
