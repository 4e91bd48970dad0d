from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from chathub.config import settings
from chathub.logging_config import get_logger

logger = get_logger("auth")


class InvalidToken(Exception):
    pass


def decode_access_token(token: str) -> int:
    """Verify a bearer JWT and return the user id from its `sub` claim."""
    try:
        # sub is issued as a number
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm], options={"verify_sub": False}
        )
    except jwt.ExpiredSignatureError as e:
        raise InvalidToken("Token has expired") from e
    except jwt.InvalidTokenError as e:
        raise InvalidToken(f"Invalid token: {e}") from e

    subject = payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise InvalidToken("Token missing user id") from None


def extract_bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, credential = value.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


async def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    token = extract_bearer(authorization)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(token)
    except InvalidToken as e:
        logger.info(f"Rejected bearer token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
