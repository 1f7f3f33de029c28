import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Base class for token-related errors."""
    def __init__(self, message="Token error occurred", code="TOKEN_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)

class TokenExpired(TokenError):
    def __init__(self, message="Token has expired", code="TOKEN_EXPIRED"):
        super().__init__(message, code)

class TokenInvalid(TokenError):
    def __init__(self, message="Token is invalid", code="TOKEN_INVALID"):
        super().__init__(message, code)


def decode_access_token(token: str, secret: str, algorithm: str = "HS256") -> Dict[str, Any]:
    """
    Decodes a bearer token and checks it carries a subject.

    Raises:
        TokenExpired: If the token has expired.
        TokenInvalid: If the signature, format or claims are wrong.
    """
    if not token:
        raise TokenInvalid("Token cannot be empty.")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={
                "require": ["exp", "sub"],
                "verify_aud": False,
            },
            leeway=timedelta(seconds=30),
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpired()
    except jwt.InvalidTokenError as e:
        raise TokenInvalid(f"Token validation failed: {e}")
    return payload


class StaticIdentity:
    """Fixed identity, for local use and tests. `None` means signed out."""

    def __init__(self, user_id: Optional[str]):
        self.user_id = user_id

    async def current_user_id(self) -> Optional[str]:
        return self.user_id


class JWTIdentity:
    """Identity taken from the `sub` claim of a bearer token."""

    def __init__(self, token: Optional[str], secret: str, algorithm: str = "HS256"):
        self.token = token
        self.secret = secret
        self.algorithm = algorithm

    async def current_user_id(self) -> Optional[str]:
        if not self.token:
            return None
        try:
            payload = decode_access_token(self.token, self.secret, self.algorithm)
        except TokenError as e:
            logger.info(f"Rejected bearer token ({e.code}): {e.message}")
            return None
        return str(payload["sub"])
