"""Bearer tokens carrying the caller's identity.

Issuing credentials is outside this service; whoever authenticates the
user mints a token with ``create_access_token`` and the API only decodes it.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .identity import Identity

logger = logging.getLogger(__name__)

# JWT settings
_DEFAULT_SECRET_KEY = "dev-secret-key-change-in-production"
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 12  # one staff shift


class SecretKeyError(Exception):
    """Raised when SECRET_KEY is not properly configured for production."""

    pass


def _get_secret_key() -> str:
    """Get the SECRET_KEY with security checks.

    Raises:
        SecretKeyError: If SECRET_KEY is not set in production environment.

    Returns:
        The configured secret key.
    """
    secret_key = os.getenv("JWT_SECRET_KEY", os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY))
    debug_mode = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
    env = os.getenv("ENV", os.getenv("ENVIRONMENT", "development")).lower()
    is_production = env in ("production", "prod")

    if secret_key == _DEFAULT_SECRET_KEY:
        if is_production or not debug_mode:
            raise SecretKeyError(
                "SECRET_KEY must be set to a secure value in production. "
                'Generate one with: python -c "import secrets; print(secrets.token_urlsafe(32))"'
            )
        else:
            logger.warning(
                "Using default SECRET_KEY. This is insecure and should only be used for development. "
                "Set SECRET_KEY or JWT_SECRET_KEY environment variable for production."
            )

    return secret_key


# Validate and get SECRET_KEY at module load time
SECRET_KEY = _get_secret_key()


def create_access_token(
    user_id: int,
    name: str,
    is_staff: bool,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token.

    Args:
        user_id: The user's database ID
        name: The user's display name
        is_staff: Whether the user may perform staff-only operations
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(user_id),
        "name": name,
        "staff": is_staff,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Identity]:
    """Decode and validate a JWT access token.

    Args:
        token: The JWT token string

    Returns:
        Identity if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        if payload.get("type") != "access":
            return None
        user_id = int(payload.get("sub", 0))
        if user_id == 0:
            return None

        return Identity(
            user_id=user_id,
            name=payload.get("name", ""),
            is_staff=bool(payload.get("staff", False)),
        )
    except (JWTError, ValueError):
        return None
