"""JWT handling for the caller identity the services act on behalf of."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .errors import AuthorizationError
from .models import User

settings = get_settings()


class InvalidTokenError(AuthorizationError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_user_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token({"sub": str(user.id), "role": user.role.value}, expires_delta)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidTokenError() from exc
