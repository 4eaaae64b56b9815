"""Reusable FastAPI dependencies for caller identity and kiosk access."""
from typing import Callable

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .auth import InvalidTokenError, decode_token
from .config import get_settings
from .database import get_db
from .errors import AuthorizationError
from .loan_session import LoanSessionMachine
from .models import RoleEnum, User
from .rate_limit import SCANNER_KEY_HEADER

settings = get_settings()
oauth_scheme = OAuth2PasswordBearer(tokenUrl="/token")
scanner_api_key_header = APIKeyHeader(name=SCANNER_KEY_HEADER, auto_error=False)


def get_current_user(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> User:
    payload = decode_token(token)
    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        raise InvalidTokenError("Missing subject in token")
    user = db.query(User).filter(User.id == int(subject)).first()
    if not user:
        raise InvalidTokenError("User not found")
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise AuthorizationError("User is inactive")
    return current_user


def allow_roles(*roles: RoleEnum) -> Callable[[User], User]:
    def dependency(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise AuthorizationError("Insufficient permissions")
        return current_user

    return dependency


def require_scanner_key(api_key: str = Security(scanner_api_key_header)) -> None:
    if not api_key or api_key != settings.scanner_api_key:
        raise InvalidTokenError("Invalid API key")


def get_loan_machine(request: Request) -> LoanSessionMachine:
    return request.app.state.loan_machine
