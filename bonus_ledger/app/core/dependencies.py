from typing import Optional

from fastapi import Cookie, Depends, Header
from sqlmodel import Session

from ..services import LedgerRepository, LedgerService
from .config import Settings, get_settings
from .db import get_session
from .errors import NotAuthenticatedError
from .security import decode_token

AUTH_COOKIE = "jwt"


def get_ledger_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository, settings)


def get_current_user_id(
    token: Optional[str] = Cookie(default=None, alias=AUTH_COOKIE),
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> int:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[len("bearer "):].strip()
    if not token:
        raise NotAuthenticatedError("Authentication required")
    return decode_token(token, settings.secret_key)
