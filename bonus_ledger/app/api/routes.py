from fastapi import APIRouter, Body, Depends, Response, status

from ..core.config import Settings, get_settings
from ..core.dependencies import AUTH_COOKIE, get_current_user_id, get_ledger_service
from ..models import (
    BalanceResponse,
    Credentials,
    OrderResponse,
    StatusResponse,
    WithdrawalResponse,
    WithdrawRequest,
)
from ..services import LedgerService


router = APIRouter(prefix="/api/user", tags=["user"])

def _set_auth_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=settings.token_ttl_seconds,
        httponly=True,
        samesite="lax",
    )

@router.post("/register", response_model=StatusResponse)
def register(
    payload: Credentials,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_settings),
) -> StatusResponse:
    _set_auth_cookie(response, service.register(payload), settings)
    return StatusResponse()

@router.post("/login", response_model=StatusResponse)
def login(
    payload: Credentials,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_settings),
) -> StatusResponse:
    _set_auth_cookie(response, service.login(payload), settings)
    return StatusResponse()

@router.post("/orders", response_model=StatusResponse)
def submit_order(
    response: Response,
    number: bytes = Body(..., media_type="text/plain"),
    user_id: int = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
) -> StatusResponse:
    created = service.submit_order(user_id, number)
    response.status_code = status.HTTP_202_ACCEPTED if created else status.HTTP_200_OK
    return StatusResponse()

@router.get("/orders", response_model=list[OrderResponse])
def list_orders(
    user_id: int = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
):
    orders = service.list_orders(user_id)
    if not orders:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return orders

@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    user_id: int = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return service.get_balance(user_id)

@router.post("/balance/withdraw", response_model=StatusResponse)
def withdraw(
    payload: WithdrawRequest,
    user_id: int = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
) -> StatusResponse:
    service.withdraw(user_id, payload)
    return StatusResponse()

@router.get("/withdrawals", response_model=list[WithdrawalResponse])
@router.get("/balance/withdrawals", response_model=list[WithdrawalResponse], include_in_schema=False)
def list_withdrawals(
    user_id: int = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
):
    withdrawals = service.list_withdrawals(user_id)
    if not withdrawals:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return withdrawals

__all__ = ["router"]
