from .db import EntryStatus, EntryType, TERMINAL_STATUSES
from .db import LedgerEntry as LedgerEntryModel
from .db import User as UserModel
from .schemas import (
    BalanceResponse,
    Credentials,
    OrderResponse,
    StatusResponse,
    WithdrawalResponse,
    WithdrawRequest,
)

__all__ = [
    "BalanceResponse",
    "Credentials",
    "OrderResponse",
    "StatusResponse",
    "WithdrawalResponse",
    "WithdrawRequest",
    "EntryStatus",
    "EntryType",
    "TERMINAL_STATUSES",
    "LedgerEntryModel",
    "UserModel",
]
