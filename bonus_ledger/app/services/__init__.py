from .accrual import AccrualClient, AccrualResult
from .ledger import LedgerService
from .repository import Balance, LedgerRepository
from .worker import ReconciliationWorker

__all__ = [
    "AccrualClient",
    "AccrualResult",
    "Balance",
    "LedgerRepository",
    "LedgerService",
    "ReconciliationWorker",
]
