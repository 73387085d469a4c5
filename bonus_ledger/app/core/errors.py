class MalformedRequestError(ValueError):
    """Raised when a payload or identifier cannot be parsed at all."""


class InvalidOrderNumberError(Exception):
    """Raised when an order number fails the Luhn checksum."""


class NotAuthenticatedError(Exception):
    """Raised when a request carries no usable auth token."""


class InvalidCredentialsError(Exception):
    """Raised when a login/password pair does not match a user."""


class LoginTakenError(Exception):
    """Raised when registering a login that already exists."""


class InsufficientFundsError(Exception):
    """Raised when a withdrawal would drop the balance below zero."""


class OrderConflictError(Exception):
    """Raised when an order number already belongs to another user."""


class OrderAlreadyOwnedError(Exception):
    """Raised by the ledger store when an order number already has an owner."""

    def __init__(self, order_id: int, owner_id: int) -> None:
        super().__init__(f"Order {order_id} is already owned by user {owner_id}")
        self.order_id = order_id
        self.owner_id = owner_id


class OrderInsertConflictError(Exception):
    """Raised by the ledger store when the database rejects a new entry.

    Usually a concurrent insert won the unique constraint on the order number;
    the caller rolls back and looks the owner up again.
    """

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Ledger rejected an entry for order {order_id}")
        self.order_id = order_id


class LedgerWriteError(Exception):
    """Raised when a ledger write is rejected and no existing owner explains it."""


class CycleCancelledError(Exception):
    """Raised inside a reconciliation cycle once the worker is shutting down."""


class AccrualError(Exception):
    """Base class for failures talking to the accrual authority."""


class AccrualUnavailableError(AccrualError):
    """Transport error or unexpected status from the accrual authority."""


class AccrualRateLimitedError(AccrualError):
    """The accrual authority answered 429."""


class AccrualPayloadError(AccrualError):
    """A 200 response whose body could not be decoded."""


class AccrualCancelledError(AccrualError):
    """A retry pause was interrupted because the cycle was cancelled."""
