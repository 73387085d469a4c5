from __future__ import annotations

import logging
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.errors import (
    InsufficientFundsError,
    InvalidCredentialsError,
    LedgerWriteError,
    LoginTakenError,
    OrderAlreadyOwnedError,
    OrderConflictError,
    OrderInsertConflictError,
)
from ..core.security import hash_password, issue_token, verify_password
from ..models import (
    BalanceResponse,
    Credentials,
    EntryStatus,
    EntryType,
    LedgerEntryModel,
    OrderResponse,
    WithdrawalResponse,
    WithdrawRequest,
)
from .repository import LedgerRepository
from .validation import from_minor_units, parse_order_number, to_minor_units


logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _issue_token(self, user_id: int) -> str:
        return issue_token(user_id, self.settings.secret_key, self.settings.token_ttl_seconds)

    def _order_to_response(self, entry: LedgerEntryModel) -> OrderResponse:
        return OrderResponse(
            number=str(entry.order_id),
            status=entry.status,
            accrual=from_minor_units(entry.change) if entry.change else None,
            uploaded_at=entry.change_date,
        )

    def _withdrawal_to_response(self, entry: LedgerEntryModel) -> WithdrawalResponse:
        return WithdrawalResponse(
            order=str(entry.order_id),
            sum=from_minor_units(abs(entry.change)),
            processed_at=entry.change_date,
        )

    def _record_entry(self, **fields) -> None:
        """Insert one ledger entry and commit, rolling back on any failure."""
        try:
            self.repository.insert_entry(**fields)
            self.session.commit()
        except OrderInsertConflictError as exc:
            self.session.rollback()
            owner = self.repository.lookup_owner(exc.order_id)
            if owner is None:
                raise LedgerWriteError(f"Order {exc.order_id} could not be recorded") from exc
            raise OrderAlreadyOwnedError(exc.order_id, owner) from exc
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register(self, payload: Credentials) -> str:
        if self.repository.get_user_by_login(payload.login) is not None:
            raise LoginTakenError(f"Login {payload.login!r} is already taken")

        try:
            user = self.repository.add_user(payload.login, hash_password(payload.password))
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise LoginTakenError(f"Login {payload.login!r} is already taken") from exc

        logger.info("user.registered", extra={"user_id": user.id, "login": user.login})
        return self._issue_token(user.id)

    def login(self, payload: Credentials) -> str:
        user = self.repository.get_user_by_login(payload.login)
        if user is None or not verify_password(payload.password, user.password_hash):
            raise InvalidCredentialsError("Login or password is wrong")

        logger.info("user.logged_in", extra={"user_id": user.id})
        return self._issue_token(user.id)

    def submit_order(self, user_id: int, raw_number: Union[str, bytes]) -> bool:
        """Register an order for accrual.

        Returns True when the order was accepted now and False when the same
        user had already submitted it.
        """
        order_id = parse_order_number(raw_number)
        try:
            self._record_entry(
                user_id=user_id,
                order_id=order_id,
                amount=0,
                entry_type=EntryType.TOP_UP,
                status=EntryStatus.NEW,
            )
        except OrderAlreadyOwnedError as exc:
            if exc.owner_id == user_id:
                logger.info(
                    "order.already_submitted",
                    extra={"order_id": order_id, "user_id": user_id},
                )
                return False
            raise OrderConflictError(
                f"Order {order_id} was submitted by a different user"
            ) from exc

        logger.info("order.accepted", extra={"order_id": order_id, "user_id": user_id})
        return True

    def list_orders(self, user_id: int) -> list[OrderResponse]:
        return [self._order_to_response(entry) for entry in self.repository.list_orders(user_id)]

    def get_balance(self, user_id: int) -> BalanceResponse:
        balance = self.repository.get_balance(user_id)
        return BalanceResponse(
            current=from_minor_units(balance.current),
            withdrawn=from_minor_units(balance.withdrawn),
        )

    def withdraw(self, user_id: int, payload: WithdrawRequest) -> None:
        order_id = parse_order_number(payload.order)
        amount = to_minor_units(payload.sum)

        balance = self.repository.get_balance(user_id)
        if balance.current < amount:
            self.session.rollback()
            raise InsufficientFundsError("Current balance is not enough for withdrawal")

        # Re-checked by the conditional debit in insert_entry.
        try:
            self._record_entry(
                user_id=user_id,
                order_id=order_id,
                amount=-amount,
                entry_type=EntryType.WITHDRAW,
                status=EntryStatus.PROCESSED,
            )
        except OrderAlreadyOwnedError as exc:
            raise OrderConflictError(f"Order {order_id} has already been used") from exc

        logger.info(
            "account.withdraw",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "amount": amount,
                "balance": balance.current - amount,
            },
        )

    def list_withdrawals(self, user_id: int) -> list[WithdrawalResponse]:
        return [
            self._withdrawal_to_response(entry)
            for entry in self.repository.list_withdrawals(user_id)
        ]
