from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ..core.errors import InsufficientFundsError, OrderAlreadyOwnedError, OrderInsertConflictError
from ..models import (
    TERMINAL_STATUSES,
    EntryStatus,
    EntryType,
    LedgerEntryModel,
    UserModel,
)
from .accrual import AccrualResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Balance:
    current: int
    withdrawn: int


def claim_statement(limit: int):
    """Non-terminal rows, locked for this transaction; rows locked elsewhere are skipped."""
    return (
        select(LedgerEntryModel)
        .where(col(LedgerEntryModel.status).not_in(TERMINAL_STATUSES))
        .order_by(col(LedgerEntryModel.id))
        .limit(limit)
        .with_for_update(skip_locked=True)
    )


def _lease_free(now: datetime):
    return or_(
        col(LedgerEntryModel.claimed_by).is_(None),
        col(LedgerEntryModel.lease_until) < now,
    )


def _contribution(status: EntryStatus, change: int) -> int:
    return change if status == EntryStatus.PROCESSED else 0


class LedgerRepository:
    """Data access layer for users and the bonus ledger.

    The repository never commits; callers own the transaction boundaries.
    The one exception is a lease claim on databases without row locks: the
    lease has to be visible to other claimers before the claim returns.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def uses_row_locks(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"

    def _execute(self, stmt):
        return self.session.connection().execute(stmt)

    # Users --------------------------------------------------------------
    def add_user(self, login: str, password_hash: str) -> UserModel:
        user = UserModel(login=login, password_hash=password_hash)
        self.session.add(user)
        self.session.flush()
        self.session.refresh(user)
        return user

    def get_user_by_login(self, login: str) -> Optional[UserModel]:
        stmt = select(UserModel).where(UserModel.login == login)
        return self.session.exec(stmt).first()

    def _adjust_cached_balance(
        self, user_id: int, delta: int, *, require_funds: bool = False
    ) -> bool:
        """Move the cached balance in a single conditional UPDATE.

        With ``require_funds`` the row only changes when the balance covers a
        debit; concurrent debits serialize on the row and the loser sees False.
        """
        if delta == 0:
            return True
        stmt = (
            update(UserModel)
            .where(col(UserModel.id) == user_id)
            .values(balance=col(UserModel.balance) + delta)
        )
        if require_funds and delta < 0:
            stmt = stmt.where(col(UserModel.balance) >= -delta)
        return self._execute(stmt).rowcount == 1

    # Ledger writes ------------------------------------------------------
    def lookup_owner(self, order_id: int) -> Optional[int]:
        stmt = select(LedgerEntryModel.user_id).where(LedgerEntryModel.order_id == order_id)
        return self.session.exec(stmt).first()

    def insert_entry(
        self,
        *,
        user_id: int,
        order_id: int,
        amount: int,
        entry_type: EntryType,
        status: EntryStatus,
    ) -> LedgerEntryModel:
        owner = self.lookup_owner(order_id)
        if owner is not None:
            raise OrderAlreadyOwnedError(order_id, owner)

        entry = LedgerEntryModel(
            order_id=order_id,
            user_id=user_id,
            change=amount,
            type=entry_type,
            status=status,
        )
        self.session.add(entry)
        try:
            self.session.flush()
        except IntegrityError as exc:
            # Most likely a concurrent submission won the unique constraint.
            raise OrderInsertConflictError(order_id) from exc

        debit = entry_type == EntryType.WITHDRAW
        if not self._adjust_cached_balance(user_id, entry.processed_amount, require_funds=debit):
            if debit:
                raise InsufficientFundsError("Current balance is not enough for withdrawal")
            raise LookupError(f"User {user_id} not found")
        self.session.refresh(entry)
        return entry

    # Reconciliation -----------------------------------------------------
    def claim_pending(
        self,
        limit: int,
        *,
        owner: Optional[str] = None,
        lease_seconds: float = 3600.0,
    ) -> list[LedgerEntryModel]:
        """Claim up to ``limit`` non-terminal rows for one reconciliation cycle.

        On PostgreSQL the rows are locked with ``FOR UPDATE SKIP LOCKED`` for
        the rest of the transaction. Elsewhere each row is leased to ``owner``
        with a compare-and-swap on ``claimed_by``/``lease_until`` and the lease
        is committed at once; rows leased by someone else are skipped until
        their lease runs out.
        """
        if self.uses_row_locks:
            return list(self.session.exec(claim_statement(limit)))

        owner = owner or uuid4().hex
        now = datetime.now(UTC)
        candidates = self.session.exec(
            select(LedgerEntryModel.id)
            .where(col(LedgerEntryModel.status).not_in(TERMINAL_STATUSES), _lease_free(now))
            .order_by(col(LedgerEntryModel.id))
            .limit(limit)
        ).all()
        for entry_id in candidates:
            self._execute(
                update(LedgerEntryModel)
                .where(
                    col(LedgerEntryModel.id) == entry_id,
                    col(LedgerEntryModel.status).not_in(TERMINAL_STATUSES),
                    _lease_free(now),
                )
                .values(claimed_by=owner, lease_until=now + timedelta(seconds=lease_seconds))
            )
        self.session.commit()

        stmt = (
            select(LedgerEntryModel)
            .where(col(LedgerEntryModel.claimed_by) == owner)
            .order_by(col(LedgerEntryModel.id))
        )
        return list(self.session.exec(stmt))

    def release_claim(self, owner: str) -> None:
        if self.uses_row_locks:
            return
        self._execute(
            update(LedgerEntryModel)
            .where(col(LedgerEntryModel.claimed_by) == owner)
            .values(claimed_by=None, lease_until=None)
        )

    def apply_resolutions(
        self,
        claimed: Sequence[LedgerEntryModel],
        resolutions: Iterable[AccrualResult],
    ) -> int:
        """Write resolutions into the claimed rows.

        With row locks each resolution is written as it arrives. Leased rows
        are written once the stream is exhausted, so the write transaction
        stays short on databases that lock the whole file; each write checks
        that the lease is still held.

        Balance moves by the difference between the row's old and new
        PROCESSED contribution, so a repeated resolution for the same order
        replaces the earlier one instead of adding to it.
        """
        by_order = {entry.order_id: entry for entry in claimed}
        state = {entry.order_id: (entry.status, entry.change) for entry in claimed}
        if not self.uses_row_locks:
            resolutions = list(resolutions)

        applied = 0
        for result in resolutions:
            entry = by_order.get(result.order_id)
            if entry is None:
                logger.warning(
                    "reconciliation.unclaimed_result",
                    extra={"order_id": result.order_id},
                )
                continue

            status, change = state[result.order_id]
            if result.status.is_terminal:
                change_after = result.amount
            else:
                change_after = change
            stmt = (
                update(LedgerEntryModel)
                .where(col(LedgerEntryModel.id) == entry.id)
                .values(status=result.status, change=change_after)
            )
            if entry.claimed_by is not None:
                stmt = stmt.where(col(LedgerEntryModel.claimed_by) == entry.claimed_by)
            if self._execute(stmt).rowcount != 1:
                logger.warning(
                    "reconciliation.lease_lost",
                    extra={"order_id": result.order_id},
                )
                continue

            delta = _contribution(result.status, change_after) - _contribution(status, change)
            if not self._adjust_cached_balance(entry.user_id, delta):
                raise LookupError(f"User {entry.user_id} not found")
            state[result.order_id] = (result.status, change_after)
            applied += 1
            logger.debug(
                "reconciliation.applied",
                extra={
                    "order_id": result.order_id,
                    "status": result.status.value,
                    "change": change_after,
                },
            )
        return applied

    # Reads --------------------------------------------------------------
    def get_balance(self, user_id: int) -> Balance:
        stmt = select(
            func.coalesce(func.sum(LedgerEntryModel.change), 0),
            func.coalesce(
                func.sum(case((col(LedgerEntryModel.change) < 0, LedgerEntryModel.change), else_=0)),
                0,
            ),
        ).where(
            LedgerEntryModel.user_id == user_id,
            LedgerEntryModel.status == EntryStatus.PROCESSED,
        )
        current, withdrawn = self.session.exec(stmt).one()
        return Balance(current=int(current), withdrawn=abs(int(withdrawn)))

    def list_orders(self, user_id: int) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.user_id == user_id)
            .where(LedgerEntryModel.type == EntryType.TOP_UP)
            .order_by(col(LedgerEntryModel.change_date))
        )
        return list(self.session.exec(stmt))

    def list_withdrawals(self, user_id: int) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.user_id == user_id)
            .where(LedgerEntryModel.type == EntryType.WITHDRAW)
            .order_by(col(LedgerEntryModel.change_date))
        )
        return list(self.session.exec(stmt))
