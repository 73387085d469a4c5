from __future__ import annotations

import threading
from typing import Callable, Optional, Union

from sqlmodel import Session, select

from ..core.security import hash_password
from ..models import EntryStatus, EntryType, LedgerEntryModel, UserModel
from ..services import AccrualResult, LedgerRepository


def make_user(session: Session, login: str) -> int:
    user = LedgerRepository(session).add_user(login, hash_password("secret"))
    session.commit()
    return user.id


def make_order(
    session: Session,
    user_id: int,
    order_id: int,
    *,
    status: EntryStatus = EntryStatus.NEW,
    change: int = 0,
) -> None:
    LedgerRepository(session).insert_entry(
        user_id=user_id,
        order_id=order_id,
        amount=change,
        entry_type=EntryType.TOP_UP,
        status=status,
    )
    session.commit()


def fetch_entry(engine, order_id: int) -> LedgerEntryModel:
    with Session(engine) as session:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.order_id == order_id)
        entry = session.exec(stmt).one()
        session.expunge(entry)
        return entry


def cached_balance(engine, user_id: int) -> int:
    with Session(engine) as session:
        return session.get(UserModel, user_id).balance


def ledger_balance(engine, user_id: int) -> int:
    with Session(engine) as session:
        return LedgerRepository(session).get_balance(user_id).current


class FakeResolver:
    """Scripted stand-in for the accrual client."""

    def __init__(
        self,
        outcomes: dict[int, Union[AccrualResult, Exception]],
        on_resolve: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.outcomes = outcomes
        self.on_resolve = on_resolve
        self.calls: list[int] = []
        self.last_cancel: Optional[threading.Event] = None

    def resolve(
        self, order_id: int, cancel: Optional[threading.Event] = None
    ) -> AccrualResult:
        self.calls.append(order_id)
        self.last_cancel = cancel
        if self.on_resolve is not None:
            self.on_resolve(order_id)
        outcome = self.outcomes[order_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def processed(order_id: int, amount: int) -> AccrualResult:
    return AccrualResult(order_id=order_id, status=EntryStatus.PROCESSED, amount=amount)
