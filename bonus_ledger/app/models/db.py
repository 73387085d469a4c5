from __future__ import annotations
from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


class EntryType(str, Enum):
    TOP_UP = "top_up"
    WITHDRAW = "withdraw"


class EntryStatus(str, Enum):
    NEW = "NEW"
    REGISTERED = "REGISTERED"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = (EntryStatus.PROCESSED, EntryStatus.INVALID)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    login: str = Field(unique=True, index=True)
    password_hash: str
    # Cache of the PROCESSED ledger sum; the ledger stays authoritative.
    balance: int = Field(default=0, sa_type=BigInteger)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LedgerEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_type=BigInteger, unique=True, index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    change: int = Field(default=0, sa_type=BigInteger)
    type: EntryType = Field(
        sa_type=SAEnum(EntryType, name="entry_type", values_callable=lambda e: [m.value for m in e])
    )
    status: EntryStatus = Field(default=EntryStatus.NEW, index=True)
    change_date: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)
    # Reconciliation lease, used where the database has no row locks.
    claimed_by: Optional[str] = Field(default=None, index=True)
    lease_until: Optional[datetime] = None

    @property
    def processed_amount(self) -> int:
        """Contribution of this entry to the user's current balance."""
        return self.change if self.status == EntryStatus.PROCESSED else 0
