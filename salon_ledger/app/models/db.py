from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    GIFT_CARD_REDEEM = "GIFT_CARD_REDEEM"
    GIFT_CARD_PURCHASE = "GIFT_CARD_PURCHASE"

    @property
    def direction(self) -> int:
        """+1 adds to the balance, -1 removes, 0 leaves it untouched."""
        if self is TransactionType.DEBIT:
            return -1
        if self is TransactionType.GIFT_CARD_PURCHASE:
            # Paid through the gateway, recorded for history only: the entry
            # carries the card amount but balance_after == balance_before.
            return 0
        return 1


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class GiftCardType(str, Enum):
    BALANCE = "BALANCE"
    SERVICE = "SERVICE"


class GiftCardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Account(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    created_at: datetime = Field(default_factory=utcnow)
    balance: Decimal = Field(default=Decimal("0.00"), ge=0, max_digits=12, decimal_places=2)
    last_balance_update: Optional[datetime] = None
    version: int = Field(default=0)


class BalanceTransaction(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_balancetransaction_completed_reference",
            "reference_id",
            unique=True,
            sqlite_where=text("status = 'COMPLETED' AND reference_id IS NOT NULL"),
            postgresql_where=text("status = 'COMPLETED' AND reference_id IS NOT NULL"),
        ),
        Index("uq_balancetransaction_user_sequence", "user_id", "sequence", unique=True),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    user_id: UUID = Field(foreign_key="account.id", index=True)
    sequence: int
    type: TransactionType
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    balance_before: Decimal = Field(max_digits=12, decimal_places=2)
    balance_after: Decimal = Field(max_digits=12, decimal_places=2)
    description: str
    status: TransactionStatus = Field(default=TransactionStatus.COMPLETED, index=True)
    reference_id: Optional[str] = None
    admin_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None


class GiftCard(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    code_hash: str
    type: GiftCardType = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    status: GiftCardStatus = Field(default=GiftCardStatus.ACTIVE, index=True)
    status_changed_at: Optional[datetime] = Field(default=None, index=True)

    purchaser_email: str = Field(index=True)
    purchaser_name: str
    recipient_email: str = Field(index=True)
    recipient_name: str
    message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, index=True)
    expiration_date: datetime = Field(index=True)
    redeemed_at: Optional[datetime] = None
    redeemed_by_user_id: Optional[str] = None

    payment_intent_id: str = Field(unique=True, index=True)
    verification_token: str = Field(unique=True, index=True)
    notes: Optional[str] = None

    # Abuse control
    redemption_attempts: int = 0
    last_redemption_attempt: Optional[datetime] = None
    last_redemption_ip: Optional[str] = None
    verification_attempts: int = 0
    last_verification_attempt: Optional[datetime] = None
    is_locked: bool = Field(default=False, index=True)
    locked_at: Optional[datetime] = Field(default=None, index=True)
    locked_reason: Optional[str] = None
