from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .db import GiftCardStatus, GiftCardType, TransactionStatus, TransactionType


class AccountCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    full_name: str = Field(..., min_length=1, description="Name of the account holder")


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str
    created_at: datetime
    balance: Decimal = Field(..., ge=0, description="Current balance in the ledger currency")
    last_balance_update: Optional[datetime] = None


class BalanceResponse(BaseModel):
    user_id: UUID
    balance: Decimal
    currency: str


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    sequence: int
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    status: TransactionStatus
    reference_id: Optional[str] = None
    admin_id: Optional[str] = None
    created_at: datetime


class StatementResponse(BaseModel):
    items: list[TransactionResponse]
    next_cursor: Optional[str] = None


class TopUpRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


class BalanceAdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., decimal_places=2, description="Signed amount; negative debits")
    description: str = Field(..., min_length=1)
    admin_id: str = Field(..., min_length=1)


class GiftCardPurchaseRequest(BaseModel):
    amount: Decimal = Field(..., ge=Decimal("1.00"), decimal_places=2)
    type: GiftCardType
    purchaser_email: str = Field(..., min_length=3, max_length=254)
    purchaser_name: str = Field(..., min_length=1, max_length=100)
    recipient_email: str = Field(..., min_length=3, max_length=254)
    recipient_name: str = Field(..., min_length=1, max_length=100)
    message: Optional[str] = Field(default=None, max_length=500)
    payment_intent_id: str = ""


class GiftCardRedemptionRequest(BaseModel):
    code: str = Field(..., min_length=1)
    user_id: UUID


class GiftCardAdminAction(BaseModel):
    admin_id: str = Field(..., min_length=1)


class GiftCardResponse(BaseModel):
    """Card state as shown to purchasers and administrators. Never carries the code."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: GiftCardType
    amount: Decimal
    status: GiftCardStatus
    purchaser_email: str
    purchaser_name: str
    recipient_email: str
    recipient_name: str
    message: Optional[str] = None
    created_at: datetime
    expiration_date: datetime
    redeemed_at: Optional[datetime] = None
    redeemed_by_user_id: Optional[str] = None
    payment_intent_id: str
    is_locked: bool
    locked_reason: Optional[str] = None


class AdminGiftCardResponse(GiftCardResponse):
    verification_token: str
    redemption_attempts: int
    verification_attempts: int
    last_redemption_ip: Optional[str] = None


class ExpireSweepResponse(BaseModel):
    expired: int
