from .db import Account as AccountModel
from .db import BalanceTransaction as BalanceTransactionModel
from .db import GiftCard as GiftCardModel
from .db import GiftCardStatus, GiftCardType, TransactionStatus, TransactionType
from .schemas import (
    AccountCreate,
    AccountResponse,
    AdminGiftCardResponse,
    BalanceAdjustmentRequest,
    BalanceResponse,
    ExpireSweepResponse,
    GiftCardAdminAction,
    GiftCardPurchaseRequest,
    GiftCardRedemptionRequest,
    GiftCardResponse,
    StatementResponse,
    TopUpRequest,
    TransactionResponse,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "AdminGiftCardResponse",
    "BalanceAdjustmentRequest",
    "BalanceResponse",
    "ExpireSweepResponse",
    "GiftCardAdminAction",
    "GiftCardPurchaseRequest",
    "GiftCardRedemptionRequest",
    "GiftCardResponse",
    "StatementResponse",
    "TopUpRequest",
    "TransactionResponse",
    "AccountModel",
    "BalanceTransactionModel",
    "GiftCardModel",
    "GiftCardStatus",
    "GiftCardType",
    "TransactionStatus",
    "TransactionType",
]
