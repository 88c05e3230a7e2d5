from .gift_cards import GiftCardService, PurchasedGiftCard
from .ledger import LedgerService
from .notifications import GiftCardNotifier, LoggingNotifier
from .payments import GatewayPayment, PaymentGateway, StripePaymentGateway
from .repository import GiftCardRepository, LedgerRepository

__all__ = [
    "GatewayPayment",
    "GiftCardNotifier",
    "GiftCardRepository",
    "GiftCardService",
    "LedgerRepository",
    "LedgerService",
    "LoggingNotifier",
    "PaymentGateway",
    "PurchasedGiftCard",
    "StripePaymentGateway",
]
