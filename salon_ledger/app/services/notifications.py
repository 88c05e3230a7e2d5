from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..models import BalanceTransactionModel, GiftCardModel


logger = logging.getLogger(__name__)


class GiftCardNotifier(Protocol):
    """Outbound email/SMS fan-out. Callers never let a failure here escape."""

    def notify_purchase(self, card: GiftCardModel, code: str) -> None: ...

    def notify_received(self, card: GiftCardModel, code: str) -> None: ...

    def notify_redeemed(
        self, card: GiftCardModel, transaction: Optional[BalanceTransactionModel]
    ) -> None: ...

    def notify_expired(self, card: GiftCardModel) -> None: ...

    def notify_admin_service_card(self, card: GiftCardModel) -> None: ...

    def notify_service_card_used(self, card: GiftCardModel) -> None: ...


class LoggingNotifier:
    """Default notifier: records that a message would be sent.

    The code is only for the outgoing message body and never goes in the log line.
    """

    def notify_purchase(self, card: GiftCardModel, code: str) -> None:
        logger.info(
            "notify.gift_card.purchase",
            extra={"gift_card_id": str(card.id), "to": card.purchaser_email},
        )

    def notify_received(self, card: GiftCardModel, code: str) -> None:
        logger.info(
            "notify.gift_card.received",
            extra={"gift_card_id": str(card.id), "to": card.recipient_email},
        )

    def notify_redeemed(
        self, card: GiftCardModel, transaction: Optional[BalanceTransactionModel]
    ) -> None:
        logger.info(
            "notify.gift_card.redeemed",
            extra={
                "gift_card_id": str(card.id),
                "to": card.purchaser_email,
                "transaction_id": str(transaction.id) if transaction else None,
            },
        )

    def notify_expired(self, card: GiftCardModel) -> None:
        logger.info(
            "notify.gift_card.expired",
            extra={
                "gift_card_id": str(card.id),
                "to": [card.recipient_email, card.purchaser_email],
            },
        )

    def notify_admin_service_card(self, card: GiftCardModel) -> None:
        logger.info("notify.gift_card.admin_service", extra={"gift_card_id": str(card.id)})

    def notify_service_card_used(self, card: GiftCardModel) -> None:
        logger.info(
            "notify.gift_card.service_used",
            extra={
                "gift_card_id": str(card.id),
                "to": [card.recipient_email, card.purchaser_email],
            },
        )
