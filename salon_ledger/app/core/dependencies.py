from fastapi import Depends
from sqlmodel import Session

from ..services import (
    GiftCardNotifier,
    GiftCardService,
    LedgerRepository,
    LedgerService,
    LoggingNotifier,
    PaymentGateway,
    StripePaymentGateway,
)
from .config import Settings, get_settings
from .db import get_session


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    return StripePaymentGateway(
        settings.stripe_api_key,
        max_network_retries=settings.stripe_max_network_retries,
    )


def get_notifier() -> GiftCardNotifier:
    return LoggingNotifier()


def get_ledger_service(
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_settings),
) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository, gateway=gateway, settings=settings)


def get_gift_card_service(
    session: Session = Depends(get_session),
    ledger: LedgerService = Depends(get_ledger_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: GiftCardNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> GiftCardService:
    return GiftCardService(session, ledger, gateway, notifier=notifier, settings=settings)
