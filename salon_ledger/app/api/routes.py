from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from ..core.config import Settings, get_settings
from ..core.dependencies import get_gift_card_service, get_ledger_service
from ..models import (
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
from ..services import GiftCardService, LedgerService


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return AccountResponse.model_validate(service.create_account(payload))

@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return AccountResponse.model_validate(service.get_account(account_id))

@router.get("/{account_id}/balance", response_model=BalanceResponse)
def get_balance(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return BalanceResponse(
        user_id=account_id,
        balance=service.get_balance(account_id),
        currency=service.settings.currency,
    )

@router.get("/{account_id}/transactions", response_model=list[TransactionResponse])
def get_transactions(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> list[TransactionResponse]:
    return [TransactionResponse.model_validate(tx) for tx in service.get_history(account_id)]

@router.get("/{account_id}/statement", response_model=StatementResponse)
def get_statement(
    account_id: UUID,
    limit: int = 50,
    cursor: str | None = None,
    service: LedgerService = Depends(get_ledger_service),
) -> StatementResponse:
    return service.get_statement(account_id, limit=limit, cursor=cursor)

@router.post(
    "/{account_id}/top-up",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
def top_up(
    account_id: UUID,
    payload: TopUpRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    transaction = service.credit_from_external_payment(account_id, payload.payment_intent_id)
    return TransactionResponse.model_validate(transaction)

@router.post("/{account_id}/adjust", response_model=TransactionResponse)
def adjust_balance(
    account_id: UUID,
    payload: BalanceAdjustmentRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    transaction = service.admin_adjust(
        account_id, payload.amount, payload.description, payload.admin_id
    )
    return TransactionResponse.model_validate(transaction)


gift_card_router = APIRouter(prefix="/gift-cards", tags=["gift-cards"])

def _client_ip(request: Request, settings: Settings) -> Optional[str]:
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded or peer not in settings.trusted_proxies:
        return peer
    # Walk back from the nearest hop; the first untrusted address is the client.
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in settings.trusted_proxies:
            return hop
    return peer

@gift_card_router.post("", response_model=GiftCardResponse, status_code=status.HTTP_201_CREATED)
def purchase_gift_card(
    payload: GiftCardPurchaseRequest,
    service: GiftCardService = Depends(get_gift_card_service),
) -> GiftCardResponse:
    purchased = service.purchase(payload, payload.payment_intent_id)
    return GiftCardResponse.model_validate(purchased.card)

@gift_card_router.post("/redeem", response_model=TransactionResponse)
def redeem_gift_card(
    payload: GiftCardRedemptionRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    service: GiftCardService = Depends(get_gift_card_service),
) -> TransactionResponse:
    transaction = service.redeem(payload.code, payload.user_id, _client_ip(request, settings))
    return TransactionResponse.model_validate(transaction)

@gift_card_router.get("/purchased", response_model=list[GiftCardResponse])
def list_purchased(
    email: str,
    service: GiftCardService = Depends(get_gift_card_service),
) -> list[GiftCardResponse]:
    return [GiftCardResponse.model_validate(card) for card in service.list_purchased(email)]

@gift_card_router.get("/received", response_model=list[GiftCardResponse])
def list_received(
    email: str,
    service: GiftCardService = Depends(get_gift_card_service),
) -> list[GiftCardResponse]:
    return [GiftCardResponse.model_validate(card) for card in service.list_received(email)]


admin_router = APIRouter(prefix="/admin/gift-cards", tags=["admin"])

@admin_router.get("", response_model=list[AdminGiftCardResponse])
def list_gift_cards(
    service: GiftCardService = Depends(get_gift_card_service),
) -> list[AdminGiftCardResponse]:
    return [AdminGiftCardResponse.model_validate(card) for card in service.list_all()]

@admin_router.get("/verify", response_model=AdminGiftCardResponse)
def verify_gift_card(
    token: str,
    service: GiftCardService = Depends(get_gift_card_service),
) -> AdminGiftCardResponse:
    return AdminGiftCardResponse.model_validate(service.verify_for_admin(token))

@admin_router.post("/expire", response_model=ExpireSweepResponse)
def expire_gift_cards(
    service: GiftCardService = Depends(get_gift_card_service),
) -> ExpireSweepResponse:
    return ExpireSweepResponse(expired=service.expire_due())

@admin_router.get("/payment-intent/{payment_intent_id}", response_model=AdminGiftCardResponse)
def get_gift_card_by_payment_intent(
    payment_intent_id: str,
    service: GiftCardService = Depends(get_gift_card_service),
) -> AdminGiftCardResponse:
    return AdminGiftCardResponse.model_validate(service.get_by_payment_intent(payment_intent_id))

@admin_router.post("/{card_id}/mark-used", response_model=AdminGiftCardResponse)
def mark_service_gift_card_used(
    card_id: UUID,
    payload: GiftCardAdminAction,
    service: GiftCardService = Depends(get_gift_card_service),
) -> AdminGiftCardResponse:
    card = service.mark_service_card_used(card_id, payload.admin_id)
    return AdminGiftCardResponse.model_validate(card)

@admin_router.post("/{card_id}/unlock", response_model=AdminGiftCardResponse)
def unlock_gift_card(
    card_id: UUID,
    payload: GiftCardAdminAction,
    service: GiftCardService = Depends(get_gift_card_service),
) -> AdminGiftCardResponse:
    return AdminGiftCardResponse.model_validate(service.clear_lock(card_id, payload.admin_id))

__all__ = ["router", "gift_card_router", "admin_router"]
