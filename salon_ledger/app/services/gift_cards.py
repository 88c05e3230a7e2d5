from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from ..core import security
from ..core.config import Settings, get_settings
from ..core.errors import (
    AmountMismatchError,
    ConcurrentUpdateError,
    DuplicatePurchaseError,
    ExpiredError,
    GiftCardNotFoundError,
    InvalidCodeError,
    LedgerError,
    LockedError,
    MissingPaymentReferenceError,
    NotActiveError,
    PaymentNotSucceededError,
    WrongCardTypeError,
)
from ..models import (
    BalanceTransactionModel,
    GiftCardModel,
    GiftCardPurchaseRequest,
    GiftCardStatus,
    GiftCardType,
    TransactionType,
)
from ..models.db import utcnow
from .ledger import LedgerService, backoff
from .notifications import GiftCardNotifier, LoggingNotifier
from .payments import PaymentGateway, decimal_to_minor
from .repository import GiftCardRepository


logger = logging.getLogger(__name__)

REDEMPTION_LOCK_REASON = "Too many redemption attempts"
VERIFICATION_LOCK_REASON = "Too many verification attempts"
PAYMENT_FAILED_REASON = "Payment failed or cancelled"


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def as_utc(moment: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo; everything is stored in UTC.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


@dataclass(frozen=True)
class PurchasedGiftCard:
    """A freshly minted card and its plaintext code.

    The code exists only here and in the purchase notifications; it is never
    stored or logged.
    """

    card: GiftCardModel
    code: str


class GiftCardService:
    def __init__(
        self,
        session: Session,
        ledger: LedgerService,
        gateway: PaymentGateway,
        notifier: Optional[GiftCardNotifier] = None,
        repository: Optional[GiftCardRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.repository = repository or GiftCardRepository(session)
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _notify(self, card: GiftCardModel, send: Callable[..., None], *args: Any) -> None:
        try:
            send(card, *args)
        except Exception:
            logger.exception(
                "gift_card.notification.failed",
                extra={
                    "gift_card_id": str(card.id),
                    "notification": getattr(send, "__name__", repr(send)),
                },
            )

    def _get_card(self, card_id: UUID) -> GiftCardModel:
        card = self.repository.get(card_id)
        if card is None:
            raise GiftCardNotFoundError("Gift card not found")
        return card

    def _match_code(self, code: str, candidates: list[tuple[UUID, str]]) -> Optional[UUID]:
        for card_id, code_hash in candidates:
            if security.verify_code(code, code_hash):
                return card_id
        return None

    def _find_by_code(self, code: str, now: datetime) -> Optional[GiftCardModel]:
        # Only hashes are stored, so every candidate has to be checked in turn.
        # The candidates are read first and the transaction ended so that no
        # database lock is held while hashing.
        active = self.repository.list_active_unlocked_hashes()
        self.session.commit()
        card_id = self._match_code(code, active)
        if card_id is None:
            # Recently redeemed, expired, cancelled or locked cards say so on replay.
            since = now - timedelta(days=self.settings.gift_card_replay_window_days)
            recent = self.repository.list_recently_closed_hashes(
                since, self.settings.gift_card_replay_scan_limit
            )
            self.session.commit()
            card_id = self._match_code(code, recent)
        if card_id is None:
            return None
        return self.repository.get(card_id)

    def _is_past_expiry(self, card: GiftCardModel, now: datetime) -> bool:
        return as_utc(card.expiration_date) < now

    def _expire(self, card: GiftCardModel) -> bool:
        expired = self.repository.transition(
            card.id,
            from_status=GiftCardStatus.ACTIVE,
            to_status=GiftCardStatus.EXPIRED,
        )
        self.session.commit()
        self.repository.reload(card)
        if expired:
            logger.info("gift_card.expired", extra={"gift_card_id": str(card.id)})
            self._notify(card, self.notifier.notify_expired)
        return expired

    def _validate_redemption(
        self, card: GiftCardModel, client_ip: Optional[str], now: datetime
    ) -> None:
        if card.status != GiftCardStatus.ACTIVE:
            raise NotActiveError("This gift card is no longer active")
        if card.is_locked:
            raise LockedError("This gift card is locked")
        if self._is_past_expiry(card, now):
            self._expire(card)
            raise ExpiredError("This gift card has expired")

        self.repository.record_redemption_attempt(card.id, at=now, ip=client_ip)
        self.session.commit()
        self.repository.reload(card)

        if card.redemption_attempts > self.settings.max_redemption_attempts:
            self.repository.lock(card.id, reason=REDEMPTION_LOCK_REASON, at=now)
            self.session.commit()
            self.repository.reload(card)
            logger.warning(
                "gift_card.locked",
                extra={
                    "gift_card_id": str(card.id),
                    "reason": REDEMPTION_LOCK_REASON,
                    "client_ip": client_ip,
                },
            )
            raise LockedError("This gift card has been locked for security reasons")

    def _redeem_once(
        self, card_id: UUID, amount: Decimal, user_id: UUID, now: datetime
    ) -> BalanceTransactionModel:
        redeemed = self.repository.transition(
            card_id,
            from_status=GiftCardStatus.ACTIVE,
            to_status=GiftCardStatus.REDEEMED,
            require_unlocked=True,
            redeemed_at=now,
            redeemed_by_user_id=str(user_id),
        )
        if not redeemed:
            raise NotActiveError("This gift card is no longer active")
        return self.ledger.credit(
            user_id,
            amount,
            f"Gift card redemption - {str(card_id)[:8]}",
            TransactionType.GIFT_CARD_REDEEM,
            reference_id=str(card_id),
            commit=False,
        )

    def _record_purchase_transaction(self, card: GiftCardModel) -> None:
        account = self.ledger.find_account_by_email(card.purchaser_email)
        if account is None:
            return
        try:
            self.ledger.record_purchase(
                account.id,
                card.amount,
                f"Gift card purchase - {str(card.id)[:8]}",
                reference_id=card.payment_intent_id,
            )
        except (LedgerError, SQLAlchemyError):
            logger.warning(
                "gift_card.purchase_transaction.failed",
                extra={"gift_card_id": str(card.id)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def purchase(
        self, request: GiftCardPurchaseRequest, payment_reference_id: Optional[str]
    ) -> PurchasedGiftCard:
        payment_reference_id = (payment_reference_id or "").strip()
        if not payment_reference_id:
            raise MissingPaymentReferenceError("Payment reference is required")

        # Release the database before waiting on the network.
        self.session.commit()
        payment = self.gateway.get_payment(payment_reference_id)
        if not payment.succeeded:
            raise PaymentNotSucceededError(
                f"Payment not confirmed. Current status: {payment.status}"
            )

        if self.repository.find_by_payment_intent(payment_reference_id):
            logger.warning(
                "gift_card.duplicate_purchase",
                extra={"payment_intent_id": payment_reference_id},
            )
            raise DuplicatePurchaseError("Gift card already created for this payment")

        if (
            payment.amount_received_minor_units != decimal_to_minor(request.amount)
            or payment.currency != self.settings.currency.lower()
        ):
            raise AmountMismatchError(
                "Payment amount does not match the gift card amount"
            )

        code = security.generate_code(self.settings.gift_card_code_bytes)
        now = utcnow()
        card = GiftCardModel(
            code_hash=security.hash_code(code, rounds=self.settings.gift_card_hash_rounds),
            type=request.type,
            amount=request.amount,
            status=GiftCardStatus.ACTIVE,
            purchaser_email=request.purchaser_email,
            purchaser_name=request.purchaser_name,
            recipient_email=request.recipient_email,
            recipient_name=request.recipient_name,
            message=request.message,
            created_at=now,
            expiration_date=add_months(now, self.settings.gift_card_expiration_months),
            verification_token=security.generate_code(self.settings.verification_token_bytes),
            payment_intent_id=payment_reference_id,
        )
        try:
            self.repository.add(card)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicatePurchaseError("Gift card already created for this payment") from exc
        self.repository.reload(card)

        self._record_purchase_transaction(card)

        self._notify(card, self.notifier.notify_purchase, code)
        self._notify(card, self.notifier.notify_received, code)
        if card.type == GiftCardType.SERVICE:
            self._notify(card, self.notifier.notify_admin_service_card)

        logger.info(
            "gift_card.created",
            extra={
                "gift_card_id": str(card.id),
                "type": card.type.value,
                "amount": str(card.amount),
                "payment_intent_id": payment_reference_id,
            },
        )
        return PurchasedGiftCard(card=card, code=code)

    def redeem(
        self, code: str, user_id: UUID, client_ip: Optional[str] = None
    ) -> BalanceTransactionModel:
        now = utcnow()
        card = self._find_by_code(code, now)
        if card is None:
            logger.warning("gift_card.redeem.invalid_code", extra={"client_ip": client_ip})
            raise InvalidCodeError()

        self._validate_redemption(card, client_ip, now)

        if card.type != GiftCardType.BALANCE:
            raise WrongCardTypeError("This gift card type cannot be used to top up a balance")

        # Card transition and credit commit together; a lost balance race
        # rolls both back and the pair is tried again.
        card_id, amount = card.id, card.amount
        attempts = max(1, self.settings.balance_write_retries)
        for attempt in range(1, attempts + 1):
            try:
                transaction = self._redeem_once(card_id, amount, user_id, now)
                self.session.commit()
                break
            except ConcurrentUpdateError:
                self.session.rollback()
                if attempt == attempts:
                    raise
                logger.warning(
                    "gift_card.redeem.retry",
                    extra={"gift_card_id": str(card_id), "attempt": attempt},
                )
                backoff(attempt, self.settings.balance_write_backoff_seconds)
            except Exception:
                self.session.rollback()
                raise
        self.repository.reload(card)

        self._notify(card, self.notifier.notify_redeemed, transaction)
        logger.info(
            "gift_card.redeemed",
            extra={"gift_card_id": str(card.id), "user_id": str(user_id)},
        )
        return transaction

    def mark_service_card_used(self, card_id: UUID, admin_id: str) -> GiftCardModel:
        card = self._get_card(card_id)
        if card.type != GiftCardType.SERVICE:
            raise WrongCardTypeError("This gift card is not a service gift card")
        if card.status != GiftCardStatus.ACTIVE:
            raise NotActiveError("This gift card is not active")
        if card.is_locked:
            raise LockedError("This gift card is locked")

        used = self.repository.transition(
            card.id,
            from_status=GiftCardStatus.ACTIVE,
            to_status=GiftCardStatus.REDEEMED,
            require_unlocked=True,
            redeemed_at=utcnow(),
            redeemed_by_user_id=admin_id,
        )
        self.session.commit()
        if not used:
            raise NotActiveError("This gift card is not active")
        self.repository.reload(card)

        self._notify(card, self.notifier.notify_service_card_used)
        logger.info(
            "gift_card.service_used",
            extra={"gift_card_id": str(card.id), "admin_id": admin_id},
        )
        return card

    def verify_for_admin(self, verification_token: str) -> GiftCardModel:
        token = (verification_token or "").strip()
        card = self.repository.find_by_verification_token(token) if token else None
        if card is None:
            logger.warning("gift_card.verify.not_found")
            raise GiftCardNotFoundError("Gift card not found")
        if card.is_locked:
            raise LockedError("This gift card is locked")

        now = utcnow()
        self.repository.record_verification_attempt(card.id, at=now)
        self.session.commit()
        self.repository.reload(card)

        if card.verification_attempts > self.settings.max_verification_attempts:
            self.repository.lock(card.id, reason=VERIFICATION_LOCK_REASON, at=now)
            self.session.commit()
            logger.warning(
                "gift_card.locked",
                extra={"gift_card_id": str(card.id), "reason": VERIFICATION_LOCK_REASON},
            )
            raise LockedError("This gift card has been locked for security reasons")

        if card.status == GiftCardStatus.ACTIVE and self._is_past_expiry(card, now):
            self._expire(card)

        logger.info(
            "gift_card.verified",
            extra={"gift_card_id": str(card.id), "status": card.status.value},
        )
        return card

    def expire_due(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now) if now is not None else utcnow()
        expired: list[GiftCardModel] = []
        for card in self.repository.list_due_for_expiry(now):
            if self.repository.transition(
                card.id,
                from_status=GiftCardStatus.ACTIVE,
                to_status=GiftCardStatus.EXPIRED,
            ):
                expired.append(card)
        self.session.commit()

        for card in expired:
            self.repository.reload(card)
            self._notify(card, self.notifier.notify_expired)

        logger.info("gift_card.expire_sweep", extra={"expired": len(expired)})
        return len(expired)

    def cancel_for_failed_payment(self, payment_reference_id: str) -> int:
        now = utcnow()
        cancelled = 0
        for card in self.repository.find_by_payment_intent(payment_reference_id):
            if self.repository.transition(
                card.id,
                from_status=GiftCardStatus.ACTIVE,
                to_status=GiftCardStatus.CANCELLED,
                is_locked=True,
                locked_at=now,
                locked_reason=PAYMENT_FAILED_REASON,
            ):
                cancelled += 1
                logger.info(
                    "gift_card.cancelled",
                    extra={"gift_card_id": str(card.id), "payment_intent_id": payment_reference_id},
                )
        self.session.commit()
        return cancelled

    def clear_lock(self, card_id: UUID, admin_id: str) -> GiftCardModel:
        card = self._get_card(card_id)
        self.repository.update_fields(
            card.id,
            is_locked=False,
            locked_at=None,
            locked_reason=None,
            redemption_attempts=0,
            verification_attempts=0,
        )
        self.session.commit()
        self.repository.reload(card)
        logger.info(
            "gift_card.lock_cleared",
            extra={"gift_card_id": str(card.id), "admin_id": admin_id},
        )
        return card

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_purchased(self, email: str) -> list[GiftCardModel]:
        return self.repository.list_by_purchaser(email)

    def list_received(self, email: str) -> list[GiftCardModel]:
        return self.repository.list_by_recipient(email)

    def list_all(self) -> list[GiftCardModel]:
        return self.repository.list_all()

    def get_by_payment_intent(self, payment_reference_id: str) -> GiftCardModel:
        cards = self.repository.find_by_payment_intent(payment_reference_id)
        if not cards:
            raise GiftCardNotFoundError(
                f"No gift card found for payment {payment_reference_id}"
            )
        return cards[0]
