from __future__ import annotations

import logging
import random
import time
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.errors import (
    AccountNotFoundError,
    AlreadyAppliedError,
    AmountMismatchError,
    ConcurrentUpdateError,
    InsufficientFundsError,
    InvalidAmountError,
    OwnershipMismatchError,
    PaymentNotSucceededError,
)
from ..models import (
    AccountCreate,
    AccountModel,
    BalanceTransactionModel,
    StatementResponse,
    TransactionResponse,
    TransactionStatus,
    TransactionType,
)
from ..models.db import utcnow
from .payments import CENT, PaymentGateway, minor_to_decimal
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class _StaleBalance(Exception):
    """The account version moved between our read and our write."""


def backoff(attempt: int, base_seconds: float) -> None:
    """Sleep a random slice of an exponentially growing window before retrying."""
    if base_seconds > 0:
        time.sleep(random.uniform(0, base_seconds * 2 ** (attempt - 1)))


class LedgerService:
    """Owns every mutation of account balances.

    Each write reads the account row (``FOR UPDATE`` where the database
    supports it), computes the new balance, stores it with a compare-and-set
    on ``Account.version`` and appends the transaction in the same database
    transaction. A lost compare-and-set is rolled back and retried.
    """

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        self.gateway = gateway
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _get_account(self, user_id: UUID) -> AccountModel:
        account = self.repository.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return account

    def _validate_amount(self, amount: Decimal) -> Decimal:
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive")
        if amount != amount.quantize(CENT):
            raise InvalidAmountError("Amount cannot have fractions of a cent")
        return amount.quantize(CENT)

    def _apply(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType,
        reference_id: Optional[str],
        admin_id: Optional[str],
    ) -> BalanceTransactionModel:
        account = self.repository.get_account_for_update(user_id)
        if account is None:
            raise AccountNotFoundError(f"Account {user_id} not found")

        if reference_id is not None and self.repository.has_completed_reference(reference_id):
            raise AlreadyAppliedError(f"Reference {reference_id} has already been applied")

        balance_before = account.balance if account.balance is not None else ZERO
        balance_after = balance_before + transaction_type.direction * amount
        if balance_after < 0:
            raise InsufficientFundsError(
                f"Insufficient balance. Available: {balance_before}, required: {amount}"
            )

        now = utcnow()
        expected_version = account.version
        if not self.repository.compare_and_set_balance(
            account.id,
            expected_version=expected_version,
            balance=balance_after,
            updated_at=now,
        ):
            raise _StaleBalance()

        return self.repository.add_transaction(
            user_id=account.id,
            sequence=expected_version + 1,
            type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            status=TransactionStatus.COMPLETED,
            reference_id=reference_id,
            admin_id=admin_id,
            created_at=now,
            completed_at=now,
        )

    def _write(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType,
        reference_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        commit: bool = True,
    ) -> BalanceTransactionModel:
        amount = self._validate_amount(amount)
        # Inside a caller's transaction a retry would discard the caller's work;
        # the caller retries its whole unit instead.
        attempts = max(1, self.settings.balance_write_retries) if commit else 1

        for attempt in range(1, attempts + 1):
            try:
                transaction = self._apply(
                    user_id, amount, description, transaction_type, reference_id, admin_id
                )
                if commit:
                    self.session.commit()
            except _StaleBalance:
                if commit:
                    self.session.rollback()
                logger.warning(
                    "balance.write.conflict",
                    extra={"user_id": str(user_id), "attempt": attempt},
                )
                if attempt < attempts:
                    backoff(attempt, self.settings.balance_write_backoff_seconds)
                continue
            except IntegrityError as exc:
                if commit:
                    self.session.rollback()
                raise AlreadyAppliedError(
                    f"Reference {reference_id} has already been applied"
                ) from exc
            except Exception:
                if commit:
                    self.session.rollback()
                raise

            logger.info(
                f"balance.{transaction_type.value.lower()}",
                extra={
                    "user_id": str(user_id),
                    "amount": str(amount),
                    "balance_after": str(transaction.balance_after),
                    "reference_id": reference_id,
                },
            )
            return transaction

        raise ConcurrentUpdateError(
            f"Balance of account {user_id} changed concurrently, please retry"
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, payload: AccountCreate) -> AccountModel:
        try:
            account = self.repository.add_account(payload.email, payload.full_name)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("An account with this email already exists") from exc
        logger.info("account.created", extra={"account_id": str(account.id)})
        return account

    def get_account(self, user_id: UUID) -> AccountModel:
        return self._get_account(user_id)

    def find_account_by_email(self, email: str) -> Optional[AccountModel]:
        return self.repository.find_account_by_email(email)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_balance(self, user_id: UUID) -> Decimal:
        account = self._get_account(user_id)
        return account.balance if account.balance is not None else ZERO

    def has_insufficient_balance(self, user_id: UUID, required: Decimal) -> bool:
        return self.get_balance(user_id) < required

    def get_history(self, user_id: UUID) -> list[BalanceTransactionModel]:
        self._get_account(user_id)
        return self.repository.list_transactions(user_id)

    def get_statement(
        self,
        user_id: UUID,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> StatementResponse:
        self._get_account(user_id)
        if limit < 1:
            raise ValueError("Limit must be positive")

        before_sequence = None
        if cursor:
            try:
                before_sequence = int(cursor)
            except ValueError as exc:
                raise ValueError("Invalid cursor") from exc

        # One extra row tells us whether another page exists.
        entries = self.repository.list_transactions(
            user_id, before_sequence=before_sequence, limit=limit + 1
        )
        page = entries[:limit]
        next_cursor = str(page[-1].sequence) if len(entries) > limit else None

        return StatementResponse(
            items=[TransactionResponse.model_validate(entry) for entry in page],
            next_cursor=next_cursor,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType = TransactionType.CREDIT,
        reference_id: Optional[str] = None,
        commit: bool = True,
    ) -> BalanceTransactionModel:
        if transaction_type.direction <= 0:
            raise ValueError(f"{transaction_type.value} is not a credit type")
        return self._write(
            user_id, amount, description, transaction_type, reference_id, commit=commit
        )

    def debit(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        transaction_type: TransactionType = TransactionType.DEBIT,
        reference_id: Optional[str] = None,
        commit: bool = True,
    ) -> BalanceTransactionModel:
        if transaction_type.direction >= 0:
            raise ValueError(f"{transaction_type.value} is not a debit type")
        return self._write(
            user_id, amount, description, transaction_type, reference_id, commit=commit
        )

    def refund_to_balance(
        self, user_id: UUID, amount: Decimal, description: str, order_id: str
    ) -> BalanceTransactionModel:
        return self.credit(user_id, amount, description, TransactionType.REFUND, order_id)

    def pay_with_balance(
        self, user_id: UUID, amount: Decimal, description: str, order_id: str
    ) -> BalanceTransactionModel:
        return self.debit(user_id, amount, description, TransactionType.DEBIT, order_id)

    def record_purchase(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        reference_id: Optional[str] = None,
    ) -> BalanceTransactionModel:
        """History entry for something paid through the gateway; the balance is unchanged."""
        return self._write(
            user_id, amount, description, TransactionType.GIFT_CARD_PURCHASE, reference_id
        )

    def admin_adjust(
        self,
        user_id: UUID,
        signed_amount: Decimal,
        description: str,
        admin_id: str,
    ) -> BalanceTransactionModel:
        signed_amount = Decimal(signed_amount)
        if signed_amount == 0:
            raise InvalidAmountError("Adjustment amount cannot be zero")
        if signed_amount > 0:
            transaction_type, amount = TransactionType.CREDIT, signed_amount
        else:
            transaction_type, amount = TransactionType.DEBIT, -signed_amount

        transaction = self._write(
            user_id, amount, description, transaction_type, admin_id=admin_id
        )
        logger.info(
            "balance.admin_adjust",
            extra={"user_id": str(user_id), "admin_id": admin_id, "amount": str(signed_amount)},
        )
        return transaction

    def credit_from_external_payment(
        self, user_id: UUID, payment_reference_id: str
    ) -> BalanceTransactionModel:
        self._get_account(user_id)
        if self.gateway is None:
            raise RuntimeError("No payment gateway configured")
        # Release the database before waiting on the network.
        self.session.commit()

        payment = self.gateway.get_payment(payment_reference_id)
        if not payment.succeeded:
            raise PaymentNotSucceededError(
                f"Payment {payment_reference_id} not succeeded (status={payment.status})"
            )

        owner = payment.metadata.get("user_id")
        if owner is None:
            # Older payments were created without owner metadata; they are still accepted.
            logger.warning(
                "balance.top_up.missing_owner",
                extra={"user_id": str(user_id), "payment_intent_id": payment_reference_id},
            )
        elif owner != str(user_id):
            raise OwnershipMismatchError(
                f"Payment {payment_reference_id} does not belong to user {user_id}"
            )

        if payment.currency != self.settings.currency.lower():
            raise AmountMismatchError(
                f"Payment currency {payment.currency} does not match {self.settings.currency}"
            )

        if self.repository.has_completed_reference(payment_reference_id):
            raise AlreadyAppliedError(
                f"Payment {payment_reference_id} has already been applied"
            )

        amount = minor_to_decimal(payment.amount_received_minor_units)
        return self.credit(
            user_id,
            amount,
            "Top-up via Stripe",
            TransactionType.CREDIT,
            reference_id=payment_reference_id,
        )
