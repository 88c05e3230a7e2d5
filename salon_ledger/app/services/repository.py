from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlmodel import Session, select

from ..models import (
    AccountModel,
    BalanceTransactionModel,
    GiftCardModel,
    GiftCardStatus,
    TransactionStatus,
)
from ..models.db import utcnow


class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(self, email: str, full_name: str) -> AccountModel:
        account = AccountModel(email=email, full_name=full_name)
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def get_account_for_update(self, account_id: UUID) -> Optional[AccountModel]:
        stmt = (
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def find_account_by_email(self, email: str) -> Optional[AccountModel]:
        stmt = select(AccountModel).where(AccountModel.email == email)
        return self.session.exec(stmt).first()

    def compare_and_set_balance(
        self,
        account_id: UUID,
        *,
        expected_version: int,
        balance: Decimal,
        updated_at: datetime,
    ) -> bool:
        """Write the balance only if nobody bumped the version since it was read."""
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .where(AccountModel.version == expected_version)
            .values(
                balance=balance,
                last_balance_update=updated_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.exec(stmt).rowcount == 1

    # Balance transactions -----------------------------------------------
    def add_transaction(self, **fields: Any) -> BalanceTransactionModel:
        transaction = BalanceTransactionModel(**fields)
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def list_transactions(
        self,
        user_id: UUID,
        *,
        before_sequence: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[BalanceTransactionModel]:
        stmt = select(BalanceTransactionModel).where(BalanceTransactionModel.user_id == user_id)
        if before_sequence is not None:
            stmt = stmt.where(BalanceTransactionModel.sequence < before_sequence)
        stmt = stmt.order_by(BalanceTransactionModel.sequence.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt))

    def has_completed_reference(self, reference_id: str) -> bool:
        stmt = (
            select(BalanceTransactionModel.id)
            .where(BalanceTransactionModel.reference_id == reference_id)
            .where(BalanceTransactionModel.status == TransactionStatus.COMPLETED)
        )
        return self.session.exec(stmt).first() is not None


class GiftCardRepository:
    """Data access for gift cards. Counter and status writes are single UPDATE statements."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, card: GiftCardModel) -> GiftCardModel:
        self.session.add(card)
        self.session.flush()
        return card

    def get(self, card_id: UUID) -> Optional[GiftCardModel]:
        return self.session.get(GiftCardModel, card_id)

    def reload(self, card: GiftCardModel) -> GiftCardModel:
        self.session.refresh(card)
        return card

    def find_by_payment_intent(self, payment_intent_id: str) -> list[GiftCardModel]:
        stmt = select(GiftCardModel).where(GiftCardModel.payment_intent_id == payment_intent_id)
        return list(self.session.exec(stmt))

    def find_by_verification_token(self, token: str) -> Optional[GiftCardModel]:
        stmt = select(GiftCardModel).where(GiftCardModel.verification_token == token)
        return self.session.exec(stmt).first()

    def list_active_unlocked_hashes(self) -> list[tuple[UUID, str]]:
        stmt = (
            select(GiftCardModel.id, GiftCardModel.code_hash)
            .where(GiftCardModel.status == GiftCardStatus.ACTIVE)
            .where(GiftCardModel.is_locked == False)  # noqa: E712
            .order_by(GiftCardModel.created_at)
        )
        return [(card_id, code_hash) for card_id, code_hash in self.session.exec(stmt)]

    def list_recently_closed_hashes(self, since: datetime, limit: int) -> list[tuple[UUID, str]]:
        """Cards that left ACTIVE or were locked at or after ``since``, newest first."""
        stmt = (
            select(GiftCardModel.id, GiftCardModel.code_hash)
            .where(
                (
                    (GiftCardModel.status != GiftCardStatus.ACTIVE)
                    & (GiftCardModel.status_changed_at >= since)
                )
                | (
                    (GiftCardModel.is_locked == True)  # noqa: E712
                    & (GiftCardModel.locked_at >= since)
                )
            )
            .order_by(GiftCardModel.created_at.desc())
            .limit(limit)
        )
        return [(card_id, code_hash) for card_id, code_hash in self.session.exec(stmt)]

    def list_due_for_expiry(self, now: datetime) -> list[GiftCardModel]:
        stmt = (
            select(GiftCardModel)
            .where(GiftCardModel.status == GiftCardStatus.ACTIVE)
            .where(GiftCardModel.expiration_date < now)
        )
        return list(self.session.exec(stmt))

    def list_by_purchaser(self, email: str) -> list[GiftCardModel]:
        stmt = (
            select(GiftCardModel)
            .where(GiftCardModel.purchaser_email == email)
            .order_by(GiftCardModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    def list_by_recipient(self, email: str) -> list[GiftCardModel]:
        stmt = (
            select(GiftCardModel)
            .where(GiftCardModel.recipient_email == email)
            .order_by(GiftCardModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    def list_all(self) -> list[GiftCardModel]:
        stmt = select(GiftCardModel).order_by(GiftCardModel.created_at.desc())
        return list(self.session.exec(stmt))

    def transition(
        self,
        card_id: UUID,
        *,
        from_status: GiftCardStatus,
        to_status: GiftCardStatus,
        require_unlocked: bool = False,
        **values: Any,
    ) -> bool:
        """Move a card between states; False if it was no longer in ``from_status``."""
        stmt = (
            update(GiftCardModel)
            .where(GiftCardModel.id == card_id)
            .where(GiftCardModel.status == from_status)
        )
        if require_unlocked:
            stmt = stmt.where(GiftCardModel.is_locked == False)  # noqa: E712
        values.setdefault("status_changed_at", utcnow())
        stmt = stmt.values(status=to_status, **values).execution_options(
            synchronize_session=False
        )
        return self.session.exec(stmt).rowcount == 1

    def update_fields(self, card_id: UUID, **values: Any) -> None:
        stmt = (
            update(GiftCardModel)
            .where(GiftCardModel.id == card_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.exec(stmt)

    def record_redemption_attempt(self, card_id: UUID, *, at: datetime, ip: Optional[str]) -> None:
        self.update_fields(
            card_id,
            redemption_attempts=GiftCardModel.redemption_attempts + 1,
            last_redemption_attempt=at,
            last_redemption_ip=ip,
        )

    def record_verification_attempt(self, card_id: UUID, *, at: datetime) -> None:
        self.update_fields(
            card_id,
            verification_attempts=GiftCardModel.verification_attempts + 1,
            last_verification_attempt=at,
        )

    def lock(self, card_id: UUID, *, reason: str, at: datetime) -> None:
        self.update_fields(card_id, is_locked=True, locked_at=at, locked_reason=reason)
