from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from ..core import security
from ..core.errors import (
    AmountMismatchError,
    ConcurrentUpdateError,
    DuplicatePurchaseError,
    ExpiredError,
    GiftCardNotFoundError,
    InvalidCodeError,
    LockedError,
    MissingPaymentReferenceError,
    NotActiveError,
    PaymentNotSucceededError,
    WrongCardTypeError,
)
from ..models import (
    GiftCardPurchaseRequest,
    GiftCardStatus,
    GiftCardType,
    TransactionType,
)
from ..models.db import utcnow
from ..services import GiftCardService
from ..services.gift_cards import add_months
from .conftest import RecordingNotifier


def _request(amount: str = "30.00", card_type: GiftCardType = GiftCardType.BALANCE, **overrides):
    data = {
        "amount": Decimal(amount),
        "type": card_type,
        "purchaser_email": "buyer@example.com",
        "purchaser_name": "Buyer",
        "recipient_email": "friend@example.com",
        "recipient_name": "Friend",
        "message": "Enjoy!",
    }
    data.update(overrides)
    return GiftCardPurchaseRequest(**data)


@pytest.fixture
def buy(gift_cards, gateway):
    def _buy(
        payment_id: str = "pi_1",
        amount: str = "30.00",
        card_type: GiftCardType = GiftCardType.BALANCE,
    ):
        gateway.add(payment_id, int(Decimal(amount) * 100))
        return gift_cards.purchase(_request(amount, card_type), payment_id)

    return _buy


def test_purchase_and_redeem_balance_card(gift_cards, ledger, make_account, buy) -> None:
    user = make_account("user@example.com")

    purchased = buy("pi_1", "30.00")
    card = purchased.card
    assert card.status == GiftCardStatus.ACTIVE
    assert card.amount == Decimal("30.00")
    assert card.payment_intent_id == "pi_1"
    assert card.code_hash != purchased.code
    assert security.verify_code(purchased.code, card.code_hash)

    tx = gift_cards.redeem(purchased.code, user.id, "203.0.113.7")
    assert tx.type == TransactionType.GIFT_CARD_REDEEM
    assert tx.amount == Decimal("30.00")
    assert tx.reference_id == str(card.id)
    assert ledger.get_balance(user.id) == Decimal("30.00")

    redeemed = gift_cards.repository.get(card.id)
    assert redeemed.status == GiftCardStatus.REDEEMED
    assert redeemed.redeemed_by_user_id == str(user.id)
    assert redeemed.redeemed_at is not None
    assert redeemed.last_redemption_ip == "203.0.113.7"


def test_expiration_is_six_months_out(buy) -> None:
    card = buy().card
    assert card.expiration_date.month == add_months(card.created_at, 6).month
    assert card.expiration_date > card.created_at + timedelta(days=180)


def test_add_months_clamps_day() -> None:
    start = utcnow().replace(year=2025, month=8, day=31)
    assert add_months(start, 6).date().isoformat() == "2026-02-28"


def test_replayed_code_is_not_active(gift_cards, ledger, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy()
    gift_cards.redeem(purchased.code, user.id)

    with pytest.raises(NotActiveError):
        gift_cards.redeem(purchased.code, user.id)
    assert ledger.get_balance(user.id) == Decimal("30.00")


def test_unknown_code_is_generic(gift_cards, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy()

    with pytest.raises(InvalidCodeError) as excinfo:
        gift_cards.redeem("x" + purchased.code, user.id)
    assert str(excinfo.value) == "Invalid gift card code"

    with pytest.raises(InvalidCodeError):
        gift_cards.redeem("a" * 200, user.id)


def test_service_card_cannot_be_redeemed_for_balance(
    gift_cards, ledger, make_account, buy
) -> None:
    user = make_account("user@example.com")
    purchased = buy("pi_service", "80.00", GiftCardType.SERVICE)

    with pytest.raises(WrongCardTypeError):
        gift_cards.redeem(purchased.code, user.id)

    card = gift_cards.mark_service_card_used(purchased.card.id, "admin-7")
    assert card.status == GiftCardStatus.REDEEMED
    assert card.redeemed_by_user_id == "admin-7"
    assert ledger.get_history(user.id) == []


def test_mark_used_rejects_balance_cards(gift_cards, buy) -> None:
    purchased = buy()
    with pytest.raises(WrongCardTypeError):
        gift_cards.mark_service_card_used(purchased.card.id, "admin-1")
    with pytest.raises(GiftCardNotFoundError):
        gift_cards.mark_service_card_used(uuid4(), "admin-1")


def test_card_locks_after_too_many_attempts(gift_cards, settings, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy("pi_service", "50.00", GiftCardType.SERVICE)

    for _ in range(settings.max_redemption_attempts):
        with pytest.raises(WrongCardTypeError):
            gift_cards.redeem(purchased.code, user.id, "198.51.100.1")

    with pytest.raises(LockedError):
        gift_cards.redeem(purchased.code, user.id, "198.51.100.1")

    card = gift_cards.repository.get(purchased.card.id)
    assert card.is_locked
    assert card.locked_reason
    assert card.redemption_attempts == settings.max_redemption_attempts + 1

    with pytest.raises(LockedError):
        gift_cards.redeem(purchased.code, user.id)
    with pytest.raises(LockedError):
        gift_cards.mark_service_card_used(card.id, "admin-1")


def test_clear_lock_reopens_card(gift_cards, settings, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy("pi_service", "50.00", GiftCardType.SERVICE)
    for _ in range(settings.max_redemption_attempts + 1):
        with pytest.raises((WrongCardTypeError, LockedError)):
            gift_cards.redeem(purchased.code, user.id)

    card = gift_cards.clear_lock(purchased.card.id, "admin-1")
    assert not card.is_locked
    assert card.redemption_attempts == 0

    used = gift_cards.mark_service_card_used(card.id, "admin-1")
    assert used.status == GiftCardStatus.REDEEMED


def test_expired_card_transitions_once(gift_cards, session, notifier, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy()
    card = purchased.card
    card.expiration_date = utcnow() - timedelta(days=1)
    session.add(card)
    session.commit()

    with pytest.raises(ExpiredError):
        gift_cards.redeem(purchased.code, user.id)
    assert gift_cards.repository.get(card.id).status == GiftCardStatus.EXPIRED
    assert "expired" in notifier.kinds()

    with pytest.raises(NotActiveError):
        gift_cards.redeem(purchased.code, user.id)


def test_purchase_requires_payment_reference(gift_cards) -> None:
    with pytest.raises(MissingPaymentReferenceError):
        gift_cards.purchase(_request(), "  ")


def test_purchase_requires_succeeded_payment(gift_cards, gateway) -> None:
    gateway.add("pi_open", 3000, status="processing")
    with pytest.raises(PaymentNotSucceededError):
        gift_cards.purchase(_request(), "pi_open")
    assert gift_cards.list_all() == []


def test_purchase_is_once_per_payment(gift_cards, buy) -> None:
    buy("pi_1")
    with pytest.raises(DuplicatePurchaseError):
        gift_cards.purchase(_request(), "pi_1")
    assert len(gift_cards.list_all()) == 1


def test_purchase_amount_must_match_payment(gift_cards, gateway) -> None:
    gateway.add("pi_short", 2999)
    with pytest.raises(AmountMismatchError):
        gift_cards.purchase(_request("30.00"), "pi_short")

    gateway.add("pi_usd", 3000, currency="usd")
    with pytest.raises(AmountMismatchError):
        gift_cards.purchase(_request("30.00"), "pi_usd")
    assert gift_cards.list_all() == []


def test_purchase_records_transaction_for_known_purchaser(
    gift_cards, ledger, make_account, buy
) -> None:
    buyer = make_account("buyer@example.com", opening="5.00")

    buy("pi_gift", "30.00")

    history = ledger.get_history(buyer.id)
    assert history[0].type == TransactionType.GIFT_CARD_PURCHASE
    assert history[0].reference_id == "pi_gift"
    assert ledger.get_balance(buyer.id) == Decimal("5.00")


def test_purchase_notifications(notifier, buy) -> None:
    buy("pi_balance")
    assert notifier.kinds() == ["purchase", "received"]

    buy("pi_service", "60.00", GiftCardType.SERVICE)
    assert notifier.kinds()[-1] == "admin_service"


def test_notification_failures_are_not_fatal(
    session, ledger, gateway, settings, make_account
) -> None:
    notifier = RecordingNotifier(fail=True)
    service = GiftCardService(session, ledger, gateway, notifier=notifier, settings=settings)
    user = make_account("user@example.com")
    gateway.add("pi_1", 3000)

    purchased = service.purchase(_request(), "pi_1")
    tx = service.redeem(purchased.code, user.id)

    assert tx.balance_after == Decimal("30.00")
    assert notifier.kinds() == ["purchase", "received", "redeemed"]


def test_verify_for_admin_counts_attempts(gift_cards, settings, buy) -> None:
    card = buy("pi_service", "40.00", GiftCardType.SERVICE).card
    token = card.verification_token

    verified = gift_cards.verify_for_admin(token)
    assert verified.id == card.id
    assert verified.verification_attempts == 1

    for _ in range(settings.max_verification_attempts - 1):
        gift_cards.verify_for_admin(token)

    with pytest.raises(LockedError):
        gift_cards.verify_for_admin(token)
    with pytest.raises(LockedError):
        gift_cards.verify_for_admin(token)


def test_verify_for_admin_unknown_token(gift_cards) -> None:
    with pytest.raises(GiftCardNotFoundError):
        gift_cards.verify_for_admin("not-a-token")


def test_expire_due_sweeps_only_past_cards(gift_cards, session, notifier, buy) -> None:
    old = buy("pi_old").card
    fresh = buy("pi_fresh").card
    old.expiration_date = utcnow() - timedelta(minutes=5)
    session.add(old)
    session.commit()

    assert gift_cards.expire_due() == 1
    assert gift_cards.repository.get(old.id).status == GiftCardStatus.EXPIRED
    assert gift_cards.repository.get(fresh.id).status == GiftCardStatus.ACTIVE
    assert notifier.kinds().count("expired") == 1

    assert gift_cards.expire_due() == 0


def test_cancel_for_failed_payment(gift_cards, make_account, buy) -> None:
    user = make_account("user@example.com")
    purchased = buy("pi_reversed")

    assert gift_cards.cancel_for_failed_payment("pi_reversed") == 1
    card = gift_cards.repository.get(purchased.card.id)
    assert card.status == GiftCardStatus.CANCELLED
    assert card.is_locked

    with pytest.raises(NotActiveError):
        gift_cards.redeem(purchased.code, user.id)
    assert gift_cards.cancel_for_failed_payment("pi_reversed") == 0


def test_lookups_by_email_and_payment(gift_cards, buy) -> None:
    card = buy("pi_lookup").card
    assert [c.id for c in gift_cards.list_purchased("buyer@example.com")] == [card.id]
    assert [c.id for c in gift_cards.list_received("friend@example.com")] == [card.id]
    assert gift_cards.get_by_payment_intent("pi_lookup").id == card.id
    with pytest.raises(GiftCardNotFoundError):
        gift_cards.get_by_payment_intent("pi_missing")


def _count_hash_checks(monkeypatch) -> list[int]:
    calls = [0]
    real_verify = security.verify_code

    def counting_verify(code, hashed):
        calls[0] += 1
        return real_verify(code, hashed)

    monkeypatch.setattr(security, "verify_code", counting_verify)
    return calls


def test_unknown_code_skips_long_closed_cards(
    gift_cards, session, settings, make_account, buy, monkeypatch
) -> None:
    user = make_account("user@example.com")
    codes = []
    for index in range(4):
        purchased = buy(f"pi_old_{index}")
        gift_cards.redeem(purchased.code, user.id)
        codes.append(purchased.code)

    # Everything except the last card closed well outside the replay window.
    long_ago = utcnow() - timedelta(days=settings.gift_card_replay_window_days + 1)
    for card in gift_cards.list_all()[1:]:
        card.status_changed_at = long_ago
        session.add(card)
    session.commit()

    calls = _count_hash_checks(monkeypatch)
    with pytest.raises(InvalidCodeError):
        gift_cards.redeem("guess-" + "a" * 40, user.id)
    assert calls[0] == 1

    # A long-closed card is indistinguishable from an unknown code.
    with pytest.raises(InvalidCodeError):
        gift_cards.redeem(codes[0], user.id)
    with pytest.raises(NotActiveError):
        gift_cards.redeem(codes[-1], user.id)


def test_replay_scan_is_capped(gift_cards, settings, make_account, buy, monkeypatch) -> None:
    settings.gift_card_replay_scan_limit = 2
    user = make_account("user@example.com")
    for index in range(3):
        gift_cards.redeem(buy(f"pi_cap_{index}").code, user.id)

    calls = _count_hash_checks(monkeypatch)
    with pytest.raises(InvalidCodeError):
        gift_cards.redeem("guess-" + "b" * 40, user.id)
    assert calls[0] == 2


def test_purchase_compares_captured_amount(gift_cards, gateway) -> None:
    gateway.add("pi_partial", 3000, amount_received_minor_units=2000)
    with pytest.raises(AmountMismatchError):
        gift_cards.purchase(_request("30.00"), "pi_partial")
    assert gift_cards.list_all() == []


class _SlowLedger:
    """Loses the balance race ``losses`` times before delegating."""

    def __init__(self, ledger, losses: int) -> None:
        self._ledger = ledger
        self.losses = losses

    def __getattr__(self, name):
        return getattr(self._ledger, name)

    def credit(self, *args, **kwargs):
        if self.losses > 0:
            self.losses -= 1
            raise ConcurrentUpdateError("Balance changed concurrently")
        return self._ledger.credit(*args, **kwargs)


def test_redeem_retries_lost_balance_race(
    session, ledger, gateway, notifier, settings, make_account
) -> None:
    service = GiftCardService(
        session, _SlowLedger(ledger, losses=2), gateway, notifier=notifier, settings=settings
    )
    user = make_account("user@example.com")
    gateway.add("pi_race", 3000)
    purchased = service.purchase(_request(), "pi_race")

    tx = service.redeem(purchased.code, user.id)

    assert tx.balance_after == Decimal("30.00")
    assert service.repository.get(purchased.card.id).status == GiftCardStatus.REDEEMED
    assert len(ledger.get_history(user.id)) == 1
