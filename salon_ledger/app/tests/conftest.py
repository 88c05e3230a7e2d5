from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from ..core import db as core_db
from ..core.config import Settings, get_settings
from ..core.db import create_engine_for_url, get_session, set_engine
from ..core.dependencies import get_notifier, get_payment_gateway
from ..core.errors import PaymentGatewayError
from ..main import app
from ..models import AccountCreate
from ..services import GatewayPayment, GiftCardService, LedgerService


class FakePaymentGateway:
    def __init__(self) -> None:
        self.payments: dict[str, GatewayPayment] = {}
        self.unavailable = False
        self.calls = 0

    def add(
        self,
        payment_id: str,
        amount_minor_units: int,
        *,
        status: str = "succeeded",
        currency: str = "eur",
        metadata: Optional[dict[str, str]] = None,
        amount_received_minor_units: Optional[int] = None,
    ) -> GatewayPayment:
        if amount_received_minor_units is None:
            amount_received_minor_units = amount_minor_units if status == "succeeded" else 0
        payment = GatewayPayment(
            id=payment_id,
            status=status,
            amount_minor_units=amount_minor_units,
            amount_received_minor_units=amount_received_minor_units,
            currency=currency,
            metadata=metadata or {},
        )
        self.payments[payment_id] = payment
        return payment

    def get_payment(self, payment_reference_id: str) -> GatewayPayment:
        self.calls += 1
        if self.unavailable:
            raise PaymentGatewayError("Gateway timed out")
        try:
            return self.payments[payment_reference_id]
        except KeyError as exc:
            raise PaymentGatewayError(f"No such payment: {payment_reference_id}") from exc

    def is_succeeded(self, payment_reference_id: str) -> bool:
        return self.get_payment(payment_reference_id).succeeded


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []
        self.codes: dict[str, str] = {}

    def _record(self, kind: str, card) -> None:
        self.sent.append((kind, str(card.id)))
        if self.fail:
            raise RuntimeError("SMTP unavailable")

    def notify_purchase(self, card, code) -> None:
        self.codes[str(card.id)] = code
        self._record("purchase", card)

    def notify_received(self, card, code) -> None:
        self.codes[str(card.id)] = code
        self._record("received", card)

    def notify_redeemed(self, card, transaction) -> None:
        self._record("redeemed", card)

    def notify_expired(self, card) -> None:
        self._record("expired", card)

    def notify_admin_service_card(self, card) -> None:
        self._record("admin_service", card)

    def notify_service_card_used(self, card) -> None:
        self._record("service_used", card)

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        gift_card_hash_rounds=4,
        balance_write_backoff_seconds=0.001,
        stripe_webhook_secret="whsec_test_secret",
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ledger(session, gateway, settings) -> LedgerService:
    return LedgerService(session, gateway=gateway, settings=settings)


@pytest.fixture
def gift_cards(session, ledger, gateway, notifier, settings) -> GiftCardService:
    return GiftCardService(session, ledger, gateway, notifier=notifier, settings=settings)


@pytest.fixture
def make_account(ledger):
    def _make(email: str = "alice@example.com", opening: Optional[str] = None):
        account = ledger.create_account(AccountCreate(email=email, full_name=email.split("@")[0]))
        if opening is not None:
            ledger.credit(account.id, Decimal(opening), "Opening balance")
        return account

    return _make


@pytest.fixture
def client(tmp_path, settings, gateway, notifier):
    test_engine = create_engine_for_url(f"sqlite:///{tmp_path / 'api.db'}")
    original_engine = core_db.engine
    set_engine(test_engine)
    SQLModel.metadata.create_all(test_engine)

    def _get_session_override():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_engine(original_engine)
    test_engine.dispose()
