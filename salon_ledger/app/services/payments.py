from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import stripe

from ..core.errors import PaymentGatewayError


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
SUCCEEDED = "succeeded"


def minor_to_decimal(minor_units: int) -> Decimal:
    """Convert gateway minor units (cents) to a two-place ledger amount."""
    return (Decimal(minor_units) / 100).quantize(CENT)


def decimal_to_minor(amount: Decimal) -> int:
    """Round half-up to the cent, then express in minor units."""
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount_minor_units: int
    amount_received_minor_units: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentGateway(Protocol):
    def get_payment(self, payment_reference_id: str) -> GatewayPayment: ...

    def is_succeeded(self, payment_reference_id: str) -> bool: ...


class StripePaymentGateway:
    """Reads PaymentIntents through the Stripe SDK."""

    def __init__(self, api_key: str, max_network_retries: int = 2) -> None:
        self.api_key = api_key
        stripe.max_network_retries = max_network_retries

    def get_payment(self, payment_reference_id: str) -> GatewayPayment:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_reference_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error(
                "stripe.retrieve.failed",
                extra={"payment_intent_id": payment_reference_id, "error": str(exc)},
            )
            raise PaymentGatewayError(
                f"Failed to retrieve payment {payment_reference_id}"
            ) from exc

        data = intent.to_dict()
        metadata = data.get("metadata") or {}
        return GatewayPayment(
            id=data["id"],
            status=data["status"],
            amount_minor_units=int(data.get("amount") or 0),
            amount_received_minor_units=int(data.get("amount_received") or 0),
            currency=(data.get("currency") or "").lower(),
            metadata={str(key): str(value) for key, value in metadata.items()},
        )

    def is_succeeded(self, payment_reference_id: str) -> bool:
        return self.get_payment(payment_reference_id).succeeded
