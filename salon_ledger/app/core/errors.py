"""Typed failures raised by the ledger and gift-card services.

Every error is recoverable by the caller. ``http_status`` and ``code`` are
used by the API layer to build the response; messages never contain a gift
card secret code.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all service-level failures."""

    http_status = 400
    code = "ledger_error"


class InvalidAmountError(LedgerError):
    """Raised when a credit/debit amount is zero or negative."""

    code = "invalid_amount"


class InsufficientFundsError(LedgerError):
    """Raised when a debit would drop balance below zero."""

    http_status = 409
    code = "insufficient_funds"


class NotFoundError(LedgerError):
    http_status = 404
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    """Raised when an account id is missing from the store."""

    code = "account_not_found"


class GiftCardNotFoundError(NotFoundError):
    code = "gift_card_not_found"


class ConcurrentUpdateError(LedgerError):
    """Raised when the account kept changing under a balance write."""

    http_status = 409
    code = "concurrent_update"


class AlreadyAppliedError(LedgerError):
    """Raised when a reference id already has a completed transaction.

    Retrying clients treat this as success.
    """

    http_status = 409
    code = "already_applied"


# Payments ---------------------------------------------------------------
class MissingPaymentReferenceError(LedgerError):
    code = "missing_payment_reference"


class PaymentGatewayError(LedgerError):
    """Raised when the payment gateway could not be reached or answered an error."""

    http_status = 502
    code = "payment_gateway_error"


class PaymentNotSucceededError(LedgerError):
    http_status = 402
    code = "payment_not_succeeded"


class OwnershipMismatchError(LedgerError):
    """Raised when a payment's metadata names a different user."""

    http_status = 403
    code = "ownership_mismatch"


class DuplicatePurchaseError(LedgerError):
    http_status = 409
    code = "duplicate_purchase"


class AmountMismatchError(LedgerError):
    code = "amount_mismatch"


# Gift cards -------------------------------------------------------------
class InvalidCodeError(LedgerError):
    """Raised when no gift card matches a code. The message is always generic."""

    code = "invalid_code"

    def __init__(self) -> None:
        super().__init__("Invalid gift card code")


class NotActiveError(LedgerError):
    http_status = 409
    code = "not_active"


class LockedError(LedgerError):
    http_status = 423
    code = "locked"


class ExpiredError(LedgerError):
    http_status = 410
    code = "expired"


class WrongCardTypeError(LedgerError):
    code = "wrong_card_type"
