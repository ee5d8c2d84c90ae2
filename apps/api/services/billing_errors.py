"""Domain errors raised by the ledger, transaction and settlement services."""

from __future__ import annotations


class BillingError(RuntimeError):
    """Base class for billing faults. `code` is stable for API clients."""

    code = "billing_error"


class AccountNotFoundError(BillingError):
    code = "account_not_found"


class InvalidKindError(BillingError):
    code = "invalid_kind"


class InvalidTransitionError(BillingError):
    code = "invalid_transition"

    def __init__(self, transaction_id: str, current: str, target: str) -> None:
        self.transaction_id = transaction_id
        self.current = current
        self.target = target
        super().__init__(f"Transaction {transaction_id} cannot move from {current} to {target}.")


class AlreadyAttachedError(BillingError):
    code = "already_attached"


class TransactionNotFoundError(BillingError):
    code = "transaction_not_found"


class InvalidSignatureError(BillingError):
    code = "invalid_signature"


class UnknownTransactionError(BillingError):
    code = "unknown_transaction"


class GatewayUnavailableError(BillingError):
    """Network or provider failure talking to the payment gateway."""

    code = "gateway_unavailable"


class UsageUnitCreationError(BillingError):
    code = "usage_unit_creation_failed"


class UsageHandoffError(BillingError):
    code = "usage_handoff_failed"


class InvalidWebhookPayloadError(BillingError):
    code = "invalid_webhook_payload"


class TransactionNotResumableError(BillingError):
    code = "transaction_not_resumable"
