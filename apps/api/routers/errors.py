"""Map billing domain errors onto HTTP responses."""

from __future__ import annotations

from typing import Dict, Type

from fastapi import HTTPException

from services.billing_errors import (
    AccountNotFoundError,
    AlreadyAttachedError,
    BillingError,
    GatewayUnavailableError,
    InvalidKindError,
    InvalidSignatureError,
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    TransactionNotFoundError,
    TransactionNotResumableError,
    UnknownTransactionError,
    UsageHandoffError,
    UsageUnitCreationError,
)


STATUS_BY_ERROR: Dict[Type[BillingError], int] = {
    InvalidKindError: 400,
    InvalidWebhookPayloadError: 400,
    InvalidSignatureError: 401,
    AccountNotFoundError: 404,
    TransactionNotFoundError: 404,
    UnknownTransactionError: 404,
    InvalidTransitionError: 409,
    AlreadyAttachedError: 409,
    TransactionNotResumableError: 409,
    UsageUnitCreationError: 500,
    GatewayUnavailableError: 503,
    UsageHandoffError: 503,
}


def http_error(exc: BillingError) -> HTTPException:
    status_code = STATUS_BY_ERROR.get(type(exc), 500)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
