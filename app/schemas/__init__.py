"""
Pydantic Schemas
================

Request/response schemas for API validation, and the provider-neutral
billing facts passed between normalizer and reconciler.
"""

from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.schemas.receipts import (
    ReceiptSnapshot,
    ReceiptValidationRequest,
    ReceiptValidationResponse,
)

__all__ = [
    "BillingFact",
    "FactKind",
    "PaymentInfo",
    "ReceiptSnapshot",
    "ReceiptValidationRequest",
    "ReceiptValidationResponse",
]
