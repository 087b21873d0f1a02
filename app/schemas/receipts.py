"""
Receipt Schemas
===============

App Store receipt validation: the parsed ``verifyReceipt`` snapshot and
the request/response bodies of the validation endpoint.
"""

from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


class AppleTransaction(BaseModel):
    """One entry of ``latest_receipt_info`` / ``in_app``."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    transaction_id: str
    original_transaction_id: str
    purchase_date: datetime
    expires_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None

    @property
    def is_first_purchase(self) -> bool:
        return self.transaction_id == self.original_transaction_id


class AppleRenewalInfo(BaseModel):
    """One entry of ``pending_renewal_info``."""

    model_config = ConfigDict(frozen=True)

    original_transaction_id: str
    product_id: Optional[str] = None
    auto_renew_status: bool = True
    in_billing_retry: bool = False
    grace_period_expires_date: Optional[datetime] = None


class ReceiptSnapshot(BaseModel):
    """Validated receipt state as reported by Apple."""

    model_config = ConfigDict(frozen=True)

    environment: str
    bundle_id: Optional[str] = None
    transactions: list[AppleTransaction] = Field(default_factory=list)
    renewals: list[AppleRenewalInfo] = Field(default_factory=list)
    latest_receipt: Optional[str] = Field(default=None, repr=False)

    def latest_transaction(self, product_ids: Optional[set[str]] = None) -> Optional[AppleTransaction]:
        """Transaction with the furthest expiry, optionally limited to products."""
        candidates = [
            t for t in self.transactions
            if product_ids is None or t.product_id in product_ids
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda t: (t.expires_date or t.purchase_date, t.purchase_date),
        )

    def renewal_for(self, original_transaction_id: str) -> Optional[AppleRenewalInfo]:
        for info in self.renewals:
            if info.original_transaction_id == original_transaction_id:
                return info
        return None


# ─── Request / Response Schemas ──────────────────────────────────────────────


class ReceiptValidationRequest(BaseModel):
    """Request body for IAP receipt validation."""

    model_config = ConfigDict(populate_by_name=True)

    receipt_blob: str = Field(alias="receiptBlob")
    user_id: uuid.UUID = Field(alias="userId")


class ReceiptValidationResponse(BaseModel):
    """Outcome of a receipt validation."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    applied_facts: Optional[list[str]] = Field(default=None, alias="appliedFacts")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_detail: Optional[str] = Field(default=None, alias="errorDetail")
