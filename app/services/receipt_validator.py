"""
App Store Receipt Validator
===========================

Validates base64 App Store receipts with Apple's ``verifyReceipt`` service.

Format checks run locally first, so a malformed blob never causes an
outbound call. Validation starts against production; status 21007
(sandbox receipt) or 21008 (production receipt) retries exactly once
against the other environment.

Status handling:
- 0, 21006: valid (21006 is an expired subscription, still parsed)
- 21007 / 21008: environment mismatch, retried once
- 21005, 21009, 21100-21199, HTTP errors, timeouts: provider unavailable
- anything else: receipt invalid
"""

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.config import settings
from app.core.errors import (
    EnvironmentMismatchError,
    ProviderUnavailableError,
    ReceiptFormatError,
    ReceiptInvalidError,
)
from app.schemas.receipts import AppleRenewalInfo, AppleTransaction, ReceiptSnapshot

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_OK = 0
STATUS_SUBSCRIPTION_EXPIRED = 21006
STATUS_SANDBOX_RECEIPT = 21007
STATUS_PRODUCTION_RECEIPT = 21008
_UNAVAILABLE_STATUSES = {21005, 21009}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_WHITESPACE_RE = re.compile(r"\s+")


def check_receipt_format(receipt_blob: str) -> str:
    """
    Reject blobs that cannot be App Store receipts.

    Returns:
        The blob with whitespace removed.

    Raises:
        ReceiptFormatError: ``wrong_token_type`` for a JWS transaction
            token, ``invalid_encoding`` for anything not base64.
    """
    blob = _WHITESPACE_RE.sub("", receipt_blob or "")
    if not blob:
        raise ReceiptFormatError("invalid_encoding", "Receipt is empty")

    # StoreKit 2 signed transactions are JWS (base64url JSON header)
    if blob.startswith("eyJ") and blob.count(".") == 2:
        raise ReceiptFormatError(
            "wrong_token_type",
            "Received a signed transaction token, expected an App Store receipt",
        )

    if len(blob) % 4 != 0 or not _BASE64_RE.match(blob):
        raise ReceiptFormatError("invalid_encoding", "Receipt is not valid base64")

    try:
        decoded = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError):
        raise ReceiptFormatError("invalid_encoding", "Receipt is not valid base64")

    if not decoded:
        raise ReceiptFormatError("invalid_encoding", "Receipt decodes to nothing")

    return blob


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _parse_transaction(entry: dict) -> AppleTransaction:
    return AppleTransaction(
        product_id=entry["product_id"],
        transaction_id=str(entry["transaction_id"]),
        original_transaction_id=str(
            entry.get("original_transaction_id") or entry["transaction_id"]
        ),
        purchase_date=_ms_to_datetime(entry["purchase_date_ms"]),
        expires_date=_ms_to_datetime(entry.get("expires_date_ms")),
        cancellation_date=_ms_to_datetime(entry.get("cancellation_date_ms")),
    )


def _parse_renewal(entry: dict) -> AppleRenewalInfo:
    return AppleRenewalInfo(
        original_transaction_id=str(entry["original_transaction_id"]),
        product_id=entry.get("auto_renew_product_id") or entry.get("product_id"),
        auto_renew_status=str(entry.get("auto_renew_status", "1")) == "1",
        in_billing_retry=str(entry.get("is_in_billing_retry_period", "0")) == "1",
        grace_period_expires_date=_ms_to_datetime(entry.get("grace_period_expires_date_ms")),
    )


def parse_verify_response(data: dict, environment: str) -> ReceiptSnapshot:
    """Build a snapshot from a successful ``verifyReceipt`` body."""
    receipt = data.get("receipt") or {}
    entries = data.get("latest_receipt_info") or receipt.get("in_app") or []
    try:
        transactions = [_parse_transaction(e) for e in entries]
        renewals = [_parse_renewal(e) for e in data.get("pending_renewal_info") or []]
    except (KeyError, TypeError, ValueError) as e:
        raise ReceiptInvalidError(f"Unexpected receipt structure: {e}")

    return ReceiptSnapshot(
        environment=data.get("environment") or environment,
        bundle_id=receipt.get("bundle_id"),
        transactions=transactions,
        renewals=renewals,
        latest_receipt=data.get("latest_receipt"),
    )


class AppleReceiptValidator:
    """Client for Apple's ``verifyReceipt`` endpoint."""

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        bundle_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shared_secret = (
            shared_secret if shared_secret is not None else settings.APPLE_SHARED_SECRET
        )
        self.bundle_id = bundle_id if bundle_id is not None else settings.APPLE_BUNDLE_ID
        self.timeout = timeout if timeout is not None else settings.APPLE_VERIFY_TIMEOUT_SECONDS
        self._transport = transport

    async def validate(self, receipt_blob: str) -> ReceiptSnapshot:
        """
        Validate a receipt and return its snapshot.

        Raises:
            ReceiptFormatError: rejected locally, no request made.
            EnvironmentMismatchError: mismatch persisted after one retry.
            ProviderUnavailableError: Apple could not be reached or is busy.
            ReceiptInvalidError: Apple rejected the receipt, or it belongs
                to a different bundle.
        """
        blob = check_receipt_format(receipt_blob)

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            environment = "Production"
            data = await self._post(client, PRODUCTION_URL, blob)
            status = data.get("status")

            if status in (STATUS_SANDBOX_RECEIPT, STATUS_PRODUCTION_RECEIPT):
                environment = "Sandbox" if status == STATUS_SANDBOX_RECEIPT else "Production"
                url = SANDBOX_URL if status == STATUS_SANDBOX_RECEIPT else PRODUCTION_URL
                logger.info("Receipt environment mismatch (%s), retrying against %s", status, environment)
                data = await self._post(client, url, blob)
                status = data.get("status")

                if status in (STATUS_SANDBOX_RECEIPT, STATUS_PRODUCTION_RECEIPT):
                    raise EnvironmentMismatchError(
                        f"Receipt environment mismatch persisted (status {status})"
                    )

        self._raise_for_status(status, data)

        snapshot = parse_verify_response(data, environment)
        if self.bundle_id and snapshot.bundle_id and snapshot.bundle_id != self.bundle_id:
            raise ReceiptInvalidError(
                f"Receipt belongs to bundle {snapshot.bundle_id}"
            )
        if snapshot.latest_receipt is None:
            snapshot = snapshot.model_copy(update={"latest_receipt": blob})
        return snapshot

    async def _post(self, client: httpx.AsyncClient, url: str, blob: str) -> dict:
        body = {
            "receipt-data": blob,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        try:
            response = await client.post(url, json=body)
        except httpx.TimeoutException:
            logger.error("App Store verifyReceipt timed out (%s)", url)
            raise ProviderUnavailableError("App Store validation timed out")
        except httpx.HTTPError as e:
            logger.error("App Store verifyReceipt request failed: %s", e)
            raise ProviderUnavailableError(f"App Store unreachable: {e}")

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"App Store returned HTTP {response.status_code}"
            )
        if response.status_code != 200:
            raise ReceiptInvalidError(
                f"App Store returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            raise ProviderUnavailableError("App Store returned a non-JSON body")
        if not isinstance(data, dict) or "status" not in data:
            raise ProviderUnavailableError("App Store response has no status")
        return data

    @staticmethod
    def _raise_for_status(status: Any, data: dict) -> None:
        if status in (STATUS_OK, STATUS_SUBSCRIPTION_EXPIRED):
            return
        if (
            status in _UNAVAILABLE_STATUSES
            or (isinstance(status, int) and 21100 <= status <= 21199)
            or data.get("is-retryable")
        ):
            raise ProviderUnavailableError(f"App Store status {status}")
        raise ReceiptInvalidError(f"App Store rejected receipt (status {status})")


_validator_instance: Optional[AppleReceiptValidator] = None


def get_receipt_validator() -> AppleReceiptValidator:
    """Get or create the validator singleton."""
    global _validator_instance

    if _validator_instance is None:
        _validator_instance = AppleReceiptValidator()

    return _validator_instance
