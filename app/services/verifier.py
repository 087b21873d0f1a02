"""
Webhook Authenticity Verifier
=============================

Checks that a Stripe notification was signed with our endpoint secret
within the replay tolerance, and that the body has the event shape the
normalizer relies on. App Store Server Notifications V2 are JWS payloads
chained to the Apple root certificates; those are verified and decoded
with app-store-server-library. Nothing is written anywhere before this
passes.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import stripe
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.signed_data_verifier import (
    SignedDataVerifier,
    VerificationException,
)

from app.config import settings
from app.core.errors import AuthenticityError, ErrorCodes

logger = logging.getLogger(__name__)

_REQUIRED_EVENT_FIELDS = ("id", "type", "created")


class StripeWebhookVerifier:
    """Signature and shape validation for Stripe webhook deliveries."""

    def __init__(
        self,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        self.secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = (
            tolerance if tolerance is not None
            else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

    def verify(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify ``payload`` against the ``Stripe-Signature`` header.

        Returns:
            The decoded event dict.

        Raises:
            AuthenticityError: missing or bad signature, timestamp outside
                the tolerance window, or a body that is not an event.
        """
        if not self.secret:
            # Refuse everything rather than accept unsigned traffic
            raise AuthenticityError("Webhook secret is not configured")
        if not signature:
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticityError(
                f"Payload is not UTF-8: {e}",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.secret,
                self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe signature verification failed: %s", e)
            raise AuthenticityError(f"Invalid signature: {e}")

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise AuthenticityError(
                f"Invalid JSON payload: {e}",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )

        self._check_shape(event)
        return event

    @staticmethod
    def _check_shape(event) -> None:
        if not isinstance(event, dict):
            raise AuthenticityError(
                "Event payload is not an object",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )

        missing = [f for f in _REQUIRED_EVENT_FIELDS if event.get(f) in (None, "")]
        data = event.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            missing.append("data.object")

        if missing:
            raise AuthenticityError(
                f"Event is missing {', '.join(missing)}",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )
        if not isinstance(event["created"], int):
            raise AuthenticityError(
                "Event created timestamp is not an integer",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )


_verifier_instance: Optional[StripeWebhookVerifier] = None


def get_stripe_verifier() -> StripeWebhookVerifier:
    """Get or create the verifier singleton."""
    global _verifier_instance

    if _verifier_instance is None:
        _verifier_instance = StripeWebhookVerifier()

    return _verifier_instance


class AppleNotificationVerifier:
    """Signature verification for App Store Server Notifications V2."""

    def __init__(self, signed_data_verifier: Optional[SignedDataVerifier] = None):
        self._signed_data_verifier = signed_data_verifier

    def _get_signed_data_verifier(self) -> SignedDataVerifier:
        if self._signed_data_verifier is not None:
            return self._signed_data_verifier

        paths = settings.apple_root_cert_paths
        if not paths or not settings.APPLE_BUNDLE_ID:
            raise AuthenticityError("App Store root certificates are not configured")
        try:
            environment = Environment(settings.APPLE_ENVIRONMENT)
        except ValueError:
            raise AuthenticityError(f"Unknown App Store environment {settings.APPLE_ENVIRONMENT}")
        if environment == Environment.PRODUCTION and settings.APPLE_APP_APPLE_ID is None:
            raise AuthenticityError("APPLE_APP_APPLE_ID is required in Production")

        self._signed_data_verifier = SignedDataVerifier(
            root_certificates=[Path(path).read_bytes() for path in paths],
            enable_online_checks=settings.APPLE_NOTIFICATION_ONLINE_CHECKS,
            environment=environment,
            bundle_id=settings.APPLE_BUNDLE_ID,
            app_apple_id=settings.APPLE_APP_APPLE_ID,
        )
        return self._signed_data_verifier

    def verify(self, payload: bytes) -> dict:
        """
        Verify the ``signedPayload`` of a notification body and decode it.

        The certificate chain check may go online, so call this off the
        event loop.

        Returns:
            A plain dict with the notification fields the normalizer reads;
            ``transaction`` and ``renewal`` hold the decoded signed data or
            None when the notification carries none.

        Raises:
            AuthenticityError: a body without ``signedPayload``, or any
                payload that fails chain, signature, bundle or
                environment checks.
        """
        try:
            body = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise AuthenticityError(
                f"Invalid JSON payload: {e}",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )
        signed_payload = body.get("signedPayload") if isinstance(body, dict) else None
        if not isinstance(signed_payload, str) or not signed_payload:
            raise AuthenticityError(
                "Notification is missing signedPayload",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )

        verifier = self._get_signed_data_verifier()
        try:
            notification = verifier.verify_and_decode_notification(signed_payload)
            data = notification.data
            transaction = None
            renewal = None
            if data is not None and data.signedTransactionInfo:
                transaction = verifier.verify_and_decode_signed_transaction(data.signedTransactionInfo)
            if data is not None and data.signedRenewalInfo:
                renewal = verifier.verify_and_decode_renewal_info(data.signedRenewalInfo)
        except VerificationException as e:
            logger.warning("App Store notification verification failed: %s", e.status)
            raise AuthenticityError(f"Invalid signed payload: {e.status}")

        if not notification.notificationUUID or not notification.rawNotificationType:
            raise AuthenticityError(
                "Notification is missing notificationUUID or notificationType",
                code=ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED,
            )

        return {
            "notificationUUID": notification.notificationUUID,
            "notificationType": notification.rawNotificationType,
            "subtype": notification.rawSubtype,
            "signedDate": notification.signedDate,
            "environment": data.rawEnvironment if data is not None else None,
            "transaction": _transaction_fields(transaction),
            "renewal": _renewal_fields(renewal),
        }


def _transaction_fields(transaction: Any) -> Optional[dict]:
    if transaction is None:
        return None
    return {
        "transactionId": transaction.transactionId,
        "originalTransactionId": transaction.originalTransactionId,
        "productId": transaction.productId,
        "purchaseDate": transaction.purchaseDate,
        "expiresDate": transaction.expiresDate,
        "revocationDate": transaction.revocationDate,
        "price": transaction.price,
        "currency": transaction.currency,
        "appAccountToken": transaction.appAccountToken,
    }


def _renewal_fields(renewal: Any) -> Optional[dict]:
    if renewal is None:
        return None
    return {
        "autoRenewStatus": renewal.rawAutoRenewStatus,
        "isInBillingRetryPeriod": renewal.isInBillingRetryPeriod,
        "gracePeriodExpiresDate": renewal.gracePeriodExpiresDate,
    }


_apple_verifier_instance: Optional[AppleNotificationVerifier] = None


def get_apple_verifier() -> AppleNotificationVerifier:
    """Get or create the App Store notification verifier singleton."""
    global _apple_verifier_instance

    if _apple_verifier_instance is None:
        _apple_verifier_instance = AppleNotificationVerifier()

    return _apple_verifier_instance
