"""
Webhook Verifier Tests
======================

Tests for Stripe signature, tolerance and event shape checks, and for
App Store notification JWS verification.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from appstoreserverlibrary.signed_data_verifier import VerificationException, VerificationStatus

from app.core.errors import AuthenticityError, ErrorCodes
from app.services.verifier import AppleNotificationVerifier, StripeWebhookVerifier

SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_body(**overrides) -> bytes:
    event = {
        "id": "evt_1",
        "type": "invoice.payment_succeeded",
        "created": 1775000000,
        "data": {"object": {"id": "in_1", "object": "invoice"}},
    }
    event.update(overrides)
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def verifier():
    return StripeWebhookVerifier(secret=SECRET, tolerance=300)


class TestSignature:
    """Tests for signature and replay window checks."""

    def test_valid_signature_returns_event(self, verifier):
        body = event_body()
        event = verifier.verify(body, sign(body))

        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "in_1"

    def test_wrong_secret_rejected(self, verifier):
        body = event_body()
        with pytest.raises(AuthenticityError) as exc_info:
            verifier.verify(body, sign(body, secret="whsec_other"))

        assert exc_info.value.code == ErrorCodes.WEBHOOK_SIGNATURE_INVALID

    def test_tampered_body_rejected(self, verifier):
        body = event_body()
        header = sign(body)
        with pytest.raises(AuthenticityError):
            verifier.verify(event_body(id="evt_2"), header)

    def test_stale_timestamp_rejected(self, verifier):
        body = event_body()
        old = int(time.time()) - 3600
        with pytest.raises(AuthenticityError):
            verifier.verify(body, sign(body, timestamp=old))

    def test_missing_header_rejected(self, verifier):
        with pytest.raises(AuthenticityError):
            verifier.verify(event_body(), None)

    def test_unconfigured_secret_rejects_everything(self):
        body = event_body()
        with pytest.raises(AuthenticityError):
            StripeWebhookVerifier(secret="", tolerance=300).verify(body, sign(body))


class TestEventShape:
    """Tests for body shape checks after a valid signature."""

    def test_missing_data_object(self, verifier):
        body = event_body(data={})
        with pytest.raises(AuthenticityError) as exc_info:
            verifier.verify(body, sign(body))

        assert exc_info.value.code == ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED
        assert "data.object" in exc_info.value.message

    def test_missing_id(self, verifier):
        body = event_body(id="")
        with pytest.raises(AuthenticityError) as exc_info:
            verifier.verify(body, sign(body))

        assert exc_info.value.code == ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED

    def test_non_integer_created(self, verifier):
        body = event_body(created="yesterday")
        with pytest.raises(AuthenticityError):
            verifier.verify(body, sign(body))

    def test_non_object_body(self, verifier):
        body = b"[1, 2, 3]"
        with pytest.raises(AuthenticityError) as exc_info:
            verifier.verify(body, sign(body))

        assert exc_info.value.code == ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED


# ---------------------------------------------------------------------------
# App Store Server Notifications
# ---------------------------------------------------------------------------

def _decoded_notification(**overrides) -> SimpleNamespace:
    fields = {
        "notificationUUID": "6b1c2f4e-0000-4000-8000-000000000001",
        "rawNotificationType": "DID_RENEW",
        "rawSubtype": None,
        "signedDate": 1775000005000,
        "data": SimpleNamespace(
            rawEnvironment="Sandbox",
            signedTransactionInfo="jws.transaction",
            signedRenewalInfo="jws.renewal",
        ),
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _decoded_transaction() -> SimpleNamespace:
    return SimpleNamespace(
        transactionId="2000000001",
        originalTransactionId="1000000001",
        productId="premium_monthly",
        purchaseDate=1775000000000,
        expiresDate=1777592000000,
        revocationDate=None,
        price=4990,
        currency="USD",
        appAccountToken="00000000-0000-0000-0000-000000000001",
    )


@pytest.fixture
def signed_data_verifier():
    mock = MagicMock()
    mock.verify_and_decode_notification.return_value = _decoded_notification()
    mock.verify_and_decode_signed_transaction.return_value = _decoded_transaction()
    mock.verify_and_decode_renewal_info.return_value = SimpleNamespace(
        rawAutoRenewStatus=1,
        isInBillingRetryPeriod=False,
        gracePeriodExpiresDate=None,
    )
    return mock


def apple_body(signed_payload="jws.notification") -> bytes:
    return json.dumps({"signedPayload": signed_payload}).encode("utf-8")


class TestAppleNotificationVerifier:
    """Tests for AppleNotificationVerifier.verify"""

    def test_decodes_notification_and_signed_data(self, signed_data_verifier):
        notification = AppleNotificationVerifier(signed_data_verifier).verify(apple_body())

        signed_data_verifier.verify_and_decode_notification.assert_called_once_with("jws.notification")
        signed_data_verifier.verify_and_decode_signed_transaction.assert_called_once_with("jws.transaction")
        signed_data_verifier.verify_and_decode_renewal_info.assert_called_once_with("jws.renewal")
        assert notification["notificationUUID"] == "6b1c2f4e-0000-4000-8000-000000000001"
        assert notification["notificationType"] == "DID_RENEW"
        assert notification["environment"] == "Sandbox"
        assert notification["transaction"]["originalTransactionId"] == "1000000001"
        assert notification["transaction"]["price"] == 4990
        assert notification["renewal"]["autoRenewStatus"] == 1

    def test_failed_chain_rejected(self, signed_data_verifier):
        signed_data_verifier.verify_and_decode_notification.side_effect = VerificationException(
            VerificationStatus.VERIFICATION_FAILURE
        )

        with pytest.raises(AuthenticityError) as exc_info:
            AppleNotificationVerifier(signed_data_verifier).verify(apple_body())

        assert exc_info.value.code == ErrorCodes.WEBHOOK_SIGNATURE_INVALID

    def test_tampered_transaction_rejected(self, signed_data_verifier):
        signed_data_verifier.verify_and_decode_signed_transaction.side_effect = VerificationException(
            VerificationStatus.INVALID_APP_IDENTIFIER
        )

        with pytest.raises(AuthenticityError):
            AppleNotificationVerifier(signed_data_verifier).verify(apple_body())

    def test_notification_without_data(self, signed_data_verifier):
        signed_data_verifier.verify_and_decode_notification.return_value = _decoded_notification(
            rawNotificationType="TEST", data=None,
        )

        notification = AppleNotificationVerifier(signed_data_verifier).verify(apple_body())

        assert notification["transaction"] is None
        assert notification["renewal"] is None
        signed_data_verifier.verify_and_decode_signed_transaction.assert_not_called()

    @pytest.mark.parametrize("body", [b"not json", b"[]", b"{}", b'{"signedPayload": ""}'])
    def test_body_without_signed_payload_is_malformed(self, signed_data_verifier, body):
        with pytest.raises(AuthenticityError) as exc_info:
            AppleNotificationVerifier(signed_data_verifier).verify(body)

        assert exc_info.value.code == ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED
        signed_data_verifier.verify_and_decode_notification.assert_not_called()

    def test_missing_uuid_is_malformed(self, signed_data_verifier):
        signed_data_verifier.verify_and_decode_notification.return_value = _decoded_notification(
            notificationUUID=None,
        )

        with pytest.raises(AuthenticityError) as exc_info:
            AppleNotificationVerifier(signed_data_verifier).verify(apple_body())

        assert exc_info.value.code == ErrorCodes.WEBHOOK_PAYLOAD_MALFORMED

    def test_unconfigured_root_certificates_reject_everything(self, monkeypatch):
        monkeypatch.setattr("app.services.verifier.settings.APPLE_ROOT_CERT_PATHS", "")

        with pytest.raises(AuthenticityError):
            AppleNotificationVerifier().verify(apple_body())
