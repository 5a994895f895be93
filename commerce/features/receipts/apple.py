"""
App Store receipt verification and server notification decoding.

Receipts go through the verifyReceipt endpoint: production first, then the
sandbox when Apple answers 21007 (a sandbox receipt sent to production).

App Store Server Notifications v2 arrive as a JWS (`signedPayload`) whose
x5c header carries the signing chain. The leaf key verifies the signature
and the chain must end in the configured Apple root. Without a root every
payload is refused.
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization

from commerce.core.errors import ExternalServiceError, InvalidSignatureError, MalformedEventError
from commerce.features.receipts.verifier import ReceiptVerification


logger = logging.getLogger("commerce.receipts.apple")

APPLE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007
# Apple-side outages (21100-21199 are checked as a range)
RETRYABLE_STATUSES = {21005, 21009}

SIGNING_ALGORITHM = "ES256"


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class AppleReceiptVerifier:
    """verifyReceipt client."""

    def __init__(
        self,
        shared_secret: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.shared_secret = shared_secret
        self.timeout_seconds = timeout_seconds
        self._client = client

    def verify(self, token: str, product_id: str) -> ReceiptVerification:
        body: Dict[str, Any] = {"receipt-data": token, "exclude-old-transactions": True}
        if self.shared_secret:
            body["password"] = self.shared_secret

        data = self._post(APPLE_PRODUCTION_URL, body)
        status = data.get("status")
        if status == STATUS_SANDBOX_RECEIPT:
            logger.info("[receipts] sandbox receipt, retrying against sandbox")
            data = self._post(APPLE_SANDBOX_URL, body)
            status = data.get("status")

        if status in RETRYABLE_STATUSES or (isinstance(status, int) and 21100 <= status <= 21199):
            raise ExternalServiceError(f"App Store verification unavailable (status {status})")

        if status != STATUS_OK:
            logger.warning("[receipts] apple receipt rejected", extra={"store_status": status})
            return ReceiptVerification(
                valid=False,
                expiry_time=None,
                raw_status=f"apple_status_{status}",
                provider_subscription_id=None,
                product_id=product_id,
            )

        return self._latest_for_product(data, product_id)

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = self._client.post(url, json=body, timeout=self.timeout_seconds)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.post(url, json=body)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(f"App Store verification failed: {e}") from e

    def _latest_for_product(self, data: Dict[str, Any], product_id: str) -> ReceiptVerification:
        entries: List[Dict[str, Any]] = data.get("latest_receipt_info") or []
        if not entries:
            entries = (data.get("receipt") or {}).get("in_app") or []
        matching = [e for e in entries if e.get("product_id") == product_id]
        if not matching:
            return ReceiptVerification(
                valid=False,
                expiry_time=None,
                raw_status="product_not_found",
                provider_subscription_id=None,
                product_id=product_id,
            )

        latest = max(matching, key=lambda e: int(e.get("expires_date_ms") or 0))
        expiry = _ms_to_datetime(latest.get("expires_date_ms"))
        now = datetime.now(timezone.utc)
        if latest.get("cancellation_date_ms"):
            raw_status = "canceled"
        elif expiry is not None and expiry > now:
            raw_status = "active"
        else:
            raw_status = "expired"

        return ReceiptVerification(
            valid=raw_status == "active",
            expiry_time=expiry,
            raw_status=raw_status,
            provider_subscription_id=latest.get("original_transaction_id"),
            product_id=product_id,
            account_id=latest.get("app_account_token"),
        )


def _load_certificate(raw: bytes) -> x509.Certificate:
    if b"-----BEGIN CERTIFICATE-----" in raw:
        return x509.load_pem_x509_certificate(raw)
    return x509.load_der_x509_certificate(raw)


class AppleNotificationDecoder:
    """Verifies and decodes App Store signed payloads (JWS with x5c chain)."""

    def __init__(self, root_certificate: Optional[bytes] = None, bundle_id: Optional[str] = None):
        self.root = _load_certificate(root_certificate) if root_certificate else None
        self.bundle_id = bundle_id

    @classmethod
    def from_file(cls, path: Optional[str], bundle_id: Optional[str] = None) -> "AppleNotificationDecoder":
        if not path:
            return cls(None, bundle_id)
        with open(path, "rb") as fh:
            return cls(fh.read(), bundle_id)

    def decode(self, signed_payload: str) -> Dict[str, Any]:
        if self.root is None:
            raise InvalidSignatureError("App Store root certificate not configured")
        try:
            header = jwt.get_unverified_header(signed_payload)
            chain = [
                x509.load_der_x509_certificate(base64.b64decode(c))
                for c in header.get("x5c") or []
            ]
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise MalformedEventError(f"Invalid App Store signed payload: {e}") from e
        if not chain:
            raise MalformedEventError("Signed payload has no certificate chain")
        if header.get("alg") != SIGNING_ALGORITHM:
            raise InvalidSignatureError(f"Unexpected signing algorithm: {header.get('alg')}")

        try:
            self._verify_chain(chain)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise InvalidSignatureError(f"Untrusted App Store certificate chain: {e}") from e

        public_key = chain[0].public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        try:
            return jwt.decode(
                signed_payload,
                public_key,
                algorithms=[SIGNING_ALGORITHM],
                options={"verify_aud": False},
            )
        except jwt.InvalidSignatureError as e:
            raise InvalidSignatureError("App Store payload signature mismatch") from e
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise MalformedEventError(f"Invalid App Store signed payload: {e}") from e

    def decode_notification(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Decode the outer notification and its nested transaction/renewal payloads."""
        signed = body.get("signedPayload") if isinstance(body, dict) else None
        if not signed:
            raise MalformedEventError("Missing signedPayload")
        notification = self.decode(signed)
        data = notification.get("data") or {}
        if self.bundle_id and data.get("bundleId") and data["bundleId"] != self.bundle_id:
            raise MalformedEventError("Notification is for a different bundle")
        if data.get("signedTransactionInfo"):
            data["transaction"] = self.decode(data["signedTransactionInfo"])
        if data.get("signedRenewalInfo"):
            data["renewal"] = self.decode(data["signedRenewalInfo"])
        notification["data"] = data
        return notification

    def _verify_chain(self, chain: List[x509.Certificate]) -> None:
        for child, issuer in zip(chain, chain[1:]):
            child.verify_directly_issued_by(issuer)
        top = chain[-1]
        if top != self.root:
            top.verify_directly_issued_by(self.root)
