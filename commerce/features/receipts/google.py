"""
Google Play subscription verification.

Uses the Play Developer API (purchases.subscriptions.get) with an OAuth
access token minted from a service-account key: an RS256 assertion signed
with PyJWT is exchanged at the token endpoint and cached until shortly
before it expires.
"""
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import jwt

from commerce.core.errors import ExternalServiceError
from commerce.features.receipts.verifier import ReceiptVerification


logger = logging.getLogger("commerce.receipts.google")

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
PLAY_API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"

# purchases.subscriptions paymentState
PAYMENT_PENDING = 0
PAYMENT_RECEIVED = 1
PAYMENT_FREE_TRIAL = 2
PAYMENT_DEFERRED = 3


class ServiceAccountTokenProvider:
    """Mints and caches OAuth access tokens for a service account."""

    def __init__(self, info: Dict[str, Any], *, client: Optional[httpx.Client] = None, timeout_seconds: float = 10.0):
        if not info.get("client_email") or not info.get("private_key"):
            raise ValueError("Service account info requires client_email and private_key")
        self.info = info
        self.token_uri = info.get("token_uri") or GOOGLE_TOKEN_URI
        self._client = client
        self._timeout = timeout_seconds
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "ServiceAccountTokenProvider":
        with open(path, "r", encoding="utf-8") as fh:
            return cls(json.load(fh), **kwargs)

    def _assertion(self, now: int) -> str:
        claims = {
            "iss": self.info["client_email"],
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": self.info["private_key_id"]} if self.info.get("private_key_id") else None
        return jwt.encode(claims, self.info["private_key"], algorithm="RS256", headers=headers)

    def get_token(self) -> str:
        with self._lock:
            now = time.time()
            if self._token and now < self._expires_at - 60:
                return self._token

            form = {
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._assertion(int(now)),
            }
            try:
                if self._client is not None:
                    response = self._client.post(self.token_uri, data=form, timeout=self._timeout)
                else:
                    with httpx.Client(timeout=self._timeout) as client:
                        response = client.post(self.token_uri, data=form)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise ExternalServiceError(f"Google token exchange failed: {e}") from e

            self._token = payload["access_token"]
            self._expires_at = now + int(payload.get("expires_in", 3600))
            return self._token


class GooglePlayReceiptVerifier:
    """purchases.subscriptions.get client. Provider subscription id is the purchase token."""

    def __init__(
        self,
        package_name: str,
        token_provider: ServiceAccountTokenProvider,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.package_name = package_name
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds
        self._client = client

    def verify(self, token: str, product_id: str) -> ReceiptVerification:
        url = (
            f"{PLAY_API_BASE}/applications/{self.package_name}"
            f"/purchases/subscriptions/{product_id}/tokens/{token}"
        )
        headers = {"Authorization": f"Bearer {self.token_provider.get_token()}"}
        try:
            if self._client is not None:
                response = self._client.get(url, headers=headers, timeout=self.timeout_seconds)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Google Play verification failed: {e}") from e

        if response.status_code in (400, 404, 410):
            logger.warning(
                "[receipts] google purchase token rejected",
                extra={"store_status": response.status_code, "product_id": product_id},
            )
            return ReceiptVerification(
                valid=False,
                expiry_time=None,
                raw_status=f"google_http_{response.status_code}",
                provider_subscription_id=None,
                product_id=product_id,
            )
        if response.status_code >= 300:
            raise ExternalServiceError(f"Google Play verification failed: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError("Google Play returned invalid JSON") from e

        return self._to_verification(data, token, product_id)

    def _to_verification(self, data: Dict[str, Any], token: str, product_id: str) -> ReceiptVerification:
        expiry = None
        if data.get("expiryTimeMillis"):
            try:
                expiry = datetime.fromtimestamp(int(data["expiryTimeMillis"]) / 1000, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError) as e:
                raise ExternalServiceError("Google Play returned an invalid expiry") from e
        payment_state = data.get("paymentState")
        now = datetime.now(timezone.utc)

        if expiry is None or expiry <= now:
            raw_status = "expired"
        elif payment_state in (PAYMENT_RECEIVED, PAYMENT_FREE_TRIAL):
            raw_status = "active"
        else:
            raw_status = "pending"

        return ReceiptVerification(
            valid=raw_status == "active",
            expiry_time=expiry,
            raw_status=raw_status,
            provider_subscription_id=token,
            product_id=product_id,
            account_id=data.get("obfuscatedExternalAccountId"),
        )
