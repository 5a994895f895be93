"""
Tests for App Store / Google Play receipt verification and App Store signed
notification decoding. HTTP is served by httpx.MockTransport.
"""
import base64
import datetime as dt
import json

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from commerce.core.errors import ExternalServiceError, InvalidSignatureError, MalformedEventError
from commerce.features.receipts.apple import (
    APPLE_PRODUCTION_URL,
    APPLE_SANDBOX_URL,
    AppleNotificationDecoder,
    AppleReceiptVerifier,
)
from commerce.features.receipts.google import GooglePlayReceiptVerifier, ServiceAccountTokenProvider


FAR_FUTURE_MS = 4102444800000  # 2100-01-01
PAST_MS = 946684800000  # 2000-01-01
PRODUCT = "com.example.app.regular"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


# App Store verifyReceipt

def _apple_ok(*entries):
    return {"status": 0, "latest_receipt_info": list(entries)}


def _entry(expires_ms, original="1000000001", product=PRODUCT, **extra):
    entry = {"product_id": product, "original_transaction_id": original, "expires_date_ms": str(expires_ms)}
    entry.update(extra)
    return entry


def test_apple_active_receipt():
    seen = []

    def handler(request):
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json=_apple_ok(
            _entry(PAST_MS, original="old"),
            _entry(FAR_FUTURE_MS, app_account_token="user_1"),
        ))

    verifier = AppleReceiptVerifier("shared", client=_client(handler))
    result = verifier.verify("receipt-data", PRODUCT)

    assert result.valid
    assert result.raw_status == "active"
    assert result.provider_subscription_id == "1000000001"
    assert result.account_id == "user_1"
    assert int(result.expiry_time.timestamp() * 1000) == FAR_FUTURE_MS
    url, body = seen[0]
    assert url == APPLE_PRODUCTION_URL
    assert body["password"] == "shared"
    assert body["receipt-data"] == "receipt-data"


def test_apple_sandbox_retry():
    urls = []

    def handler(request):
        urls.append(str(request.url))
        if str(request.url) == APPLE_PRODUCTION_URL:
            return httpx.Response(200, json={"status": 21007})
        return httpx.Response(200, json=_apple_ok(_entry(FAR_FUTURE_MS)))

    result = AppleReceiptVerifier(None, client=_client(handler)).verify("r", PRODUCT)

    assert urls == [APPLE_PRODUCTION_URL, APPLE_SANDBOX_URL]
    assert result.valid


def test_apple_expired_and_canceled_receipts():
    def expired(request):
        return httpx.Response(200, json=_apple_ok(_entry(PAST_MS)))

    def canceled(request):
        return httpx.Response(200, json=_apple_ok(_entry(FAR_FUTURE_MS, cancellation_date_ms="1")))

    assert AppleReceiptVerifier(None, client=_client(expired)).verify("r", PRODUCT).raw_status == "expired"
    result = AppleReceiptVerifier(None, client=_client(canceled)).verify("r", PRODUCT)
    assert result.raw_status == "canceled"
    assert not result.valid


def test_apple_receipt_for_other_product():
    def handler(request):
        return httpx.Response(200, json=_apple_ok(_entry(FAR_FUTURE_MS, product="other")))

    result = AppleReceiptVerifier(None, client=_client(handler)).verify("r", PRODUCT)
    assert not result.valid
    assert result.raw_status == "product_not_found"


def test_apple_rejected_receipt():
    def handler(request):
        return httpx.Response(200, json={"status": 21003})

    result = AppleReceiptVerifier(None, client=_client(handler)).verify("r", PRODUCT)
    assert not result.valid
    assert result.raw_status == "apple_status_21003"


@pytest.mark.parametrize("status", [21005, 21009, 21150])
def test_apple_outage_statuses_raise(status):
    def handler(request):
        return httpx.Response(200, json={"status": status})

    with pytest.raises(ExternalServiceError):
        AppleReceiptVerifier(None, client=_client(handler)).verify("r", PRODUCT)


def test_apple_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(ExternalServiceError):
        AppleReceiptVerifier(None, client=_client(handler)).verify("r", PRODUCT)


# Google Play

class _StaticToken:
    def get_token(self):
        return "access-token"


def test_google_active_subscription():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "expiryTimeMillis": str(FAR_FUTURE_MS),
            "paymentState": 1,
            "obfuscatedExternalAccountId": "user_1",
        })

    verifier = GooglePlayReceiptVerifier("com.example.app", _StaticToken(), client=_client(handler))
    result = verifier.verify("tok_1", "regular_monthly")

    assert result.valid
    assert result.provider_subscription_id == "tok_1"
    assert result.account_id == "user_1"
    assert seen[0].headers["authorization"] == "Bearer access-token"
    assert seen[0].url.path.endswith(
        "/applications/com.example.app/purchases/subscriptions/regular_monthly/tokens/tok_1"
    )


@pytest.mark.parametrize(
    "payload,status",
    [
        ({"expiryTimeMillis": str(PAST_MS), "paymentState": 1}, "expired"),
        ({"expiryTimeMillis": str(FAR_FUTURE_MS), "paymentState": 0}, "pending"),
        ({"expiryTimeMillis": str(FAR_FUTURE_MS), "paymentState": 2}, "active"),
        ({"paymentState": 1}, "expired"),
    ],
)
def test_google_status_mapping(payload, status):
    verifier = GooglePlayReceiptVerifier(
        "com.example.app", _StaticToken(), client=_client(lambda r: httpx.Response(200, json=payload))
    )
    result = verifier.verify("tok", "regular_monthly")
    assert result.raw_status == status
    assert result.valid == (status == "active")


def test_google_rejected_token():
    verifier = GooglePlayReceiptVerifier(
        "com.example.app", _StaticToken(), client=_client(lambda r: httpx.Response(410))
    )
    result = verifier.verify("tok", "regular_monthly")
    assert not result.valid
    assert result.raw_status == "google_http_410"


def test_google_server_error_raises():
    verifier = GooglePlayReceiptVerifier(
        "com.example.app", _StaticToken(), client=_client(lambda r: httpx.Response(503))
    )
    with pytest.raises(ExternalServiceError):
        verifier.verify("tok", "regular_monthly")


def test_google_garbled_expiry_raises():
    payload = {"expiryTimeMillis": "soon", "paymentState": 1}
    verifier = GooglePlayReceiptVerifier(
        "com.example.app", _StaticToken(), client=_client(lambda r: httpx.Response(200, json=payload))
    )
    with pytest.raises(ExternalServiceError):
        verifier.verify("tok", "regular_monthly")


def _service_account():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    info = {
        "client_email": "verifier@project.iam.gserviceaccount.com",
        "private_key": pem,
        "private_key_id": "kid-1",
        "token_uri": "https://oauth2.example.test/token",
    }
    return info, key.public_key()


def test_service_account_token_is_minted_and_cached():
    info, public_key = _service_account()
    assertions = []

    def handler(request):
        form = dict(httpx.QueryParams(request.content.decode()))
        assertions.append(form["assertion"])
        return httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600})

    provider = ServiceAccountTokenProvider(info, client=_client(handler))

    assert provider.get_token() == "ya29.token"
    assert provider.get_token() == "ya29.token"
    assert len(assertions) == 1
    claims = jwt.decode(assertions[0], public_key, algorithms=["RS256"], audience=info["token_uri"])
    assert claims["iss"] == info["client_email"]
    assert claims["scope"].endswith("/androidpublisher")
    assert jwt.get_unverified_header(assertions[0])["kid"] == "kid-1"


def test_service_account_token_failure():
    info, _ = _service_account()
    provider = ServiceAccountTokenProvider(info, client=_client(lambda r: httpx.Response(401)))
    with pytest.raises(ExternalServiceError):
        provider.get_token()


def test_service_account_requires_key():
    with pytest.raises(ValueError):
        ServiceAccountTokenProvider({"client_email": "x"})


# App Store signed notifications

def _self_signed(common_name="Test Root"):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return key, cert


def _sign_payload(payload, key, cert):
    x5c = [base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()]
    return jwt.encode(payload, key, algorithm="ES256", headers={"x5c": x5c})


def _root_bytes(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def test_decoder_verifies_and_decodes_nested_payloads():
    key, cert = _self_signed()
    transaction = {"originalTransactionId": "1000000001", "productId": PRODUCT, "expiresDate": FAR_FUTURE_MS}
    notification = {
        "notificationType": "DID_RENEW",
        "notificationUUID": "uuid-1",
        "data": {"bundleId": "com.example.app", "signedTransactionInfo": _sign_payload(transaction, key, cert)},
    }
    decoder = AppleNotificationDecoder(_root_bytes(cert), bundle_id="com.example.app")

    decoded = decoder.decode_notification({"signedPayload": _sign_payload(notification, key, cert)})

    assert decoded["notificationType"] == "DID_RENEW"
    assert decoded["data"]["transaction"]["originalTransactionId"] == "1000000001"


def test_decoder_refuses_everything_without_root():
    key, cert = _self_signed()
    payload = _sign_payload({"notificationType": "SUBSCRIBED", "subtype": "INITIAL_BUY"}, key, cert)

    with pytest.raises(InvalidSignatureError):
        AppleNotificationDecoder().decode(payload)
    with pytest.raises(InvalidSignatureError):
        AppleNotificationDecoder.from_file(None, "com.example.app").decode_notification({"signedPayload": payload})


def test_decoder_rejects_untrusted_root():
    key, cert = _self_signed()
    _, other_root = _self_signed("Other Root")
    decoder = AppleNotificationDecoder(other_root.public_bytes(serialization.Encoding.DER))

    with pytest.raises(InvalidSignatureError):
        decoder.decode(_sign_payload({"notificationType": "TEST"}, key, cert))


def test_decoder_rejects_tampered_signature():
    key, cert = _self_signed()
    other_key, _ = _self_signed()
    forged = jwt.encode(
        {"notificationType": "TEST"},
        other_key,
        algorithm="ES256",
        headers={"x5c": [base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()]},
    )
    with pytest.raises(InvalidSignatureError):
        AppleNotificationDecoder(_root_bytes(cert)).decode(forged)


def test_decoder_ignores_algorithm_from_header():
    key, cert = _self_signed()
    x5c = [base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()]
    token = jwt.encode({"notificationType": "TEST"}, "shared", algorithm="HS256", headers={"x5c": x5c})

    with pytest.raises(InvalidSignatureError):
        AppleNotificationDecoder(_root_bytes(cert)).decode(token)


def test_decoder_rejects_other_bundle():
    key, cert = _self_signed()
    payload = _sign_payload({"notificationType": "TEST", "data": {"bundleId": "com.other"}}, key, cert)
    decoder = AppleNotificationDecoder(_root_bytes(cert), bundle_id="com.example.app")
    with pytest.raises(MalformedEventError):
        decoder.decode_notification({"signedPayload": payload})


def test_decoder_requires_certificate_chain():
    key, cert = _self_signed()
    token = jwt.encode({"notificationType": "TEST"}, key, algorithm="ES256")
    with pytest.raises(MalformedEventError):
        AppleNotificationDecoder(_root_bytes(cert)).decode(token)
