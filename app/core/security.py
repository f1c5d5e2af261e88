import hashlib
import hmac
import secrets


def verify_razorpay_webhook(payload: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the exact received bytes, hex encoded, compared in constant time."""
    if not signature or not secret:
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def verify_subscription_token(supplied: str | None, expected: str) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def generate_form_token() -> str:
    return secrets.token_urlsafe(16)
