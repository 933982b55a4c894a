import hashlib
import hmac
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from udin.core.config import get_settings

ACCESS_TOKEN_MAX_AGE = 7 * 24 * 3600  # 7 days


def get_token_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="udin-access",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_access_token(payload: dict[str, Any]) -> str:
    """Sign ``{user_id, session_version}``. Issuance proper lives in the auth service."""
    return get_token_serializer().dumps(payload)


def load_access_token(token: str, max_age_seconds: int = ACCESS_TOKEN_MAX_AGE) -> dict[str, Any] | None:
    serializer = get_token_serializer()
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_hmac_signature(secret: str, message: bytes, signature: Any) -> bool:
    """Constant-time compare of a hex HMAC-SHA256. Malformed input is simply False."""
    if not secret or not isinstance(signature, str) or not signature:
        return False
    expected = hmac_sha256_hex(secret, message)
    try:
        return hmac.compare_digest(expected, signature)
    except TypeError:
        # non-ASCII str
        return False
