import hmac
import hashlib
from datetime import datetime, timezone
from typing import Optional

from errors import WebhookVerificationError


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_hmac_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """Check a hex HMAC-SHA256 of the raw body in constant time."""
    if not secret:
        raise WebhookVerificationError("Webhook secret not configured")
    if not signature:
        raise WebhookVerificationError("Missing signature header")

    received = signature.strip()
    if received.lower().startswith("sha256="):
        received = received[len("sha256="):]

    calc = hmac_sha256_hex(secret, payload)
    if not hmac.compare_digest(calc.encode("utf-8"), received.lower().encode("utf-8")):
        raise WebhookVerificationError("bad signature")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
