import hashlib
import hmac
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError

from config import settings

# ── JWT ───────────────────────────────────────────────────────────────────────
ALGORITHM = "HS256"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Used by tooling and tests; production tokens come from the auth service."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Raises JWTError when invalid or expired."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])


def verify_access_token(token: str) -> Optional[dict]:
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None


# ── PayMongo webhook signature ────────────────────────────────────────────────
def verify_paymongo_signature(header: Optional[str], body: bytes, secret: str) -> bool:
    """
    Header format: "t=<timestamp>,te=<test sig>,li=<live sig>".
    Signature is HMAC-SHA256 of "<timestamp>.<raw body>" keyed with the webhook secret.
    """
    if not header:
        return False
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t")
    if not timestamp:
        return False
    expected = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    candidates = [parts.get("li"), parts.get("te")]
    return any(sig and hmac.compare_digest(sig, expected) for sig in candidates)
