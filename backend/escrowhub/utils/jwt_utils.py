import os
import time
from typing import Any, Dict, Optional

import jwt

from escrowhub.utils.config import env_int

ACCESS = "access"
PICKUP_QR = "pickup_qr"

_ALGORITHM = "HS256"


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def _encode(claims: Dict[str, Any], *, token_type: str, ttl_seconds: int) -> str:
    now = int(time.time())
    payload = dict(claims, iat=now, exp=now + int(ttl_seconds), type=token_type)
    return jwt.encode(payload, _secret(), algorithm=_ALGORITHM)


def decode_token(token: str, *, expected_type: str = ACCESS) -> Optional[Dict[str, Any]]:
    """Claims of a valid, unexpired token of the given type, else None."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=[_ALGORITHM])
    except jwt.PyJWTError:
        return None
    if payload.get("type") != expected_type:
        return None
    return payload


def create_access_token(user_id: int, ttl_seconds: int = 60 * 60 * 24 * 7) -> str:
    return _encode({"sub": str(user_id)}, token_type=ACCESS, ttl_seconds=ttl_seconds)


def create_pickup_qr_token(*, order_item_id: int, seller_id: int, ttl_seconds: Optional[int] = None) -> str:
    """Token printed as a QR code on the package label.

    The shipper's client scans it at pickup; the server checks it binds the
    item being picked up to the seller who owns it.
    """
    if ttl_seconds is None:
        ttl_seconds = env_int("PICKUP_QR_TTL_HOURS", 24 * 14, minimum=1, maximum=24 * 90) * 3600
    claims = {"sub": str(seller_id), "oi": int(order_item_id)}
    return _encode(claims, token_type=PICKUP_QR, ttl_seconds=ttl_seconds)


def pickup_qr_binds(token: Optional[str], *, order_item_id: int, seller_id: int) -> bool:
    if not token:
        return False
    payload = decode_token(str(token).strip(), expected_type=PICKUP_QR)
    if not payload:
        return False
    try:
        return int(payload.get("oi")) == int(order_item_id) and int(payload.get("sub")) == int(seller_id)
    except (TypeError, ValueError):
        return False


def get_bearer_token(auth_header: str) -> Optional[str]:
    parts = (auth_header or "").split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None
