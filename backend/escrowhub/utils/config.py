from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 1_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def env_decimal(name: str, default: str, *, minimum: str = "0", maximum: str = "1") -> Decimal:
    raw = (os.getenv(name) or "").strip() or default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        value = Decimal(default)
    if value < Decimal(minimum):
        value = Decimal(minimum)
    if value > Decimal(maximum):
        value = Decimal(maximum)
    return value


def current_env() -> str:
    return (os.getenv("ESCROWHUB_ENV", "dev") or "dev").strip().lower()


def is_production() -> bool:
    return current_env() in ("prod", "production")


# Policy windows, read on every call.

def release_grace_hours() -> int:
    return env_int("ESCROW_RELEASE_GRACE_HOURS", 72, minimum=0, maximum=24 * 90)


def buyer_protection_hours() -> int:
    return env_int("BUYER_PROTECTION_HOURS", 0, minimum=0, maximum=24 * 90)


def payment_expiry_minutes() -> int:
    return env_int("PAYMENT_EXPIRY_MINUTES", 30, minimum=1, maximum=60 * 24 * 30)


def logistics_expiry_hours() -> int:
    return env_int("LOGISTICS_EXPIRY_HOURS", 168, minimum=1, maximum=24 * 365)


def problem_stuck_hours() -> int:
    return env_int("PROBLEM_STUCK_HOURS", 72, minimum=1, maximum=24 * 365)
