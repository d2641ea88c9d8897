from __future__ import annotations

import re

_DIGITS = re.compile(r"\D+")


def normalize_msisdn(phone: str | None) -> str:
    """Return a Ugandan number as 256XXXXXXXXX, or "" when it cannot be one."""
    digits = _DIGITS.sub("", phone or "")
    if digits.startswith("256") and len(digits) == 12:
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return "256" + digits[1:]
    if len(digits) == 9:
        return "256" + digits
    return ""


def local_msisdn(phone: str | None) -> str:
    """Airtel wants the subscriber number without the country code."""
    full = normalize_msisdn(phone)
    return full[3:] if full else ""


def detect_network(phone: str | None) -> str:
    """Best effort MTN/AIRTEL guess from the Ugandan prefix."""
    local = local_msisdn(phone)
    if local[:2] in ("77", "78", "76", "39"):
        return "MTN"
    if local[:2] in ("70", "75", "74", "20"):
        return "AIRTEL"
    return ""
