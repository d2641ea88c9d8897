from __future__ import annotations

from craftsmart.models import BlacklistEntry
from craftsmart.utils.phone import normalize_msisdn


def canonical_mobile(phone: str | None) -> str:
    return normalize_msisdn(phone) or (phone or "").strip()


def is_blacklisted(phone: str | None) -> bool:
    mobile = canonical_mobile(phone)
    if not mobile:
        return False
    return BlacklistEntry.query.filter_by(mobile=mobile).first() is not None
