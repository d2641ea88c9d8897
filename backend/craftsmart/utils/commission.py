from __future__ import annotations

from flask import current_app


def commission_rate() -> float:
    try:
        rate = float(current_app.config.get("ADMIN_COMMISSION_RATE", 0.10))
    except (TypeError, ValueError):
        rate = 0.10
    if rate < 0:
        return 0.0
    if rate > 1:
        return 1.0
    return rate


def compute_split(total: float, rate: float | None = None) -> dict:
    """Split a deposit into the platform commission and the craftsman share.

    Mobile money in UGX has no minor unit, so both parts are whole numbers and
    always add up to the total.
    """
    if rate is None:
        rate = commission_rate()
    total_int = int(round(float(total or 0)))
    commission = int(round(total_int * float(rate)))
    return {
        "total_amount": float(total_int),
        "commission_amount": float(commission),
        "disbursement_amount": float(total_int - commission),
        "rate": float(rate),
    }
