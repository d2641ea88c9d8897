from __future__ import annotations

import hashlib
import hmac

from flask import current_app

from craftsmart.utils.airtel_client import AirtelClient
from craftsmart.utils.flutterwave_client import FlutterwaveClient
from craftsmart.utils.mtn_client import MTNClient


PROVIDERS = {
    "flutterwave": FlutterwaveClient,
    "mtn": MTNClient,
    "airtel": AirtelClient,
}

# One instance per provider so MTN / Airtel OAuth tokens are reused across requests
_CLIENTS: dict = {}


class UnknownProvider(ValueError):
    pass


def provider_name(name: str | None = None) -> str:
    return (name or current_app.config.get("PAYMENT_PROVIDER") or "flutterwave").strip().lower()


def get_client(name: str | None = None):
    key = provider_name(name)
    if key not in PROVIDERS:
        raise UnknownProvider(f"Unknown payment provider: {key}")
    client = _CLIENTS.get(key)
    if client is None:
        client = PROVIDERS[key](currency=current_app.config.get("PAYMENT_CURRENCY", "UGX"))
        _CLIENTS[key] = client
    return client


def reset_clients() -> None:
    _CLIENTS.clear()


def verify_callback_signature(raw_body: bytes, signature_header: str | None) -> bool:
    """Check an ``x-signature`` HMAC-SHA256 of the raw body for MTN / Airtel callbacks.

    Skipped (always True) in dev or when no WEBHOOK_SECRET is configured.
    """
    secret = (current_app.config.get("WEBHOOK_SECRET") or "").strip()
    if current_app.config.get("ENV") == "dev" or not secret:
        return True
    if not signature_header:
        return False
    sig = signature_header.strip()
    if sig.lower().startswith("sha256="):
        sig = sig[7:]
    digest = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, sig.lower())


def provider_for_method(payment_method: str | None) -> str:
    """Pick the gateway for a deposit.

    ``PAYMENT_PROVIDER=direct`` sends MTN numbers to the MTN MoMo API and Airtel
    numbers to Airtel Money; any other value names a single provider.
    """
    configured = provider_name()
    if configured != "direct":
        return configured
    return "airtel" if (payment_method or "").strip().upper() == "AIRTEL" else "mtn"
