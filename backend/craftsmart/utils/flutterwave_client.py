from __future__ import annotations

import hmac
import os

import requests

from craftsmart.utils.http_retry import json_body, outcome_unknown, request_with_retry
from craftsmart.utils.phone import normalize_msisdn


def normalize_status(raw: str | None) -> str:
    s = (raw or "").strip().lower()
    if s in ("successful", "success", "completed"):
        return "successful"
    if s in ("failed", "cancelled", "canceled", "error"):
        return "failed"
    return "pending"


def verify_webhook_hash(header_value: str | None, secret_hash: str | None = None) -> bool:
    """Flutterwave sends the dashboard secret hash back verbatim in ``verif-hash``."""
    expected = (secret_hash if secret_hash is not None else os.getenv("FLW_SECRET_HASH", "")).strip()
    if not expected or not header_value:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), header_value.strip().encode("utf-8"))


class FlutterwaveClient:
    name = "flutterwave"

    def __init__(self, secret_key: str | None = None, base_url: str | None = None,
                 currency: str = "UGX", redirect_url: str | None = None):
        self.secret_key = (secret_key if secret_key is not None else os.getenv("FLW_SECRET_KEY", "")).strip()
        self.base_url = (base_url or os.getenv("FLW_BASE_URL") or "https://api.flutterwave.com").rstrip("/")
        self.currency = currency
        self.redirect_url = redirect_url if redirect_url is not None else os.getenv("PAYMENT_REDIRECT_URL", "")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def _call(self, method: str, path: str, **kwargs) -> dict:
        if not self.secret_key:
            return {"ok": False, "error": "FLW_SECRET_KEY not set"}
        try:
            r = request_with_retry(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except requests.RequestException as e:
            return {"ok": False, "error": str(e), "outcome_unknown": outcome_unknown()}
        j = json_body(r)
        if 200 <= r.status_code < 300 and j.get("status") == "success":
            return {"ok": True, "data": j.get("data") or {}, "raw": j}
        res = {"ok": False, "error": j.get("message") or f"HTTP {r.status_code}", "raw": j}
        if outcome_unknown(r.status_code):
            res["outcome_unknown"] = True
        return res

    def charge(self, tx_ref: str, amount: float, phone: str, network: str = "",
               email: str = "", fullname: str = "") -> dict:
        payload = {
            "tx_ref": tx_ref,
            "amount": int(round(float(amount))),
            "currency": self.currency,
            "phone_number": normalize_msisdn(phone),
            "network": (network or "").upper(),
            "email": email or "",
            "fullname": fullname or "",
        }
        if self.redirect_url:
            payload["redirect_url"] = self.redirect_url
        res = self._call("POST", "/v3/charges", params={"type": "mobile_money_uganda"}, json=payload)
        if not res["ok"]:
            res["request"] = payload
            return res
        data = res["data"]
        meta = (res["raw"].get("meta") or {}).get("authorization") or {}
        reference = data.get("flw_ref") or data.get("id") or data.get("tx_ref") or tx_ref
        return {
            "ok": True,
            "reference": str(reference),
            "status": normalize_status(data.get("status")),
            "redirect_url": meta.get("redirect") or "",
            "request": payload,
            "raw": res["raw"],
        }

    def verify(self, tx_ref: str, reference: str | None = None) -> dict:
        res = self._call("GET", "/v3/transactions/verify_by_reference", params={"tx_ref": tx_ref})
        if not res["ok"]:
            return res
        data = res["data"]
        return {
            "ok": True,
            "status": normalize_status(data.get("status")),
            "amount": float(data.get("amount") or 0),
            "currency": (data.get("currency") or "").upper(),
            "id": str(data.get("id") or ""),
            "raw": res["raw"],
        }

    def transfer(self, reference: str, amount: float, phone: str, narration: str = "",
                 beneficiary_name: str = "") -> dict:
        payload = {
            "account_bank": "MPS",
            "account_number": normalize_msisdn(phone),
            "amount": int(round(float(amount))),
            "currency": self.currency,
            "narration": narration or "CraftSmart payout",
            "reference": reference,
            "beneficiary_name": beneficiary_name or "",
        }
        res = self._call("POST", "/v3/transfers", json=payload)
        if not res["ok"]:
            res["request"] = payload
            res["reference"] = reference
            return res
        data = res["data"]
        return {
            "ok": True,
            "reference": str(data.get("id") or reference),
            "status": normalize_status(data.get("status")),
            "request": payload,
            "raw": res["raw"],
        }

    def transfer_status(self, reference: str) -> dict:
        res = self._call("GET", f"/v3/transfers/{reference}")
        if not res["ok"]:
            return res
        return {"ok": True, "status": normalize_status(res["data"].get("status")), "raw": res["raw"]}
