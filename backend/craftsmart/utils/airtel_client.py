from __future__ import annotations

import os
import time

import requests

from craftsmart.utils.http_retry import json_body, outcome_unknown, request_with_retry
from craftsmart.utils.phone import local_msisdn

TOKEN_EXPIRY_MARGIN = 60


def normalize_status(raw: str | None) -> str:
    # TS = success, TF = failed, TA/TIP = ambiguous / in progress
    s = (raw or "").strip().upper()
    if s in ("TS", "SUCCESS", "SUCCESSFUL"):
        return "successful"
    if s in ("TF", "FAILED", "TE"):
        return "failed"
    return "pending"


class AirtelClient:
    name = "airtel"

    def __init__(self, base_url: str | None = None, client_id: str | None = None,
                 client_secret: str | None = None, pin: str | None = None,
                 country: str = "UG", currency: str = "UGX"):
        self.base_url = (base_url or os.getenv("AIRTEL_BASE_URL") or "https://openapiuat.airtel.africa").rstrip("/")
        self.client_id = client_id if client_id is not None else os.getenv("AIRTEL_CLIENT_ID", "")
        self.client_secret = client_secret if client_secret is not None else os.getenv("AIRTEL_CLIENT_SECRET", "")
        self.pin = pin if pin is not None else os.getenv("AIRTEL_PIN", "")
        self.country = country
        self.currency = currency
        self._token_value: str | None = None
        self._token_expires_at = 0.0

    def _token(self) -> str | None:
        if self._token_value and time.time() < self._token_expires_at:
            return self._token_value
        r = request_with_retry(
            "POST",
            f"{self.base_url}/auth/oauth2/token",
            json={"client_id": self.client_id, "client_secret": self.client_secret, "grant_type": "client_credentials"},
            headers={"Content-Type": "application/json"},
        )
        j = json_body(r)
        token = j.get("access_token")
        if not (200 <= r.status_code < 300) or not token:
            return None
        self._token_value = token
        self._token_expires_at = time.time() + int(j.get("expires_in") or 3600) - TOKEN_EXPIRY_MARGIN
        return token

    def _call(self, method: str, path: str, **kwargs) -> dict:
        if not (self.client_id and self.client_secret):
            return {"ok": False, "error": "AIRTEL_CLIENT_ID/AIRTEL_CLIENT_SECRET not set"}
        try:
            token = self._token()
            if not token:
                return {"ok": False, "error": "Airtel authentication failed"}
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "X-Country": self.country,
                "X-Currency": self.currency,
            }
            r = request_with_retry(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except requests.RequestException as e:
            return {"ok": False, "error": str(e), "outcome_unknown": outcome_unknown()}
        j = json_body(r)
        status = j.get("status") or {}
        if 200 <= r.status_code < 300 and status.get("success", True) is not False:
            return {"ok": True, "data": j.get("data") or {}, "raw": j}
        res = {"ok": False, "error": status.get("message") or f"HTTP {r.status_code}", "raw": j}
        if outcome_unknown(r.status_code):
            res["outcome_unknown"] = True
        return res

    def charge(self, tx_ref: str, amount: float, phone: str, network: str = "",
               email: str = "", fullname: str = "") -> dict:
        payload = {
            "reference": f"CraftSmart {tx_ref[:8]}",
            "subscriber": {"country": self.country, "currency": self.currency, "msisdn": local_msisdn(phone)},
            "transaction": {
                "amount": int(round(float(amount))),
                "country": self.country,
                "currency": self.currency,
                "id": tx_ref,
            },
        }
        res = self._call("POST", "/merchant/v1/payments/", json=payload)
        res["request"] = payload
        if not res["ok"]:
            return res
        txn = res["data"].get("transaction") or {}
        return {
            "ok": True,
            "reference": str(txn.get("id") or tx_ref),
            "status": normalize_status(txn.get("status")),
            "redirect_url": "",
            "request": payload,
            "raw": res["raw"],
        }

    def verify(self, tx_ref: str, reference: str | None = None) -> dict:
        res = self._call("GET", f"/standard/v1/payments/{tx_ref}")
        if not res["ok"]:
            return res
        txn = res["data"].get("transaction") or {}
        return {
            "ok": True,
            "status": normalize_status(txn.get("status")),
            "amount": float(txn.get("amount") or 0),
            "currency": (txn.get("currency") or self.currency).upper(),
            "id": str(txn.get("airtel_money_id") or ""),
            "raw": res["raw"],
        }

    def transfer(self, reference: str, amount: float, phone: str, narration: str = "",
                 beneficiary_name: str = "") -> dict:
        payload = {
            "payee": {"msisdn": local_msisdn(phone)},
            "reference": narration or "CraftSmart payout",
            "pin": self.pin,
            "transaction": {"amount": int(round(float(amount))), "id": reference},
        }
        res = self._call("POST", "/standard/v1/disbursements/", json=payload)
        # never log the encrypted PIN
        res["request"] = {**payload, "pin": "***"}
        if not res["ok"]:
            res["reference"] = reference
            return res
        txn = res["data"].get("transaction") or {}
        return {
            "ok": True,
            "reference": reference,
            "status": normalize_status(txn.get("status")),
            "request": res["request"],
            "raw": res["raw"],
        }

    def transfer_status(self, reference: str) -> dict:
        res = self._call("GET", f"/standard/v1/disbursements/{reference}")
        if not res["ok"]:
            return res
        txn = res["data"].get("transaction") or {}
        return {"ok": True, "status": normalize_status(txn.get("status")), "raw": res["raw"]}
