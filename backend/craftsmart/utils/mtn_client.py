from __future__ import annotations

import os
import time
import uuid

import requests

from craftsmart.utils.http_retry import json_body, outcome_unknown, request_with_retry
from craftsmart.utils.phone import normalize_msisdn

TOKEN_EXPIRY_MARGIN = 60


def normalize_status(raw: str | None) -> str:
    s = (raw or "").strip().upper()
    if s == "SUCCESSFUL":
        return "successful"
    if s in ("FAILED", "REJECTED", "TIMEOUT", "EXPIRED"):
        return "failed"
    return "pending"


class MTNClient:
    """MTN MoMo open API: collections for deposits, disbursements for payouts."""

    name = "mtn"

    def __init__(self, base_url: str | None = None, collection_key: str | None = None,
                 disbursement_key: str | None = None, api_user: str | None = None,
                 api_key: str | None = None, target_environment: str | None = None,
                 callback_url: str | None = None, currency: str = "UGX"):
        self.base_url = (base_url or os.getenv("MTN_BASE_URL") or "https://sandbox.momodeveloper.mtn.com").rstrip("/")
        subscription = os.getenv("MTN_SUBSCRIPTION_KEY", "")
        self.keys = {
            "collection": collection_key or os.getenv("MTN_COLLECTION_KEY") or subscription,
            "disbursement": disbursement_key or os.getenv("MTN_DISBURSEMENT_KEY") or subscription,
        }
        self.api_user = api_user if api_user is not None else os.getenv("MTN_API_USER", "")
        self.api_key = api_key if api_key is not None else os.getenv("MTN_API_KEY", "")
        self.target_environment = target_environment or os.getenv("MTN_TARGET_ENVIRONMENT") or "sandbox"
        self.callback_url = callback_url if callback_url is not None else os.getenv("MTN_CALLBACK_URL", "")
        self.currency = currency
        self._tokens: dict[str, tuple[str, float]] = {}

    def _configured(self) -> bool:
        return bool(self.api_user and self.api_key)

    def _token(self, product: str) -> str | None:
        cached = self._tokens.get(product)
        if cached and time.time() < cached[1]:
            return cached[0]
        r = request_with_retry(
            "POST",
            f"{self.base_url}/{product}/token/",
            auth=(self.api_user, self.api_key),
            headers={"Ocp-Apim-Subscription-Key": self.keys[product]},
        )
        j = json_body(r)
        token = j.get("access_token")
        if not (200 <= r.status_code < 300) or not token:
            return None
        expires_in = int(j.get("expires_in") or 3600)
        self._tokens[product] = (token, time.time() + expires_in - TOKEN_EXPIRY_MARGIN)
        return token

    def _headers(self, product: str, token: str, reference_id: str | None = None) -> dict:
        h = {
            "Authorization": f"Bearer {token}",
            "X-Target-Environment": self.target_environment,
            "Ocp-Apim-Subscription-Key": self.keys[product],
            "Content-Type": "application/json",
        }
        if reference_id:
            h["X-Reference-Id"] = reference_id
        return h

    def _call(self, product: str, method: str, path: str, reference_id: str | None = None, **kwargs) -> dict:
        if not self._configured():
            return {"ok": False, "error": "MTN_API_USER/MTN_API_KEY not set"}
        try:
            token = self._token(product)
            if not token:
                return {"ok": False, "error": f"MTN {product} authentication failed"}
            headers = self._headers(product, token, reference_id)
            if kwargs.pop("callback", False) and self.callback_url:
                headers["X-Callback-Url"] = self.callback_url
            r = request_with_retry(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except requests.RequestException as e:
            return {"ok": False, "error": str(e), "outcome_unknown": outcome_unknown()}
        j = json_body(r)
        if 200 <= r.status_code < 300:
            return {"ok": True, "data": j, "http_status": r.status_code}
        res = {"ok": False, "error": j.get("message") or j.get("code") or f"HTTP {r.status_code}", "raw": j}
        if outcome_unknown(r.status_code):
            res["outcome_unknown"] = True
        return res

    def charge(self, tx_ref: str, amount: float, phone: str, network: str = "",
               email: str = "", fullname: str = "") -> dict:
        reference_id = str(uuid.uuid4())
        payload = {
            "amount": str(int(round(float(amount)))),
            "currency": self.currency,
            "externalId": tx_ref,
            "payer": {"partyIdType": "MSISDN", "partyId": normalize_msisdn(phone)},
            "payerMessage": "Payment for CraftSmart job",
            "payeeNote": f"CraftSmart escrow {tx_ref}",
        }
        res = self._call("collection", "POST", "/collection/v1_0/requesttopay",
                         reference_id=reference_id, json=payload, callback=True)
        res["request"] = payload
        if not res["ok"]:
            # the id to poll with if the outcome is unknown
            res["reference"] = reference_id
            return res
        # 202 Accepted: the payer approves on the handset, status arrives later
        return {"ok": True, "reference": reference_id, "status": "pending", "redirect_url": "", "request": payload,
                "raw": {"http_status": res["http_status"]}}

    def verify(self, tx_ref: str, reference: str | None = None) -> dict:
        res = self._call("collection", "GET", f"/collection/v1_0/requesttopay/{reference or tx_ref}")
        if not res["ok"]:
            return res
        data = res["data"]
        return {
            "ok": True,
            "status": normalize_status(data.get("status")),
            "amount": float(data.get("amount") or 0),
            "currency": (data.get("currency") or "").upper(),
            "id": str(data.get("financialTransactionId") or ""),
            "raw": data,
        }

    def transfer(self, reference: str, amount: float, phone: str, narration: str = "",
                 beneficiary_name: str = "") -> dict:
        reference_id = str(uuid.uuid4())
        payload = {
            "amount": str(int(round(float(amount)))),
            "currency": self.currency,
            "externalId": reference,
            "payee": {"partyIdType": "MSISDN", "partyId": normalize_msisdn(phone)},
            "payerMessage": narration or "CraftSmart payout",
            "payeeNote": f"CraftSmart payout {reference}",
        }
        res = self._call("disbursement", "POST", "/disbursement/v1_0/transfer",
                         reference_id=reference_id, json=payload, callback=True)
        res["request"] = payload
        if not res["ok"]:
            res["reference"] = reference_id
            return res
        return {"ok": True, "reference": reference_id, "status": "pending", "request": payload,
                "raw": {"http_status": res["http_status"]}}

    def transfer_status(self, reference: str) -> dict:
        res = self._call("disbursement", "GET", f"/disbursement/v1_0/transfer/{reference}")
        if not res["ok"]:
            return res
        return {"ok": True, "status": normalize_status(res["data"].get("status")), "raw": res["data"]}
