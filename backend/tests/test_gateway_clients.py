"""Tests for the gateway clients and the helpers they share. No network is used."""

import hashlib
import hmac
import json

import pytest
import requests

from craftsmart.utils import http_retry
from craftsmart.utils.airtel_client import AirtelClient, normalize_status as airtel_status
from craftsmart.utils.commission import compute_split
from craftsmart.utils.flutterwave_client import FlutterwaveClient, verify_webhook_hash
from craftsmart.utils.mtn_client import MTNClient
from craftsmart.utils.payment_gateway import (
    UnknownProvider,
    get_client,
    provider_for_method,
    verify_callback_signature,
)
from craftsmart.utils.phone import detect_network, local_msisdn, normalize_msisdn


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode("utf-8") if body is not None else b""
        self.text = self.content.decode("utf-8")

    def json(self):
        return self._body


class Recorder:
    """Replaces requests.request; answers from a list of queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(http_retry.time, "sleep", sleeps.append)
    return sleeps


def _install(monkeypatch, *responses):
    rec = Recorder(*responses)
    monkeypatch.setattr(http_retry.requests, "request", rec)
    return rec


class TestPhoneAndSplit:
    @pytest.mark.parametrize("raw,expected", [
        ("0772123456", "256772123456"),
        ("+256 772-123-456", "256772123456"),
        ("772123456", "256772123456"),
        ("256772123456", "256772123456"),
        ("12345", ""),
        (None, ""),
    ])
    def test_normalize_msisdn(self, raw, expected):
        assert normalize_msisdn(raw) == expected

    def test_local_and_network(self):
        assert local_msisdn("0701234567") == "701234567"
        assert detect_network("0772123456") == "MTN"
        assert detect_network("0752123456") == "AIRTEL"
        assert detect_network("bogus") == ""

    @pytest.mark.parametrize("total", [1, 99, 100000, 123457, 999999])
    def test_split_adds_up(self, total):
        split = compute_split(total, rate=0.1)
        assert split["commission_amount"] + split["disbursement_amount"] == split["total_amount"] == float(total)
        assert split["commission_amount"] == float(int(split["commission_amount"]))

    def test_rate_is_clamped(self, app):
        with app.app_context():
            app.config["ADMIN_COMMISSION_RATE"] = 5
            assert compute_split(1000)["disbursement_amount"] == 0.0
            app.config["ADMIN_COMMISSION_RATE"] = -1
            assert compute_split(1000)["commission_amount"] == 0.0


class TestRetry:
    def test_retries_transient_status(self, monkeypatch, no_sleep):
        rec = _install(monkeypatch, FakeResponse(503, {}), FakeResponse(503, {}), FakeResponse(200, {"ok": 1}))
        r = http_retry.request_with_retry("GET", "https://gw.test/x")
        assert r.status_code == 200
        assert len(rec.calls) == 3
        assert no_sleep == [0.5, 1.0]

    def test_does_not_retry_client_errors(self, monkeypatch, no_sleep):
        rec = _install(monkeypatch, FakeResponse(400, {"message": "bad"}))
        assert http_retry.request_with_retry("GET", "https://gw.test/x").status_code == 400
        assert len(rec.calls) == 1
        assert no_sleep == []

    def test_gives_last_response_when_still_failing(self, monkeypatch, no_sleep):
        _install(monkeypatch, FakeResponse(502, {}), FakeResponse(502, {}), FakeResponse(504, {}))
        assert http_retry.request_with_retry("GET", "https://gw.test/x").status_code == 504

    def test_reraises_connection_error(self, monkeypatch, no_sleep):
        _install(monkeypatch, *[requests.ConnectionError("down")] * 3)
        with pytest.raises(requests.ConnectionError):
            http_retry.request_with_retry("GET", "https://gw.test/x")
        assert len(no_sleep) == 2

    def test_single_attempt(self, monkeypatch, no_sleep):
        rec = _install(monkeypatch, requests.Timeout("slow"))
        with pytest.raises(requests.Timeout):
            http_retry.request_with_retry("POST", "https://gw.test/x", max_attempts=1)
        assert len(rec.calls) == 1
        assert no_sleep == []


class TestFlutterwave:
    def _client(self):
        return FlutterwaveClient(secret_key="FLWSECK-test", base_url="https://flw.test", redirect_url="")

    def test_charge(self, monkeypatch, no_sleep):
        rec = _install(monkeypatch, FakeResponse(200, {
            "status": "success",
            "data": {"id": 77, "flw_ref": "FLW-MOCK-1", "status": "pending"},
            "meta": {"authorization": {"mode": "redirect", "redirect": "https://flw.test/auth"}},
        }))
        res = self._client().charge("tx-1", 100000.4, "0772123456", network="MTN", email="e@x.test")
        assert res["ok"] is True
        assert res["reference"] == "FLW-MOCK-1"
        assert res["status"] == "pending"
        assert res["redirect_url"] == "https://flw.test/auth"

        method, url, kwargs = rec.calls[0]
        assert (method, url) == ("POST", "https://flw.test/v3/charges")
        assert kwargs["params"] == {"type": "mobile_money_uganda"}
        assert kwargs["json"]["amount"] == 100000
        assert kwargs["json"]["phone_number"] == "256772123456"
        assert kwargs["headers"]["Authorization"] == "Bearer FLWSECK-test"

    def test_charge_rejected(self, monkeypatch, no_sleep):
        _install(monkeypatch, FakeResponse(400, {"status": "error", "message": "Invalid phone"}))
        res = self._client().charge("tx-1", 1000, "0772123456")
        assert res == {"ok": False, "error": "Invalid phone", "raw": {"status": "error", "message": "Invalid phone"},
                       "request": res["request"]}

    def test_network_failure_is_not_raised(self, monkeypatch, no_sleep):
        _install(monkeypatch, *[requests.Timeout("slow")] * 3)
        res = self._client().verify("tx-1")
        assert res["ok"] is False
        assert "slow" in res["error"]

    def test_timed_out_transfer_is_flagged_unknown(self, monkeypatch, no_sleep):
        _install(monkeypatch, *[requests.Timeout("Read timed out")] * 3)
        res = self._client().transfer("tx-1-disbursement-2", 900, "0772123456")
        assert res["ok"] is False
        assert res["outcome_unknown"] is True
        assert res["reference"] == "tx-1-disbursement-2"

    def test_server_error_is_flagged_unknown(self, monkeypatch, no_sleep):
        _install(monkeypatch, *[FakeResponse(503, {"message": "busy"})] * 3)
        res = self._client().transfer("tx-1-disbursement-1", 900, "0772123456")
        assert res["outcome_unknown"] is True

        _install(monkeypatch, FakeResponse(400, {"status": "error", "message": "Invalid account"}))
        res = self._client().transfer("tx-1-disbursement-1", 900, "0772123456")
        assert "outcome_unknown" not in res

    def test_missing_key(self):
        res = FlutterwaveClient(secret_key="").charge("tx-1", 1000, "0772123456")
        assert res["ok"] is False

    def test_verify(self, monkeypatch, no_sleep):
        rec = _install(monkeypatch, FakeResponse(200, {
            "status": "success",
            "data": {"id": 9, "status": "successful", "amount": 5000, "currency": "ugx"},
        }))
        res = self._client().verify("tx-9")
        assert (res["status"], res["amount"], res["currency"], res["id"]) == ("successful", 5000.0, "UGX", "9")
        assert rec.calls[0][2]["params"] == {"tx_ref": "tx-9"}

    def test_webhook_hash(self):
        assert verify_webhook_hash("abc", "abc") is True
        assert verify_webhook_hash("abd", "abc") is False
        assert verify_webhook_hash(None, "abc") is False
        assert verify_webhook_hash("abc", "") is False


class TestMTN:
    def _client(self):
        return MTNClient(base_url="https://momo.test", collection_key="ck", disbursement_key="dk",
                         api_user="user", api_key="key", target_environment="mtnuganda", callback_url="")

    def test_token_is_cached(self, monkeypatch, no_sleep):
        rec = _install(
            monkeypatch,
            FakeResponse(200, {"access_token": "tok-1", "expires_in": 3600}),
            FakeResponse(202),
            FakeResponse(202),
        )
        client = self._client()
        first = client.charge("tx-1", 1000, "0772123456")
        second = client.charge("tx-2", 1000, "0772123456")
        assert first["ok"] and second["ok"]
        assert first["reference"] != second["reference"]
        urls = [c[1] for c in rec.calls]
        assert urls == [
            "https://momo.test/collection/token/",
            "https://momo.test/collection/v1_0/requesttopay",
            "https://momo.test/collection/v1_0/requesttopay",
        ]
        headers = rec.calls[1][2]["headers"]
        assert headers["Authorization"] == "Bearer tok-1"
        assert headers["X-Target-Environment"] == "mtnuganda"
        assert headers["X-Reference-Id"] == first["reference"]

    def test_failed_auth(self, monkeypatch, no_sleep):
        _install(monkeypatch, FakeResponse(401, {"error": "unauthorized"}))
        res = self._client().transfer("tx-1-disbursement-1", 900, "0772123456")
        assert res["ok"] is False
        assert "authentication" in res["error"]

    def test_unconfigured(self):
        assert MTNClient(api_user="", api_key="").verify("tx-1")["ok"] is False


class TestAirtel:
    def test_status_codes(self):
        assert airtel_status("TS") == "successful"
        assert airtel_status("TF") == "failed"
        assert airtel_status("TIP") == "pending"

    def test_transfer_masks_pin(self, monkeypatch, no_sleep):
        _install(
            monkeypatch,
            FakeResponse(200, {"access_token": "tok", "expires_in": 180}),
            FakeResponse(200, {"data": {"transaction": {"id": "x", "status": "TS"}},
                               "status": {"success": True}}),
        )
        client = AirtelClient(base_url="https://airtel.test", client_id="id", client_secret="secret", pin="enc-pin")
        res = client.transfer("tx-1-disbursement-1", 900, "0701234567")
        assert res["ok"] is True
        assert res["status"] == "successful"
        assert res["reference"] == "tx-1-disbursement-1"
        assert res["request"]["pin"] == "***"
        assert res["request"]["payee"]["msisdn"] == "701234567"


class TestRegistry:
    def test_get_client_caches(self, app):
        with app.app_context():
            assert get_client("flutterwave") is get_client("FLUTTERWAVE")
            with pytest.raises(UnknownProvider):
                get_client("paypal")

    def test_direct_routing(self, app):
        with app.app_context():
            assert provider_for_method("MTN") == "flutterwave"
            app.config["PAYMENT_PROVIDER"] = "direct"
            assert provider_for_method("MTN") == "mtn"
            assert provider_for_method("airtel") == "airtel"

    def test_callback_signature(self, app):
        raw = b'{"externalId": "tx-1"}'
        sig = hmac.new(b"test-webhook-secret", raw, hashlib.sha256).hexdigest()
        with app.app_context():
            assert verify_callback_signature(raw, sig) is True
            assert verify_callback_signature(raw, f"sha256={sig}") is True
            assert verify_callback_signature(raw, "sha256=deadbeef") is False
            assert verify_callback_signature(raw, None) is False
            app.config["WEBHOOK_SECRET"] = ""
            assert verify_callback_signature(raw, None) is True
