"""Pytest configuration and fixtures."""

import itertools
from dataclasses import dataclass

import pytest

from craftsmart import create_app
from craftsmart.extensions import db
from craftsmart.models import User
from craftsmart.utils import payment_gateway
from craftsmart.utils.jwt_utils import create_access_token

TEST_CONFIG = {
    "TESTING": True,
    "ENV": "test",
    "SECRET_KEY": "test-only-secret-key-0123456789",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "PAYMENT_PROVIDER": "flutterwave",
    "PAYMENT_CURRENCY": "UGX",
    "ADMIN_COMMISSION_RATE": 0.10,
    "PAYMENT_MAX_AMOUNT": 0.0,
    "DISBURSEMENT_MAX_ATTEMPTS": 3,
    "PENDING_PAYMENT_TTL_MINUTES": 30,
    "FLW_SECRET_HASH": "test-flw-hash",
    "WEBHOOK_SECRET": "test-webhook-secret",
}

_phones = itertools.count(1)


@dataclass
class UserHandle:
    id: int
    email: str
    phone: str
    role: str
    headers: dict


class FakeGateway:
    """Stands in for a provider client; results can be changed per test."""

    def __init__(self, name="flutterwave"):
        self.name = name
        self.calls = []
        self.charge_result = {"ok": True, "reference": "FLW-REF-1", "status": "pending",
                              "redirect_url": "https://checkout.test/authorize"}
        self.verify_result = {"ok": True, "status": "pending", "amount": None, "currency": "UGX", "id": "9001"}
        self.transfer_result = {"ok": True, "reference": "TRF-1", "status": "pending"}
        self.transfer_status_result = {"ok": True, "status": "pending"}

    def charge(self, tx_ref, amount, phone, network="", email="", fullname=""):
        self.calls.append(("charge", tx_ref, amount, phone))
        return dict(self.charge_result)

    def verify(self, tx_ref, reference=None):
        self.calls.append(("verify", tx_ref, reference))
        return dict(self.verify_result)

    def transfer(self, reference, amount, phone, narration="", beneficiary_name=""):
        self.calls.append(("transfer", reference, amount, phone))
        return dict(self.transfer_result)

    def transfer_status(self, reference):
        self.calls.append(("transfer_status", reference))
        return dict(self.transfer_status_result)

    def count(self, kind):
        return len([c for c in self.calls if c[0] == kind])


@pytest.fixture
def app():
    """App on a fresh in-memory database. No app context is left pushed, so
    each request gets its own ``g`` (and its own Flask-Login user)."""
    payment_gateway.reset_clients()
    app = create_app(dict(TEST_CONFIG))
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app, monkeypatch):
    """Install a FakeGateway for every provider name."""
    fake = FakeGateway()
    for name in ("flutterwave", "mtn", "airtel"):
        monkeypatch.setitem(payment_gateway._CLIENTS, name, fake)
    return fake


@pytest.fixture
def make_user(app):
    def _make(role="employer", approved=True, name=None, phone=None, password="secret123", **fields):
        n = next(_phones)
        phone = phone or f"25677{n:07d}"
        email = fields.pop("email", None) or f"{role}{n}@example.test"
        with app.app_context():
            u = User(name=name or f"{role.title()} {n}", email=email, phone=phone, role=role,
                     approved=approved, **fields)
            u.set_password(password)
            db.session.add(u)
            db.session.commit()
            token = create_access_token(u.id)
            return UserHandle(id=u.id, email=email, phone=phone, role=role,
                              headers={"Authorization": f"Bearer {token}"})

    return _make


@pytest.fixture
def employer(make_user):
    return make_user("employer")


@pytest.fixture
def craftsman(make_user):
    return make_user("craftsman", approved=True, skills="plumbing,tiling", city="Kampala")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


def post_job(client, employer, budget=100000, **fields):
    body = {"title": "Fix kitchen sink", "description": "Leaking pipe under the sink",
            "location": "Kampala", "budget": budget}
    body.update(fields)
    r = client.post("/api/jobs", json=body, headers=employer.headers)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["job"]["id"]


def assign_job(client, employer, craftsman, budget=100000):
    """Post a job, have the craftsman apply and the employer accept."""
    job_id = post_job(client, employer, budget=budget)
    r = client.post("/api/applications", json={"job_id": job_id}, headers=craftsman.headers)
    assert r.status_code == 201, r.get_json()
    app_id = r.get_json()["application"]["id"]
    r = client.put(f"/api/applications/{app_id}/accept", headers=employer.headers)
    assert r.status_code == 200, r.get_json()
    return job_id


def initiate(client, employer, job_id, method="MTN", phone="0772000111", headers=None):
    h = dict(employer.headers)
    h.update(headers or {})
    return client.post("/api/payment/initiate",
                       json={"job_id": job_id, "payment_method": method, "employer_phone": phone},
                       headers=h)


def flw_webhook(client, reference, status="successful", amount=100000, currency="UGX",
                event="charge.completed", event_id=5001, secret="test-flw-hash"):
    ref_field = "tx_ref" if event == "charge.completed" else "reference"
    payload = {"event": event,
               "data": {"id": event_id, ref_field: reference, "status": status,
                        "amount": amount, "currency": currency}}
    return client.post("/api/payment/webhook", json=payload, headers={"verif-hash": secret})


def hold_job(client, employer, craftsman, budget=100000):
    """Drive a job all the way to paid-in-escrow. Returns (job_id, transaction_id)."""
    job_id = assign_job(client, employer, craftsman, budget=budget)
    r = initiate(client, employer, job_id)
    assert r.status_code == 200, r.get_json()
    tx_id = r.get_json()["transaction_id"]
    r = flw_webhook(client, tx_id, amount=budget, event_id=7000 + job_id)
    assert r.status_code == 200, r.get_json()
    return job_id, tx_id
