"""Tests for the admin dashboard, platform fee withdrawals and the escrow sweep."""

from sqlalchemy.dialects import postgresql

from conftest import assign_job, hold_job, initiate, post_job

from craftsmart.extensions import db
from craftsmart.models import Application, AuditLog, Transaction, User
from craftsmart.segments import segment_admin


def _paid_job(client, employer, craftsman, gateway, budget=100000):
    gateway.transfer_result = {"ok": True, "reference": "TRF-OK", "status": "successful"}
    job_id, tx_id = hold_job(client, employer, craftsman, budget=budget)
    r = client.post(f"/api/jobs/{job_id}/confirm", headers=employer.headers)
    assert r.status_code == 200, r.get_json()
    gateway.transfer_result = {"ok": True, "reference": "TRF-1", "status": "pending"}
    return job_id, tx_id


class TestAccess:
    def test_non_admins_are_refused(self, client, employer, craftsman):
        for path in ("/api/admin/dashboard", "/api/admin/summary", "/api/admin/payments", "/api/admin/audit"):
            assert client.get(path, headers=employer.headers).status_code == 403
            assert client.get(path, headers=craftsman.headers).status_code == 403
        assert client.get("/api/admin/dashboard").status_code == 401


class TestDashboards:
    def test_dashboard_counts(self, client, admin, employer, craftsman, make_user, gateway):
        make_user("craftsman", approved=False)
        hold_job(client, employer, craftsman)
        r = client.get("/api/admin/dashboard", headers=admin.headers)
        assert r.status_code == 200
        data = r.get_json()
        assert data["pending_craftsmen"] == 1
        assert data["jobs"] == 1
        assert data["transactions"]["completed_transactions"] == 1
        assert data["transactions"]["total_revenue"] == 100000.0
        assert data["transactions"]["total_commission"] == 10000.0

    def test_stats(self, client, admin, employer, craftsman):
        assign_job(client, employer, craftsman)
        data = client.get("/api/admin/stats", headers=admin.headers).get_json()
        assert data["employers"] == 1
        assert data["craftsmen"] == 1
        assert data["jobs_by_status"] == {"in-progress": 1}

    def test_payments_and_detail(self, client, admin, employer, craftsman, gateway):
        _, tx_id = hold_job(client, employer, craftsman)
        data = client.get("/api/admin/payments", headers=admin.headers).get_json()
        assert data["transactions"][0]["transaction_id"] == tx_id
        assert data["transactions"][0]["craftsman_name"]
        assert data["logs"]

        r = client.get(f"/api/admin/transactions/{tx_id}", headers=admin.headers)
        assert r.status_code == 200
        assert r.get_json()["logs"][0]["action"] == "DEPOSIT_CONFIRMED"
        assert client.get("/api/admin/transactions/missing", headers=admin.headers).status_code == 404

    def test_escrow_and_completed_views(self, client, admin, employer, craftsman, gateway):
        held_job, _ = hold_job(client, employer, craftsman)
        paid_job, paid_tx = _paid_job(client, employer, craftsman, gateway)

        escrow = client.get("/api/admin/escrow", headers=admin.headers).get_json()["items"]
        assert [j["id"] for j in escrow] == [held_job]
        assert escrow[0]["transaction"]["status"] == "COMPLETED"

        done = client.get("/api/admin/completed", headers=admin.headers).get_json()["items"]
        assert [t["transaction_id"] for t in done] == [paid_tx]
        assert done[0]["job_title"] == "Fix kitchen sink"


class TestWithdraw:
    def test_summary_counts_only_paid_commission(self, client, admin, employer, craftsman, gateway):
        hold_job(client, employer, craftsman)
        _paid_job(client, employer, craftsman, gateway, budget=250000)
        data = client.get("/api/admin/summary", headers=admin.headers).get_json()
        assert data["total_fees"] == 25000.0
        assert data["available"] == 25000.0

    def test_cannot_exceed_available(self, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 10001, "phone": "0772555000"})
        assert r.status_code == 400
        assert r.get_json()["available"] == 10000.0
        assert gateway.count("transfer") == 1

    def test_pending_withdrawal_reduces_available(self, app, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 6000, "phone": "0772555000"})
        assert r.status_code == 200
        tx = r.get_json()["transaction"]
        assert tx["kind"] == "admin_withdrawal"
        assert tx["status"] == "PENDING"
        assert tx["craftsman_phone"] == "256772555000"
        assert r.get_json()["summary"]["pending_withdrawals"] == 6000.0
        assert r.get_json()["summary"]["available"] == 4000.0

        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 5000, "phone": "0772555000"})
        assert r.status_code == 400

        with app.app_context():
            assert AuditLog.query.filter_by(action="admin_withdrawal").count() == 1

    def test_instant_withdrawal_settles(self, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        gateway.transfer_result = {"ok": True, "reference": "WD-1", "status": "successful"}
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 10000, "phone": "0772555000"})
        assert r.status_code == 200
        assert r.get_json()["transaction"]["status"] == "COMPLETED"
        assert r.get_json()["summary"]["withdrawn"] == 10000.0
        assert r.get_json()["summary"]["available"] == 0.0

    def test_gateway_refusal(self, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        gateway.transfer_result = {"ok": False, "error": "insufficient float"}
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 5000, "phone": "0772555000"})
        assert r.status_code == 502
        assert r.get_json()["transaction"]["status"] == "FAILED"
        summary = client.get("/api/admin/summary", headers=admin.headers).get_json()
        assert summary["available"] == 10000.0

    def test_timed_out_withdrawal_stays_pending(self, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        gateway.transfer_result = {"ok": False, "error": "Read timed out", "outcome_unknown": True}
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 6000, "phone": "0772555000"})
        assert r.status_code == 202
        assert r.get_json()["transaction"]["status"] == "PENDING"
        assert r.get_json()["summary"]["available"] == 4000.0

    def test_balance_is_read_under_lock(self, app, client, admin, employer, craftsman, gateway, monkeypatch):
        _paid_job(client, employer, craftsman, gateway)
        real_lock = segment_admin._fee_lock
        taken = []

        def lock():
            taken.append(True)
            return real_lock()

        monkeypatch.setattr(segment_admin, "_fee_lock", lock)
        r = client.post("/api/admin/withdraw", headers=admin.headers, json={"amount": 1000, "phone": "0772555000"})
        assert r.status_code == 200
        assert taken == [True]

        with app.app_context():
            sql = str(real_lock().statement.compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" in sql

    def test_validation(self, client, admin):
        assert client.post("/api/admin/withdraw", headers=admin.headers,
                           json={"amount": 0, "phone": "0772555000"}).status_code == 400
        assert client.post("/api/admin/withdraw", headers=admin.headers,
                           json={"amount": 100, "phone": "12"}).status_code == 400


class TestCraftsmanModeration:
    def test_approve(self, app, client, admin, make_user):
        pending = make_user("craftsman", approved=False)
        r = client.post(f"/api/admin/craftsmen/{pending.id}/approve", headers=admin.headers)
        assert r.status_code == 200
        assert r.get_json()["user"]["approved"] is True
        notes = client.get("/api/notifications", headers=pending.headers).get_json()["items"]
        assert notes[0]["title"] == "Profile approved"

    def test_reject_deletes_pending_profile(self, app, client, admin, make_user):
        pending = make_user("craftsman", approved=False)
        r = client.post(f"/api/admin/craftsmen/{pending.id}/reject", headers=admin.headers)
        assert r.status_code == 200
        with app.app_context():
            assert db.session.get(User, pending.id) is None
            assert AuditLog.query.filter_by(action="craftsman_rejected", target_id=pending.id).count() == 1

    def test_reject_refuses_approved_or_with_history(self, app, client, admin, craftsman, employer, make_user):
        assert client.post(f"/api/admin/craftsmen/{craftsman.id}/reject", headers=admin.headers).status_code == 409

        veteran = make_user("craftsman", approved=False)
        job_id = post_job(client, employer)
        with app.app_context():
            db.session.add(Application(job_id=job_id, craftsman_id=veteran.id, status="rejected"))
            db.session.commit()
        r = client.post(f"/api/admin/craftsmen/{veteran.id}/reject", headers=admin.headers)
        assert r.status_code == 409

    def test_lists_and_user_detail(self, client, admin, craftsman, employer, make_user):
        make_user("craftsman", approved=False)
        items = client.get("/api/admin/craftsmen?approved=false", headers=admin.headers).get_json()["items"]
        assert len(items) == 1 and items[0]["approved"] is False
        assert len(client.get("/api/admin/employers", headers=admin.headers).get_json()["items"]) == 1
        r = client.get(f"/api/admin/users/{employer.id}", headers=admin.headers)
        assert r.get_json()["user"]["email"] == employer.email
        assert client.get("/api/admin/users/9999", headers=admin.headers).status_code == 404

    def test_export_is_attachment(self, client, admin, employer):
        r = client.get("/api/admin/export", headers=admin.headers)
        assert r.status_code == 200
        assert "attachment" in r.headers["Content-Disposition"]
        emails = {u["email"] for u in r.get_json()["users"]}
        assert {admin.email, employer.email} <= emails
        audit = client.get("/api/admin/audit?action=users_exported", headers=admin.headers).get_json()["items"]
        assert len(audit) == 1


class TestEscrowSweep:
    def _run(self, client, admin):
        r = client.post("/api/admin/escrow/run", headers=admin.headers, json={})
        assert r.status_code == 200
        return r.get_json()

    def test_expires_stale_pending_deposit(self, app, client, admin, employer, craftsman, gateway):
        job_id = assign_job(client, employer, craftsman)
        tx_id = initiate(client, employer, job_id).get_json()["transaction_id"]
        app.config["PENDING_PAYMENT_TTL_MINUTES"] = 0

        res = self._run(client, admin)
        assert res["ok"] is True
        assert res["processed"] == 1
        assert res["expired"] == 1
        with app.app_context():
            assert Transaction.query.filter_by(transaction_id=tx_id).one().status == "FAILED"

    def test_fresh_pending_deposit_is_left_alone(self, client, admin, employer, craftsman, gateway):
        job_id = assign_job(client, employer, craftsman)
        initiate(client, employer, job_id)
        res = self._run(client, admin)
        assert res["skipped"] == 1
        assert gateway.count("verify") == 1

    def test_holds_deposit_confirmed_by_provider(self, app, client, admin, employer, craftsman, gateway):
        job_id = assign_job(client, employer, craftsman)
        tx_id = initiate(client, employer, job_id).get_json()["transaction_id"]
        gateway.verify_result = {"ok": True, "status": "successful", "amount": 100000, "currency": "UGX",
                                 "id": "9002"}
        res = self._run(client, admin)
        assert res["held"] == 1
        with app.app_context():
            assert Transaction.query.filter_by(transaction_id=tx_id).one().status == "COMPLETED"

    def test_settles_polled_transfer(self, app, client, admin, employer, craftsman, gateway):
        job_id, tx_id = hold_job(client, employer, craftsman)
        client.post(f"/api/jobs/{job_id}/confirm", headers=employer.headers)
        gateway.transfer_status_result = {"ok": True, "status": "successful"}

        res = self._run(client, admin)
        assert res["paid"] == 1
        assert ("transfer_status", "TRF-1") in gateway.calls
        with app.app_context():
            assert Transaction.query.filter_by(transaction_id=tx_id).one().status == "PAID_TO_CRAFTSMAN"

    def test_retries_failed_disbursement(self, app, client, admin, employer, craftsman, gateway):
        job_id, tx_id = hold_job(client, employer, craftsman)
        gateway.transfer_result = {"ok": False, "error": "payee not registered"}
        client.post(f"/api/jobs/{job_id}/confirm", headers=employer.headers)

        gateway.transfer_result = {"ok": True, "reference": "TRF-2", "status": "pending"}
        res = self._run(client, admin)
        assert res["retried"] == 1
        assert gateway.calls[-1][1] == f"{tx_id}-disbursement-2"
        with app.app_context():
            tx = Transaction.query.filter_by(transaction_id=tx_id).one()
            assert tx.status == "DISBURSEMENT_INITIATED"
            assert tx.confirmed_by == "employer"

    def test_gives_up_after_max_attempts(self, app, client, admin, employer, craftsman, gateway):
        app.config["DISBURSEMENT_MAX_ATTEMPTS"] = 1
        job_id, _ = hold_job(client, employer, craftsman)
        gateway.transfer_result = {"ok": False, "error": "payee not registered"}
        client.post(f"/api/jobs/{job_id}/confirm", headers=employer.headers)

        res = self._run(client, admin)
        assert res["retried"] == 0
        assert res["skipped"] == 1
        assert gateway.count("transfer") == 1

    def test_sweep_is_audited(self, app, client, admin):
        self._run(client, admin)
        with app.app_context():
            row = AuditLog.query.filter_by(action="escrow_sweep").one()
            assert row.actor_user_id == admin.id

    def test_settles_pending_withdrawal(self, app, client, admin, employer, craftsman, gateway):
        _paid_job(client, employer, craftsman, gateway)
        gateway.transfer_result = {"ok": True, "reference": "WD-7", "status": "pending"}
        tx_id = client.post("/api/admin/withdraw", headers=admin.headers,
                            json={"amount": 4000, "phone": "0772555000"}).get_json()["transaction"]["transaction_id"]
        gateway.transfer_status_result = {"ok": True, "status": "successful"}

        res = self._run(client, admin)
        assert res["paid"] == 1
        assert ("transfer_status", "WD-7") in gateway.calls
        with app.app_context():
            assert Transaction.query.filter_by(transaction_id=tx_id).one().status == "COMPLETED"
