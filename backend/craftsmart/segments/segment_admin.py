from __future__ import annotations

import json
import uuid
from datetime import datetime

from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import func

from craftsmart.auth import role_required
from craftsmart.escrow import SETTLED_STATUSES, settle_withdrawal
from craftsmart.extensions import db
from craftsmart.jobs.escrow_runner import run_escrow_sweep
from craftsmart.models import Application, AuditLog, Job, Review, Transaction, User
from craftsmart.utils.audit import log_audit
from craftsmart.utils.notify import queue_in_app
from craftsmart.utils.payment_gateway import get_client, provider_name
from craftsmart.utils.payment_logs import create_log, logs_for_transaction, recent_logs
from craftsmart.utils.phone import normalize_msisdn

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


def _limit(default: int = 50, cap: int = 500) -> int:
    try:
        n = int(request.args.get("limit") or default)
    except (TypeError, ValueError):
        n = default
    return max(1, min(cap, n))


def _sum(column, *criteria) -> float:
    return float(db.session.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar() or 0)


def _transaction_stats() -> dict:
    deposits = Transaction.kind == "escrow_deposit"
    settled = Transaction.status.in_(SETTLED_STATUSES)
    return {
        "total_transactions": Transaction.query.filter(deposits).count(),
        "completed_transactions": Transaction.query.filter(deposits, settled).count(),
        "total_revenue": _sum(Transaction.total_amount, deposits, settled),
        "total_commission": _sum(Transaction.commission_amount, deposits, settled),
    }


def _fee_summary() -> dict:
    total = _sum(Transaction.commission_amount, Transaction.kind == "escrow_deposit",
                 Transaction.status == "PAID_TO_CRAFTSMAN")
    withdrawn = _sum(Transaction.total_amount, Transaction.kind == "admin_withdrawal",
                     Transaction.status == "COMPLETED")
    pending = _sum(Transaction.total_amount, Transaction.kind == "admin_withdrawal",
                   Transaction.status == "PENDING")
    return {
        "total_fees": total,
        "withdrawn": withdrawn,
        "pending_withdrawals": pending,
        "available": max(0.0, total - withdrawn - pending),
        "currency": current_app.config.get("PAYMENT_CURRENCY", "UGX"),
    }


def _fee_lock():
    """Lock the admin rows. Every withdrawal takes this lock before reading the balance."""
    return User.query.filter_by(role="admin").order_by(User.id.asc()).with_for_update()


def _names(tx_or_job) -> dict:
    employer = db.session.get(User, int(tx_or_job.employer_id)) if tx_or_job.employer_id else None
    craftsman = db.session.get(User, int(tx_or_job.craftsman_id)) if tx_or_job.craftsman_id else None
    return {
        "employer_name": employer.name if employer else "",
        "craftsman_name": craftsman.name if craftsman else "",
    }


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------

@admin_bp.get("/dashboard")
@role_required("admin")
def dashboard():
    return jsonify({
        "pending_craftsmen": User.query.filter_by(role="craftsman", approved=False).count(),
        "users": User.query.count(),
        "jobs": Job.query.count(),
        "reviews": Review.query.count(),
        "pending_reviews": Review.query.filter_by(approved=False).count(),
        "transactions": _transaction_stats(),
    }), 200


@admin_bp.get("/payments")
@role_required("admin")
def payments_overview():
    limit = _limit()
    rows = Transaction.query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()
    return jsonify({
        "transactions": [{**t.to_dict(), **_names(t)} for t in rows],
        "logs": [l.to_dict() for l in recent_logs(limit)],
        "stats": _transaction_stats(),
    }), 200


@admin_bp.get("/transactions/<transaction_id>")
@role_required("admin")
def transaction_detail(transaction_id: str):
    tx = Transaction.query.filter_by(transaction_id=transaction_id).first()
    if not tx:
        return jsonify({"message": "Transaction not found"}), 404
    logs = logs_for_transaction(tx)
    return jsonify({"transaction": {**tx.to_dict(), **_names(tx)}, "logs": [l.to_dict() for l in logs]}), 200


@admin_bp.get("/stats")
@role_required("admin")
def stats():
    by_status = dict(db.session.query(Job.status, func.count(Job.id)).group_by(Job.status).all())
    return jsonify({
        "employers": User.query.filter_by(role="employer").count(),
        "craftsmen": User.query.filter_by(role="craftsman").count(),
        "jobs_by_status": {k: int(v) for k, v in by_status.items()},
    }), 200


# ---------------------------------------------------------------------------
# Platform fees
# ---------------------------------------------------------------------------

@admin_bp.get("/summary")
@role_required("admin")
def fee_summary():
    return jsonify(_fee_summary()), 200


@admin_bp.post("/withdraw")
@role_required("admin")
def withdraw():
    data = request.get_json(silent=True) or {}
    try:
        amount = float(data.get("amount") or 0)
    except (TypeError, ValueError):
        return jsonify({"message": "amount must be a number"}), 400
    phone = normalize_msisdn(data.get("phone"))
    if amount <= 0:
        return jsonify({"message": "amount must be greater than 0"}), 400
    if not phone:
        return jsonify({"message": "A valid phone is required"}), 400

    amount = float(int(round(amount)))
    # Held until the PENDING row below is committed, so a concurrent request
    # sees it before it reads the balance
    _fee_lock().all()
    summary = _fee_summary()
    if amount > summary["available"]:
        return jsonify({"message": "Amount exceeds available platform fees", "available": summary["available"]}), 400

    provider = provider_name()
    if provider == "direct":
        provider = "mtn"
    tx = Transaction(
        transaction_id=str(uuid.uuid4()),
        kind="admin_withdrawal",
        provider=provider,
        total_amount=amount,
        disbursement_amount=amount,
        currency=summary["currency"],
        craftsman_phone=phone,  # payee
        status="PENDING",
        confirmed_by="admin",
    )
    db.session.add(tx)
    db.session.commit()

    result = get_client(provider).transfer(tx.transaction_id, amount, phone,
                                           narration="CraftSmart platform fees", beneficiary_name="CraftSmart")
    log_audit(int(current_user.id), "admin_withdrawal", target_type="transaction", target_id=int(tx.id),
              meta={"amount": amount, "phone": phone, "ok": bool(result.get("ok"))})

    if not result.get("ok") and result.get("outcome_unknown"):
        create_log(tx, f"{provider.upper()}_WITHDRAW", "UNKNOWN", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error"))
        tx.disbursement_reference = str(result.get("reference") or tx.transaction_id)[:128]
        db.session.add(tx)
        db.session.commit()
        current_app.logger.warning("admin withdrawal outcome unknown: tx=%s error=%s", tx.transaction_id,
                                   result.get("error"))
        return jsonify({"message": "Payment provider did not answer. The withdrawal stays pending.",
                        "transaction": tx.to_dict(), "summary": _fee_summary()}), 202

    if not result.get("ok") or result.get("status") == "failed":
        create_log(tx, f"{provider.upper()}_WITHDRAW", "ERROR", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error"))
        settle_withdrawal(tx, False)
        return jsonify({"message": "Withdrawal failed", "error": result.get("error") or "",
                        "transaction": tx.to_dict()}), 502

    create_log(tx, f"{provider.upper()}_WITHDRAW", "INITIATED", request_data=result.get("request"),
               response_data=result.get("raw"))
    tx.disbursement_reference = str(result.get("reference") or tx.transaction_id)[:128]
    db.session.add(tx)
    db.session.commit()
    if result.get("status") == "successful":
        settle_withdrawal(tx, True)
    current_app.logger.info("admin %s withdrew %s to %s (tx=%s)", current_user.id, amount, phone, tx.transaction_id)
    return jsonify({"transaction": tx.to_dict(), "summary": _fee_summary()}), 200


# ---------------------------------------------------------------------------
# Escrow views
# ---------------------------------------------------------------------------

@admin_bp.get("/escrow")
@role_required("admin")
def escrow_jobs():
    rows = Job.query.filter_by(status="paid-in-escrow").order_by(Job.escrow_held_at.asc()).all()
    items = []
    for j in rows:
        tx = (
            Transaction.query.filter_by(job_id=j.id, kind="escrow_deposit")
            .order_by(Transaction.id.desc())
            .first()
        )
        items.append({**j.to_dict(), **_names(j), "transaction": tx.to_dict() if tx else None})
    return jsonify({"items": items}), 200


@admin_bp.get("/completed")
@role_required("admin")
def completed_payouts():
    rows = (
        Transaction.query.filter_by(kind="escrow_deposit", status="PAID_TO_CRAFTSMAN")
        .order_by(Transaction.paid_at.desc())
        .limit(_limit(100))
        .all()
    )
    items = []
    for t in rows:
        job = db.session.get(Job, int(t.job_id)) if t.job_id else None
        items.append({**t.to_dict(), **_names(t), "job_title": job.title if job else ""})
    return jsonify({"items": items}), 200


@admin_bp.get("/actions")
@role_required("admin")
def admin_actions():
    withdrawals = (
        Transaction.query.filter_by(kind="admin_withdrawal")
        .order_by(Transaction.created_at.desc())
        .limit(_limit(100))
        .all()
    )
    releases = (
        Transaction.query.filter_by(kind="escrow_deposit", confirmed_by="admin")
        .order_by(Transaction.updated_at.desc())
        .limit(_limit(100))
        .all()
    )
    return jsonify({
        "withdrawals": [t.to_dict() for t in withdrawals],
        "releases": [{**t.to_dict(), **_names(t)} for t in releases],
    }), 200


@admin_bp.post("/escrow/run")
@role_required("admin")
def run_escrow():
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit") or 200)
    except (TypeError, ValueError):
        limit = 200
    res = run_escrow_sweep(limit=max(1, min(1000, limit)), actor_id=int(current_user.id))
    return jsonify(res), 200


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def _users_by_role(role: str):
    q = User.query.filter_by(role=role)
    approved = (request.args.get("approved") or "").strip().lower()
    if approved in ("true", "1", "yes"):
        q = q.filter(User.approved.is_(True))
    elif approved in ("false", "0", "no"):
        q = q.filter(User.approved.is_(False))
    return [u.to_dict() for u in q.order_by(User.created_at.desc()).all()]


@admin_bp.get("/craftsmen")
@role_required("admin")
def list_craftsmen():
    return jsonify({"items": _users_by_role("craftsman")}), 200


@admin_bp.get("/employers")
@role_required("admin")
def list_employers():
    return jsonify({"items": _users_by_role("employer")}), 200


@admin_bp.get("/users/<int:user_id>")
@role_required("admin")
def get_user(user_id: int):
    u = db.session.get(User, user_id)
    if not u:
        return jsonify({"message": "User not found"}), 404
    return jsonify({"user": u.to_dict()}), 200


@admin_bp.post("/craftsmen/<int:user_id>/approve")
@role_required("admin")
def approve_craftsman(user_id: int):
    u = db.session.get(User, user_id)
    if not u or u.role != "craftsman":
        return jsonify({"message": "Craftsman not found"}), 404
    u.approved = True
    db.session.add(u)
    log_audit(int(current_user.id), "craftsman_approved", target_type="user", target_id=int(u.id))
    queue_in_app(u.id, "Profile approved", "Your craftsman profile is approved. You can now apply for jobs.")
    db.session.commit()
    return jsonify({"user": u.to_dict()}), 200


@admin_bp.post("/craftsmen/<int:user_id>/reject")
@role_required("admin")
def reject_craftsman(user_id: int):
    u = db.session.get(User, user_id)
    if not u or u.role != "craftsman":
        return jsonify({"message": "Craftsman not found"}), 404
    if u.approved:
        return jsonify({"message": "Craftsman is already approved"}), 409
    has_history = (
        Application.query.filter_by(craftsman_id=u.id).first() is not None
        or Job.query.filter_by(craftsman_id=u.id).first() is not None
    )
    if has_history:
        return jsonify({"message": "Craftsman has job history and cannot be deleted"}), 409

    log_audit(int(current_user.id), "craftsman_rejected", target_type="user", target_id=int(u.id),
              meta={"email": u.email, "phone": u.phone})
    db.session.delete(u)
    db.session.commit()
    return jsonify({"ok": True, "deleted": user_id}), 200


@admin_bp.get("/export")
@role_required("admin")
def export_users():
    users = [u.to_dict() for u in User.query.order_by(User.id.asc()).all()]
    body = json.dumps({"exported_at": datetime.utcnow().isoformat(), "users": users}, indent=2)
    log_audit(int(current_user.id), "users_exported", meta={"count": len(users)})
    db.session.commit()
    return Response(
        body,
        mimetype="application/json",
        headers={"Content-Disposition": "attachment; filename=craftsmart-users.json"},
    )


@admin_bp.get("/audit")
@role_required("admin")
def audit_log():
    q = AuditLog.query
    action = (request.args.get("action") or "").strip()
    if action:
        q = q.filter_by(action=action)
    rows = q.order_by(AuditLog.id.desc()).limit(_limit(100)).all()
    return jsonify({"items": [r.to_dict() for r in rows]}), 200
