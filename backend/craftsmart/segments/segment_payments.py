from __future__ import annotations

import uuid

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import IntegrityError

from craftsmart.auth import role_required
from craftsmart.escrow import (
    apply_deposit_result,
    claim_transaction,
    fail_deposit,
    find_transaction,
    is_current_attempt,
    is_disbursement_reference,
    settle_disbursement,
    settle_withdrawal,
)
from craftsmart.extensions import db
from craftsmart.models import Job, Transaction, User, WebhookEvent
from craftsmart.utils.commission import compute_split
from craftsmart.utils.flutterwave_client import normalize_status as flw_status, verify_webhook_hash
from craftsmart.utils.airtel_client import normalize_status as airtel_status
from craftsmart.utils.mtn_client import normalize_status as mtn_status
from craftsmart.utils.idempotency import lookup_response, store_response
from craftsmart.utils.payment_gateway import get_client, provider_for_method, verify_callback_signature
from craftsmart.utils.payment_logs import create_log, logs_for_transaction
from craftsmart.utils.phone import detect_network, normalize_msisdn

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payment")

PAYMENT_METHODS = ("MTN", "AIRTEL")


def _can_view(tx: Transaction) -> bool:
    if current_user.role == "admin":
        return True
    return int(current_user.id) in (int(tx.employer_id or 0), int(tx.craftsman_id or 0))


# ---------------------------------------------------------------------------
# Deposit
# ---------------------------------------------------------------------------

@payments_bp.post("/initiate")
@role_required("employer")
def initiate_payment():
    data = request.get_json(silent=True) or {}

    idem = lookup_response(int(current_user.id), "/api/payment/initiate", data)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    def _reply(body: dict, code: int):
        if idem_row is not None:
            store_response(idem_row, body, code)
        return jsonify(body), code

    method = (data.get("payment_method") or "").strip().upper()
    employer_phone = normalize_msisdn(data.get("employer_phone"))
    try:
        job_id = int(data.get("job_id"))
    except (TypeError, ValueError):
        job_id = None
    if not job_id or not method or not data.get("employer_phone"):
        return _reply({"message": "job_id, payment_method and employer_phone are required"}, 400)
    if method not in PAYMENT_METHODS:
        return _reply({"message": "payment_method must be MTN or AIRTEL"}, 400)
    if not employer_phone:
        return _reply({"message": "Invalid employer_phone"}, 400)
    network = detect_network(employer_phone)
    if network and network != method:
        return _reply({"message": f"employer_phone is not an {method} number"}, 400)

    job = db.session.get(Job, job_id)
    if not job:
        return _reply({"message": "Job not found"}, 404)
    if int(job.employer_id) != int(current_user.id):
        return _reply({"message": "Forbidden"}, 403)
    if job.status != "in-progress" or not job.craftsman_id:
        return _reply({"message": "Job must be in progress with an assigned craftsman"}, 409)

    craftsman = db.session.get(User, int(job.craftsman_id))
    amount = float(job.budget or 0)
    max_amount = float(current_app.config.get("PAYMENT_MAX_AMOUNT") or 0)
    if amount <= 0:
        return _reply({"message": "Job budget must be greater than 0"}, 400)
    if max_amount > 0 and amount > max_amount:
        return _reply({"message": f"Amount exceeds the maximum of {int(max_amount)} per payment"}, 400)

    split = compute_split(amount)
    provider = provider_for_method(method)

    tx = (
        Transaction.query.filter_by(job_id=job.id, kind="escrow_deposit")
        .order_by(Transaction.id.desc())
        .first()
    )
    if tx is not None:
        if tx.status not in ("PENDING", "FAILED") or not claim_transaction(tx, "retry_charge"):
            return _reply({"message": f"Job already has a payment in status {tx.status}"}, 409)
        # The gateway rejects a reused merchant reference
        tx.transaction_id = str(uuid.uuid4())
        tx.payment_reference = None
        tx.external_transaction_id = None
    else:
        tx = Transaction(
            transaction_id=str(uuid.uuid4()),
            kind="escrow_deposit",
            job_id=job.id,
            employer_id=int(current_user.id),
            craftsman_id=int(job.craftsman_id),
            status="PENDING",
        )

    tx.provider = provider
    tx.total_amount = split["total_amount"]
    tx.commission_amount = split["commission_amount"]
    tx.disbursement_amount = split["disbursement_amount"]
    tx.currency = current_app.config.get("PAYMENT_CURRENCY", "UGX")
    tx.employer_phone = employer_phone
    tx.craftsman_phone = craftsman.phone if craftsman else None
    tx.payment_method = method
    db.session.add(tx)
    db.session.commit()

    client = get_client(provider)
    result = client.charge(
        tx.transaction_id,
        tx.total_amount,
        employer_phone,
        network=method,
        email=current_user.email or "",
        fullname=current_user.name or "",
    )
    action = f"{provider.upper()}_INITIATE"
    if not result.get("ok") and result.get("outcome_unknown"):
        # The charge may exist at the gateway; leave it to the callback or the sweep
        create_log(tx, action, "UNKNOWN", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error"))
        tx.payment_reference = str(result.get("reference") or "")[:128] or None
        db.session.add(tx)
        db.session.commit()
        current_app.logger.warning("payment initiate outcome unknown: tx=%s error=%s", tx.transaction_id,
                                   result.get("error"))
        return _reply({
            "message": "Payment provider did not answer. The payment will be confirmed or expire shortly.",
            "transaction_id": tx.transaction_id,
            "status": tx.status,
        }, 202)

    if not result.get("ok"):
        create_log(tx, action, "ERROR", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error"))
        fail_deposit(tx, reason=result.get("error"))
        current_app.logger.warning("payment initiate failed: tx=%s error=%s", tx.transaction_id, result.get("error"))
        return _reply({
            "message": "Payment provider rejected the charge",
            "error": result.get("error") or "",
            "transaction_id": tx.transaction_id,
            "status": tx.status,
        }, 502)

    create_log(tx, action, "SUCCESS", request_data=result.get("request"),
               response_data=result.get("raw"))
    tx.payment_reference = str(result.get("reference") or "")[:128] or None
    db.session.add(tx)
    db.session.commit()
    current_app.logger.info("payment initiated: tx=%s job=%s provider=%s", tx.transaction_id, job.id, provider)

    if result.get("status") == "successful":
        apply_deposit_result(tx, {"status": "successful", "id": result.get("reference")}, "CHARGE")

    return _reply({
        "ok": True,
        "transaction_id": tx.transaction_id,
        "status": tx.status,
        "provider": provider,
        "reference": tx.payment_reference or "",
        "redirect_url": result.get("redirect_url") or "",
        "amount": tx.total_amount,
        "commission_amount": tx.commission_amount,
        "disbursement_amount": tx.disbursement_amount,
        "currency": tx.currency,
    }, 200)


# ---------------------------------------------------------------------------
# Gateway callbacks
# ---------------------------------------------------------------------------

def _record_event(provider: str, event_id: str, event_type: str, reference: str) -> WebhookEvent | None:
    """Store the event id; None means it was seen before."""
    if WebhookEvent.query.filter_by(provider=provider, event_id=event_id).first():
        return None
    ev = WebhookEvent(provider=provider, event_id=event_id[:128], event_type=event_type[:64],
                      reference=(reference or "")[:128])
    try:
        db.session.add(ev)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return ev


def _forget_event(ev: WebhookEvent) -> None:
    # Let the provider's retry be processed again
    db.session.rollback()
    db.session.delete(ev)
    db.session.commit()


def _apply_update(tx: Transaction, reference: str, status: str, source: str, amount=None,
                  currency: str | None = None, external_id: str | None = None) -> str:
    if tx.kind == "admin_withdrawal":
        if status == "pending":
            return "pending"
        return "settled" if settle_withdrawal(tx, status == "successful") else "noop"
    if is_disbursement_reference(reference, tx):
        if status == "pending":
            return "pending"
        if status == "failed" and not is_current_attempt(tx, reference):
            create_log(tx, f"{source}_STALE_TRANSFER", "IGNORED",
                       error_message=f"{reference} is not the latest attempt")
            db.session.commit()
            return "stale"
        ok = settle_disbursement(tx, status == "successful", note=f"{source} callback", reference=reference)
        return "settled" if ok else "noop"
    return apply_deposit_result(
        tx,
        {"status": status, "amount": amount, "currency": currency, "id": external_id},
        source,
    )


def _handle_callback(provider: str, event_id: str, event_type: str, reference: str, status: str,
                     payload: dict, amount=None, currency: str | None = None, external_id: str | None = None):
    tx = find_transaction(reference)
    if tx is None:
        current_app.logger.info("%s callback for unknown reference %s", provider, reference)
        return jsonify({"ok": True, "ignored": True}), 200

    ev = _record_event(provider, event_id, event_type, reference)
    if ev is None:
        return jsonify({"ok": True, "replay": True}), 200

    create_log(tx, f"{provider.upper()}_WEBHOOK", "RECEIVED", response_data=payload)
    db.session.commit()
    try:
        outcome = _apply_update(tx, reference, status, f"{provider.upper()}_WEBHOOK", amount=amount,
                                currency=currency, external_id=external_id)
    except Exception:
        _forget_event(ev)
        raise
    current_app.logger.info("%s callback %s: tx=%s outcome=%s", provider, event_type, tx.transaction_id, outcome)
    return jsonify({"ok": True, "outcome": outcome}), 200


@payments_bp.post("/webhook")
def flutterwave_webhook():
    if not verify_webhook_hash(request.headers.get("verif-hash"), current_app.config.get("FLW_SECRET_HASH", "")):
        return jsonify({"message": "Invalid webhook signature"}), 401

    payload = request.get_json(silent=True) or {}
    event = (payload.get("event") or payload.get("event.type") or "").strip()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    if event == "charge.completed":
        reference = data.get("tx_ref") or ""
    elif event == "transfer.completed":
        reference = data.get("reference") or ""
    else:
        return jsonify({"ok": True, "ignored": True}), 200

    event_id = f"{event}:{data.get('id') or reference}:{(data.get('status') or '').lower()}"
    return _handle_callback(
        "flutterwave",
        event_id,
        event,
        reference,
        flw_status(data.get("status")),
        payload,
        amount=data.get("amount"),
        currency=data.get("currency"),
        external_id=str(data.get("id") or "") or None,
    )


@payments_bp.post("/callback/mtn")
def mtn_callback():
    if not verify_callback_signature(request.get_data(), request.headers.get("x-signature")):
        return jsonify({"message": "Invalid webhook signature"}), 401

    payload = request.get_json(silent=True) or {}
    reference = (payload.get("externalId") or "").strip()
    if not reference:
        return jsonify({"ok": True, "ignored": True}), 200
    status = (payload.get("status") or "").upper()
    external_id = str(payload.get("financialTransactionId") or "") or None
    return _handle_callback(
        "mtn",
        f"{reference}:{status}:{external_id or ''}",
        "mtn.callback",
        reference,
        mtn_status(status),
        payload,
        amount=payload.get("amount"),
        currency=payload.get("currency"),
        external_id=external_id,
    )


@payments_bp.post("/callback/airtel")
def airtel_callback():
    if not verify_callback_signature(request.get_data(), request.headers.get("x-signature")):
        return jsonify({"message": "Invalid webhook signature"}), 401

    payload = request.get_json(silent=True) or {}
    txn = payload.get("transaction") if isinstance(payload.get("transaction"), dict) else {}
    reference = str(txn.get("id") or "").strip()
    if not reference:
        return jsonify({"ok": True, "ignored": True}), 200
    status_code = (txn.get("status_code") or txn.get("status") or "").upper()
    external_id = str(txn.get("airtel_money_id") or "") or None
    return _handle_callback(
        "airtel",
        f"{reference}:{status_code}:{external_id or ''}",
        "airtel.callback",
        reference,
        airtel_status(status_code),
        payload,
        external_id=external_id,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@payments_bp.get("/verify-transaction/<transaction_id>")
@login_required
def verify_transaction(transaction_id: str):
    tx = Transaction.query.filter_by(transaction_id=transaction_id).first()
    if not tx or not tx.payment_reference:
        return jsonify({"message": "Transaction not found"}), 404
    if not _can_view(tx):
        return jsonify({"message": "Forbidden"}), 403

    client = get_client(tx.provider)
    result = client.verify(tx.transaction_id, reference=tx.payment_reference)
    action = f"{tx.provider.upper()}_VERIFY"
    if not result.get("ok"):
        create_log(tx, action, "ERROR", response_data=result.get("raw"),
                   error_message=result.get("error"))
        db.session.commit()
        return jsonify({"message": "Could not verify with payment provider", "error": result.get("error") or ""}), 502

    create_log(tx, action, "SUCCESS", response_data=result.get("raw"))
    db.session.commit()

    outcome = "noop"
    if tx.status == "PENDING":
        outcome = apply_deposit_result(tx, result, "VERIFY")
    elif tx.status == "DISBURSEMENT_INITIATED" and tx.disbursement_reference:
        transfer = client.transfer_status(tx.disbursement_reference)
        if transfer.get("ok") and transfer.get("status") in ("successful", "failed"):
            settle_disbursement(tx, transfer["status"] == "successful", note="verified with provider")
            outcome = "settled"

    return jsonify({
        "transaction": tx.to_dict(),
        "outcome": outcome,
        "provider": {
            "status": result.get("status"),
            "amount": result.get("amount"),
            "currency": result.get("currency"),
            "id": result.get("id"),
        },
    }), 200


@payments_bp.get("/status/<transaction_id>")
@login_required
def payment_status(transaction_id: str):
    tx = Transaction.query.filter_by(transaction_id=transaction_id).first()
    if not tx:
        return jsonify({"message": "Transaction not found"}), 404
    if not _can_view(tx):
        return jsonify({"message": "Forbidden"}), 403
    logs = logs_for_transaction(tx)
    return jsonify({"transaction": tx.to_dict(), "logs": [l.to_dict() for l in logs]}), 200


@payments_bp.get("/history")
@role_required("employer")
def payment_history():
    rows = (
        Transaction.query.filter_by(employer_id=int(current_user.id), kind="escrow_deposit")
        .order_by(Transaction.created_at.desc())
        .all()
    )
    items = []
    for tx in rows:
        d = tx.to_dict()
        job = db.session.get(Job, int(tx.job_id)) if tx.job_id else None
        craftsman = db.session.get(User, int(tx.craftsman_id)) if tx.craftsman_id else None
        d["job"] = {"id": job.id, "title": job.title, "status": job.status} if job else None
        d["craftsman"] = {"id": craftsman.id, "name": craftsman.name} if craftsman else None
        items.append(d)
    return jsonify({"items": items}), 200


@payments_bp.get("/quote/<int:job_id>")
@login_required
def payment_quote(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    split = compute_split(job.budget)
    return jsonify({
        "job_id": job.id,
        "budget": split["total_amount"],
        "commission_rate": split["rate"],
        "commission_amount": split["commission_amount"],
        "craftsman_amount": split["disbursement_amount"],
        "currency": current_app.config.get("PAYMENT_CURRENCY", "UGX"),
    }), 200
