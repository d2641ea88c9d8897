from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from craftsmart.escrow import (
    EscrowError,
    apply_deposit_result,
    fail_deposit,
    release_funds,
    settle_disbursement,
    settle_withdrawal,
)
from craftsmart.extensions import db
from craftsmart.models import Job, Transaction
from craftsmart.utils.audit import log_audit
from craftsmart.utils.payment_gateway import get_client
from craftsmart.utils.payment_logs import create_log

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _reconcile_pending(tx: Transaction, ttl: timedelta, counters: dict) -> None:
    expired = (tx.created_at or _now()) + ttl <= _now()
    # Also covers charges whose initiate call timed out and left no gateway reference
    result = get_client(tx.provider).verify(tx.transaction_id, reference=tx.payment_reference)
    if result.get("ok"):
        outcome = apply_deposit_result(tx, result, "SWEEP")
        if outcome == "held":
            counters["held"] += 1
            return
        if outcome == "failed":
            counters["failed"] += 1
            return
    else:
        create_log(tx, f"{tx.provider.upper()}_VERIFY", "ERROR", error_message=result.get("error"))
    if expired:
        if fail_deposit(tx, reason="payment not confirmed in time"):
            counters["expired"] += 1
        return
    counters["skipped"] += 1


def _poll_transfer(tx: Transaction, counters: dict) -> None:
    if not tx.disbursement_reference:
        counters["skipped"] += 1
        return
    res = get_client(tx.provider).transfer_status(tx.disbursement_reference)
    if not res.get("ok") or res.get("status") == "pending":
        counters["skipped"] += 1
        return
    if settle_disbursement(tx, res["status"] == "successful", note="settled by sweep"):
        counters["paid" if res["status"] == "successful" else "failed"] += 1


def _poll_withdrawal(tx: Transaction, counters: dict) -> None:
    res = get_client(tx.provider).transfer_status(tx.disbursement_reference or tx.transaction_id)
    if not res.get("ok") or res.get("status") == "pending":
        counters["skipped"] += 1
        return
    if settle_withdrawal(tx, res["status"] == "successful"):
        counters["paid" if res["status"] == "successful" else "failed"] += 1


def _retry_disbursement(tx: Transaction, max_attempts: int, counters: dict) -> None:
    if int(tx.disbursement_attempts or 0) >= max_attempts:
        counters["skipped"] += 1
        return
    job = db.session.get(Job, int(tx.job_id)) if tx.job_id else None
    if job is None:
        counters["skipped"] += 1
        return
    try:
        release_funds(job, actor_id=None, confirmed_by=tx.confirmed_by or "system")
    except EscrowError as e:
        logger.info("disbursement retry for %s did not go through: %s", tx.transaction_id, e.message)
        counters["failed"] += 1
        return
    counters["retried"] += 1


def run_escrow_sweep(*, limit: int = 200, actor_id: int | None = None) -> dict:
    """Push stuck escrow transactions forward.

    - PENDING platform fee withdrawals are polled like transfers.
    - PENDING deposits are re-verified with the provider, and fail once they
      are older than PENDING_PAYMENT_TTL_MINUTES.
    - DISBURSEMENT_INITIATED transfers are polled and settled.
    - DISBURSEMENT_FAILED payouts are retried until DISBURSEMENT_MAX_ATTEMPTS.
    """
    ttl = timedelta(minutes=int(current_app.config.get("PENDING_PAYMENT_TTL_MINUTES", 30)))
    max_attempts = int(current_app.config.get("DISBURSEMENT_MAX_ATTEMPTS", 3))

    counters = {"processed": 0, "held": 0, "expired": 0, "paid": 0, "retried": 0,
                "failed": 0, "skipped": 0, "errors": 0}

    rows = (
        Transaction.query.filter(
            Transaction.status.in_(("PENDING", "DISBURSEMENT_INITIATED", "DISBURSEMENT_FAILED"))
        )
        .order_by(Transaction.id.asc())
        .limit(int(limit))
        .all()
    )

    for tx in rows:
        counters["processed"] += 1
        try:
            if tx.status == "PENDING" and tx.kind == "admin_withdrawal":
                _poll_withdrawal(tx, counters)
            elif tx.status == "PENDING":
                _reconcile_pending(tx, ttl, counters)
            elif tx.status == "DISBURSEMENT_INITIATED":
                _poll_transfer(tx, counters)
            elif tx.kind == "escrow_deposit":
                _retry_disbursement(tx, max_attempts, counters)
            else:
                counters["skipped"] += 1
        except Exception:
            # one bad row must not stop the sweep
            logger.exception("escrow sweep failed on %s", tx.transaction_id)
            db.session.rollback()
            counters["errors"] += 1

    log_audit(actor_id, "escrow_sweep", target_type="transaction", meta=counters)
    db.session.commit()

    return {"ok": True, **counters, "ts": _now().isoformat()}
