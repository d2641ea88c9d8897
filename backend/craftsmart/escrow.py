"""Escrow lifecycle: the only place job and transaction statuses change.

Route handlers, webhooks and the sweep call into this module instead of
assigning ``status`` themselves. Moves that would skip a step raise
``TransitionNotAllowed``. Moves that must happen at most once (holding
funds, starting a disbursement, settling it) go through
``claim_transaction``, a conditional UPDATE that only one caller can win.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from sqlalchemy import update

from craftsmart.extensions import db
from craftsmart.models import Job, JobEvent, Transaction, User
from craftsmart.utils.commission import compute_split
from craftsmart.utils.notify import queue_in_app
from craftsmart.utils.payment_gateway import get_client
from craftsmart.utils.payment_logs import create_log

logger = logging.getLogger(__name__)


JOB_TRANSITIONS = {
    "assign": (("open",), "in-progress"),
    "cancel": (("open", "in-progress"), "canceled"),
    "hold_funds": (("in-progress",), "paid-in-escrow"),
    "start_disbursement": (("paid-in-escrow",), "disbursed"),
    "disbursement_failed": (("disbursed",), "paid-in-escrow"),
    "complete": (("disbursed",), "completed"),
}

_JOB_TIMESTAMPS = {
    "assign": "assigned_at",
    "cancel": "canceled_at",
    "hold_funds": "escrow_held_at",
    "start_disbursement": "disbursed_at",
    "complete": "completed_at",
}

TX_TRANSITIONS = {
    "retry_charge": (("PENDING", "FAILED"), "PENDING"),
    "confirm_deposit": (("PENDING",), "COMPLETED"),
    "fail_deposit": (("PENDING",), "FAILED"),
    "start_disbursement": (("COMPLETED", "DISBURSEMENT_FAILED"), "DISBURSEMENT_INITIATED"),
    "disbursement_failed": (("DISBURSEMENT_INITIATED",), "DISBURSEMENT_FAILED"),
    "confirm_disbursement": (("DISBURSEMENT_INITIATED", "DISBURSEMENT_FAILED"), "PAID_TO_CRAFTSMAN"),
}

HELD_STATUSES = ("COMPLETED", "DISBURSEMENT_FAILED")
# Deposit made it through to the platform (used for admin stats)
SETTLED_STATUSES = ("COMPLETED", "DISBURSEMENT_INITIATED", "DISBURSEMENT_FAILED", "PAID_TO_CRAFTSMAN")

_ATTEMPT_RE = re.compile(r"-disbursement-(\d+)$")


class EscrowError(Exception):
    status_code = 409

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class TransitionNotAllowed(EscrowError):
    def __init__(self, entity: str, current: str, event: str):
        super().__init__(f"Cannot {event.replace('_', ' ')}: {entity} is {current}")
        self.entity = entity
        self.current = current
        self.event = event


class GatewayError(EscrowError):
    status_code = 502


def _now() -> datetime:
    return datetime.utcnow()


def can_transition_job(job: Job, event: str) -> bool:
    rule = JOB_TRANSITIONS.get(event)
    return bool(rule) and (job.status or "") in rule[0]


def transition_job(job: Job, event: str, actor_id: int | None = None, note: str | None = None) -> Job:
    rule = JOB_TRANSITIONS.get(event)
    if not rule or (job.status or "") not in rule[0]:
        raise TransitionNotAllowed("job", job.status or "", event)

    prev = job.status
    now = _now()
    job.status = rule[1]
    job.updated_at = now
    stamp = _JOB_TIMESTAMPS.get(event)
    if stamp:
        setattr(job, stamp, now)
    db.session.add(job)
    db.session.add(
        JobEvent(
            job_id=int(job.id),
            actor_user_id=actor_id,
            event=event,
            from_status=prev,
            to_status=job.status,
            note=(note or "")[:250] or None,
        )
    )
    return job


def transition_transaction(tx: Transaction, event: str) -> Transaction:
    rule = TX_TRANSITIONS.get(event)
    if not rule or (tx.status or "") not in rule[0]:
        raise TransitionNotAllowed("transaction", tx.status or "", event)
    tx.status = rule[1]
    tx.updated_at = _now()
    db.session.add(tx)
    return tx


def claim_transaction(tx: Transaction, event: str) -> bool:
    """Move ``tx`` with a conditional UPDATE. False means someone else got there first."""
    rule = TX_TRANSITIONS.get(event)
    if not rule:
        raise TransitionNotAllowed("transaction", tx.status or "", event)

    now = _now()
    res = db.session.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status.in_(rule[0]))
        .values(status=rule[1], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.session.expire(tx, ["status", "updated_at"])
        return False
    tx.status = rule[1]
    tx.updated_at = now
    return True


def held_transaction(job: Job) -> Transaction | None:
    return (
        Transaction.query.filter(
            Transaction.job_id == job.id,
            Transaction.kind == "escrow_deposit",
            Transaction.status.in_(HELD_STATUSES),
        )
        .order_by(Transaction.id.desc())
        .first()
    )


def _job_for(tx: Transaction) -> Job | None:
    if not tx.job_id:
        return None
    return db.session.get(Job, int(tx.job_id))


def _fmt(amount) -> str:
    return f"{int(round(float(amount or 0))):,} UGX"


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

def hold_funds(tx: Transaction, external_id: str | None = None, provider_status: str | None = None) -> bool:
    """Confirm a deposit. Returns False when it was already confirmed (or moved on)."""
    if not claim_transaction(tx, "confirm_deposit"):
        return False

    now = _now()
    tx.webhook_received_at = now
    if external_id:
        tx.external_transaction_id = str(external_id)[:128]
    db.session.add(tx)

    job = _job_for(tx)
    if job is not None:
        job.employer_transaction_id = tx.payment_reference or tx.transaction_id
        if can_transition_job(job, "hold_funds"):
            transition_job(job, "hold_funds", note=f"deposit {tx.transaction_id} confirmed")
        else:
            logger.warning("deposit %s confirmed but job %s is %s", tx.transaction_id, job.id, job.status)

    create_log(tx, "DEPOSIT_CONFIRMED", "SUCCESS",
               response_data={"provider_status": provider_status, "external_id": external_id})

    title = job.title if job is not None else "your job"
    queue_in_app(tx.employer_id, "Payment received",
                 f"{_fmt(tx.total_amount)} for '{title}' is held in escrow.",
                 meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
    queue_in_app(tx.craftsman_id, "Funds secured",
                 f"The employer has paid for '{title}'. You will be paid once the job is confirmed.",
                 meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
    db.session.commit()
    logger.info("escrow hold: tx=%s job=%s amount=%s", tx.transaction_id, tx.job_id, tx.total_amount)
    return True


def fail_deposit(tx: Transaction, reason: str | None = None) -> bool:
    if not claim_transaction(tx, "fail_deposit"):
        return False
    create_log(tx, "DEPOSIT_FAILED", "FAILED", error_message=reason or "payment failed")
    queue_in_app(tx.employer_id, "Payment failed",
                 f"Your payment of {_fmt(tx.total_amount)} did not go through. You can try again.",
                 meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
    db.session.commit()
    logger.info("escrow deposit failed: tx=%s reason=%s", tx.transaction_id, reason)
    return True


def apply_deposit_result(tx: Transaction, result: dict, source: str) -> str:
    """Apply a normalized provider status to a pending deposit.

    Returns one of held, failed, pending, mismatch or noop.
    """
    status = result.get("status")
    if status == "successful":
        amount = result.get("amount")
        currency = (result.get("currency") or "").upper()
        if amount is not None and int(round(float(amount))) < int(round(float(tx.total_amount or 0))):
            create_log(tx, f"{source}_AMOUNT_MISMATCH", "ERROR", response_data=result.get("raw"),
                       error_message=f"expected {tx.total_amount}, got {amount}")
            db.session.commit()
            return "mismatch"
        if currency and currency != (tx.currency or "").upper():
            create_log(tx, f"{source}_CURRENCY_MISMATCH", "ERROR", response_data=result.get("raw"),
                       error_message=f"expected {tx.currency}, got {currency}")
            db.session.commit()
            return "mismatch"
        if tx.kind == "admin_withdrawal":
            return "held" if settle_withdrawal(tx, True) else "noop"
        return "held" if hold_funds(tx, external_id=result.get("id"), provider_status=status) else "noop"
    if status == "failed":
        if tx.kind == "admin_withdrawal":
            return "failed" if settle_withdrawal(tx, False) else "noop"
        return "failed" if fail_deposit(tx, reason=f"{source}: provider reported failure") else "noop"
    return "pending"


# ---------------------------------------------------------------------------
# Disbursement
# ---------------------------------------------------------------------------

def disbursement_reference_for(tx: Transaction, attempt: int) -> str:
    return f"{tx.transaction_id}-disbursement-{int(attempt)}"


def disbursement_attempt_of(reference: str | None) -> int | None:
    """The attempt number carried by ``<tx>-disbursement-<n>``, else None."""
    m = _ATTEMPT_RE.search((reference or "").strip())
    return int(m.group(1)) if m else None


def is_current_attempt(tx: Transaction, reference: str | None) -> bool:
    """False when ``reference`` names an earlier transfer than the latest one issued."""
    ref = (reference or "").strip()
    if not ref or ref == tx.disbursement_reference:
        return True
    attempt = disbursement_attempt_of(ref)
    return attempt is None or attempt == int(tx.disbursement_attempts or 0)


def release_funds(job: Job, actor_id: int | None, confirmed_by: str) -> Transaction:
    """Pay the craftsman their share of the held deposit.

    Raises ``EscrowError`` (409) when there is nothing to release or another
    release is already in flight, and ``GatewayError`` (502) when the
    provider refuses the transfer. On a refusal the transaction is left in
    DISBURSEMENT_FAILED so it can be retried.

    When the provider cannot be reached, or answers 5xx, the transfer may
    still have been made. The transaction then stays DISBURSEMENT_INITIATED
    with that attempt's reference, and only a callback or a status poll
    settles it.
    """
    if job.status != "paid-in-escrow":
        raise TransitionNotAllowed("job", job.status or "", "start_disbursement")

    tx = held_transaction(job)
    if tx is None:
        raise EscrowError("No held payment found for this job")

    craftsman = db.session.get(User, int(job.craftsman_id)) if job.craftsman_id else None
    phone = tx.craftsman_phone or (craftsman.phone if craftsman else "")
    if not phone:
        raise EscrowError("Craftsman has no mobile number for payout", 400)

    if not claim_transaction(tx, "start_disbursement"):
        raise EscrowError("Disbursement already in progress for this job")

    split = compute_split(tx.total_amount)
    attempt = int(tx.disbursement_attempts or 0) + 1
    reference = disbursement_reference_for(tx, attempt)
    tx.commission_amount = split["commission_amount"]
    tx.disbursement_amount = split["disbursement_amount"]
    tx.confirmed_by = confirmed_by
    tx.disbursement_attempts = attempt
    tx.disbursement_reference = reference
    db.session.add(tx)
    # Persist the claim before calling out so a concurrent confirm sees it
    db.session.commit()

    client = get_client(tx.provider)
    result = client.transfer(
        reference,
        tx.disbursement_amount,
        phone,
        narration=f"CraftSmart payment for {job.title}"[:100],
        beneficiary_name=craftsman.name if craftsman else "",
    )
    action = f"{tx.provider.upper()}_TRANSFER"

    if not result.get("ok") and result.get("outcome_unknown"):
        create_log(tx, action, "UNKNOWN", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error"))
        tx.disbursement_reference = str(result.get("reference") or reference)[:128]
        job.craftsman_transaction_id = tx.disbursement_reference
        transition_job(job, "start_disbursement", actor_id=actor_id,
                       note=f"release confirmed by {confirmed_by}, transfer outcome unknown")
        db.session.commit()
        logger.warning("escrow disbursement outcome unknown: tx=%s ref=%s error=%s", tx.transaction_id,
                       tx.disbursement_reference, result.get("error"))
        return tx

    if not result.get("ok") or result.get("status") == "failed":
        create_log(tx, action, "ERROR", request_data=result.get("request"),
                   response_data=result.get("raw"), error_message=result.get("error") or "transfer rejected")
        transition_transaction(tx, "disbursement_failed")
        queue_in_app(job.employer_id, "Payout delayed",
                     f"We could not pay the craftsman for '{job.title}' yet. It will be retried.",
                     meta={"transaction_id": tx.transaction_id, "job_id": job.id})
        db.session.commit()
        logger.warning("escrow disbursement failed: tx=%s error=%s", tx.transaction_id, result.get("error"))
        raise GatewayError(f"Disbursement failed: {result.get('error') or 'transfer rejected'}")

    create_log(tx, action, "INITIATED", request_data=result.get("request"),
               response_data=result.get("raw"))
    tx.disbursement_reference = str(result.get("reference") or reference)[:128]
    job.craftsman_transaction_id = tx.disbursement_reference
    transition_job(job, "start_disbursement", actor_id=actor_id, note=f"release confirmed by {confirmed_by}")
    queue_in_app(job.craftsman_id, "Payout on the way",
                 f"{_fmt(tx.disbursement_amount)} for '{job.title}' is being sent to {phone}.",
                 meta={"transaction_id": tx.transaction_id, "job_id": job.id})
    db.session.commit()
    logger.info("escrow disbursement started: tx=%s ref=%s by=%s", tx.transaction_id,
                tx.disbursement_reference, confirmed_by)

    if result.get("status") == "successful":
        settle_disbursement(tx, True)
    return tx


def settle_disbursement(tx: Transaction, successful: bool, note: str | None = None,
                        reference: str | None = None) -> bool:
    """Apply the final status of a transfer. Returns False if nothing changed.

    ``reference`` names the transfer the status is about. A failure for an
    earlier attempt is ignored, since a later one may be in flight. A success
    is applied whichever attempt it is for: the craftsman has been paid, and
    that also holds when the transaction was already marked failed.
    """
    if not successful and not is_current_attempt(tx, reference):
        logger.info("ignoring failure of stale transfer %s: tx=%s is on attempt %s", reference,
                    tx.transaction_id, tx.disbursement_attempts)
        return False

    event = "confirm_disbursement" if successful else "disbursement_failed"
    prev = tx.status
    if not claim_transaction(tx, event):
        return False

    job = _job_for(tx)
    title = job.title if job is not None else "your job"
    if successful:
        if prev == "DISBURSEMENT_FAILED" or not is_current_attempt(tx, reference):
            logger.warning("transfer %s succeeded for tx=%s (status was %s, attempt %s)", reference,
                           tx.transaction_id, prev, tx.disbursement_attempts)
        tx.paid_at = _now()
        if job is not None and can_transition_job(job, "start_disbursement"):
            transition_job(job, "start_disbursement", note=f"late success of {reference or 'transfer'}")
        if job is not None and can_transition_job(job, "complete"):
            transition_job(job, "complete", note=note or "transfer confirmed")
        create_log(tx, "DISBURSEMENT_CONFIRMED", "SUCCESS",
                   response_data={"reference": reference} if reference else None)
        queue_in_app(tx.craftsman_id, "Payment received",
                     f"You have been paid {_fmt(tx.disbursement_amount)} for '{title}'.",
                     meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
        queue_in_app(tx.employer_id, "Job completed",
                     f"The craftsman has been paid for '{title}'.",
                     meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
    else:
        if job is not None and can_transition_job(job, "disbursement_failed"):
            transition_job(job, "disbursement_failed", note=note or "transfer failed")
        create_log(tx, "DISBURSEMENT_FAILED", "FAILED", error_message=note or "transfer failed")
        queue_in_app(tx.craftsman_id, "Payout failed",
                     f"Your payout for '{title}' failed and will be retried.",
                     meta={"transaction_id": tx.transaction_id, "job_id": tx.job_id})
    db.session.add(tx)
    db.session.commit()
    logger.info("escrow disbursement settled: tx=%s successful=%s", tx.transaction_id, successful)
    return True


# ---------------------------------------------------------------------------
# Platform fee withdrawals (PENDING -> COMPLETED | FAILED, no job)
# ---------------------------------------------------------------------------

def settle_withdrawal(tx: Transaction, successful: bool) -> bool:
    event = "confirm_deposit" if successful else "fail_deposit"
    if not claim_transaction(tx, event):
        return False
    if successful:
        tx.paid_at = _now()
    create_log(tx, "ADMIN_WITHDRAWAL", "SUCCESS" if successful else "FAILED")
    db.session.add(tx)
    db.session.commit()
    return True


def split_disbursement_reference(reference: str | None) -> str:
    """Map a transfer reference back to the transaction id it was issued for."""
    ref = (reference or "").strip()
    if "-disbursement" in ref:
        return ref.split("-disbursement", 1)[0]
    return ref


def find_transaction(reference: str | None) -> Transaction | None:
    """Find a transaction by merchant id, gateway charge reference or transfer reference."""
    ref = (reference or "").strip()
    if not ref:
        return None
    tx = Transaction.query.filter_by(transaction_id=ref).first()
    if tx is None:
        tx = Transaction.query.filter_by(payment_reference=ref).first()
    if tx is None:
        tx = Transaction.query.filter_by(disbursement_reference=ref).first()
    if tx is None and "-disbursement" in ref:
        tx = Transaction.query.filter_by(transaction_id=split_disbursement_reference(ref)).first()
    return tx


def is_disbursement_reference(reference: str | None, tx: Transaction) -> bool:
    ref = (reference or "").strip()
    return "-disbursement" in ref or (bool(tx.disbursement_reference) and ref == tx.disbursement_reference)
