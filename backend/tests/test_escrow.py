"""Tests for the escrow transition tables and the conditional claim."""

import uuid

import pytest
from sqlalchemy import update

from craftsmart.escrow import (
    JOB_TRANSITIONS,
    TX_TRANSITIONS,
    TransitionNotAllowed,
    claim_transaction,
    disbursement_attempt_of,
    hold_funds,
    is_current_attempt,
    transition_job,
    transition_transaction,
)
from craftsmart.extensions import db
from craftsmart.models import Job, JobEvent, Transaction


def _job(employer_id, status="in-progress", craftsman_id=None):
    j = Job(title="Paint house", description="two rooms", location="Entebbe", budget=50000,
            employer_id=employer_id, craftsman_id=craftsman_id, status=status)
    db.session.add(j)
    db.session.commit()
    return j


def _tx(job, status="PENDING"):
    t = Transaction(transaction_id=str(uuid.uuid4()), job_id=job.id, employer_id=job.employer_id,
                    craftsman_id=job.craftsman_id, total_amount=50000, commission_amount=5000,
                    disbursement_amount=45000, status=status)
    db.session.add(t)
    db.session.commit()
    return t


class TestTransitionTables:
    def test_job_happy_path(self, app, employer, craftsman):
        with app.app_context():
            job = _job(employer.id, status="open", craftsman_id=craftsman.id)
            for event in ("assign", "hold_funds", "start_disbursement", "complete"):
                transition_job(job, event, actor_id=employer.id)
            db.session.commit()
            assert job.status == "completed"
            assert [e.event for e in JobEvent.query.filter_by(job_id=job.id).order_by(JobEvent.id)] == [
                "assign", "hold_funds", "start_disbursement", "complete",
            ]

    @pytest.mark.parametrize("status,event", [
        ("open", "hold_funds"),
        ("in-progress", "start_disbursement"),
        ("paid-in-escrow", "cancel"),
        ("disbursed", "cancel"),
        ("completed", "start_disbursement"),
        ("canceled", "assign"),
    ])
    def test_job_rejects_skipped_steps(self, app, employer, status, event):
        with app.app_context():
            job = _job(employer.id, status=status)
            with pytest.raises(TransitionNotAllowed):
                transition_job(job, event)
            assert job.status == status

    def test_unknown_event(self, app, employer):
        with app.app_context():
            job = _job(employer.id)
            with pytest.raises(TransitionNotAllowed):
                transition_job(job, "teleport")

    def test_transaction_rejects_paying_unconfirmed_deposit(self, app, employer):
        with app.app_context():
            tx = _tx(_job(employer.id), status="PENDING")
            with pytest.raises(TransitionNotAllowed):
                transition_transaction(tx, "start_disbursement")

    def test_tables_cover_every_status(self):
        job_targets = {to for _, to in JOB_TRANSITIONS.values()}
        assert job_targets == {"in-progress", "canceled", "paid-in-escrow", "disbursed", "completed"}
        tx_targets = {to for _, to in TX_TRANSITIONS.values()}
        assert tx_targets == {"PENDING", "COMPLETED", "FAILED", "DISBURSEMENT_INITIATED",
                              "DISBURSEMENT_FAILED", "PAID_TO_CRAFTSMAN"}


class TestClaim:
    def test_only_first_claim_wins(self, app, employer):
        with app.app_context():
            tx = _tx(_job(employer.id), status="COMPLETED")
            assert claim_transaction(tx, "start_disbursement") is True
            db.session.commit()
            assert claim_transaction(tx, "start_disbursement") is False
            assert tx.status == "DISBURSEMENT_INITIATED"

    def test_stale_object_loses(self, app, employer):
        """The claim is decided by the row in the database, not the in-memory status."""
        with app.app_context():
            tx = _tx(_job(employer.id), status="COMPLETED")
            db.session.execute(
                update(Transaction)
                .where(Transaction.id == tx.id)
                .values(status="DISBURSEMENT_INITIATED")
                .execution_options(synchronize_session=False)
            )
            assert tx.status == "COMPLETED"
            assert claim_transaction(tx, "start_disbursement") is False


class TestHoldFunds:
    def test_hold_is_idempotent(self, app, employer, craftsman):
        with app.app_context():
            job = _job(employer.id, craftsman_id=craftsman.id)
            tx = _tx(job)
            assert hold_funds(tx, external_id="FLW-1") is True
            assert hold_funds(tx, external_id="FLW-2") is False
            db.session.refresh(job)
            assert job.status == "paid-in-escrow"
            assert tx.status == "COMPLETED"
            assert tx.external_transaction_id == "FLW-1"
            assert tx.webhook_received_at is not None
            assert JobEvent.query.filter_by(job_id=job.id, event="hold_funds").count() == 1


class TestTransferAttempts:
    def test_attempt_number_from_reference(self):
        assert disbursement_attempt_of("4f1c-disbursement-3") == 3
        assert disbursement_attempt_of("TRF-1") is None
        assert disbursement_attempt_of(None) is None

    def test_only_latest_attempt_is_current(self, app, employer):
        with app.app_context():
            tx = _tx(_job(employer.id), status="DISBURSEMENT_INITIATED")
            tx.disbursement_attempts = 2
            tx.disbursement_reference = "TRF-2"
            assert is_current_attempt(tx, f"{tx.transaction_id}-disbursement-2")
            assert is_current_attempt(tx, "TRF-2")
            assert not is_current_attempt(tx, f"{tx.transaction_id}-disbursement-1")
