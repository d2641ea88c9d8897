from datetime import datetime

from craftsmart.extensions import db


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)

    # Merchant reference sent to the gateway (tx_ref / externalId)
    transaction_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    kind = db.Column(db.String(32), nullable=False, default="escrow_deposit")  # escrow_deposit | admin_withdrawal
    provider = db.Column(db.String(32), nullable=False, default="flutterwave")

    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id"), nullable=True, index=True)
    employer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    craftsman_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    commission_amount = db.Column(db.Float, nullable=False, default=0.0)
    disbursement_amount = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(8), nullable=False, default="UGX")

    employer_phone = db.Column(db.String(32), nullable=True)
    craftsman_phone = db.Column(db.String(32), nullable=True)
    payment_method = db.Column(db.String(16), nullable=True)  # MTN | AIRTEL

    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    disbursement_reference = db.Column(db.String(128), nullable=True, index=True)
    external_transaction_id = db.Column(db.String(128), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="PENDING", index=True)
    # PENDING -> COMPLETED -> DISBURSEMENT_INITIATED -> PAID_TO_CRAFTSMAN
    # PENDING -> FAILED, DISBURSEMENT_INITIATED -> DISBURSEMENT_FAILED (retryable)

    confirmed_by = db.Column(db.String(16), nullable=True)  # employer | admin | system
    disbursement_attempts = db.Column(db.Integer, nullable=False, default=0)

    webhook_received_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "provider": self.provider,
            "job_id": int(self.job_id) if self.job_id is not None else None,
            "employer_id": int(self.employer_id) if self.employer_id is not None else None,
            "craftsman_id": int(self.craftsman_id) if self.craftsman_id is not None else None,
            "total_amount": float(self.total_amount or 0.0),
            "commission_amount": float(self.commission_amount or 0.0),
            "disbursement_amount": float(self.disbursement_amount or 0.0),
            "currency": self.currency,
            "employer_phone": self.employer_phone or "",
            "craftsman_phone": self.craftsman_phone or "",
            "payment_method": self.payment_method or "",
            "payment_reference": self.payment_reference or "",
            "disbursement_reference": self.disbursement_reference or "",
            "external_transaction_id": self.external_transaction_id or "",
            "status": self.status,
            "confirmed_by": self.confirmed_by or "",
            "disbursement_attempts": int(self.disbursement_attempts or 0),
            "webhook_received_at": self.webhook_received_at.isoformat() if self.webhook_received_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
