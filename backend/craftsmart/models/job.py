from datetime import datetime

from craftsmart.extensions import db


class Job(db.Model):
    __tablename__ = "jobs"

    id = db.Column(db.Integer, primary_key=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(80), nullable=True)
    budget = db.Column(db.Float, nullable=False, default=0.0)

    employer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    craftsman_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, default="open", index=True)
    # open -> in-progress -> paid-in-escrow -> disbursed -> completed
    # open / in-progress can also be canceled

    # Gateway references for the deposit and the craftsman payout
    employer_transaction_id = db.Column(db.String(128), nullable=True)
    craftsman_transaction_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    assigned_at = db.Column(db.DateTime, nullable=True)
    escrow_held_at = db.Column(db.DateTime, nullable=True)
    disbursed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "category": self.category or "",
            "budget": float(self.budget or 0.0),
            "employer_id": int(self.employer_id),
            "craftsman_id": int(self.craftsman_id) if self.craftsman_id is not None else None,
            "status": self.status,
            "employer_transaction_id": self.employer_transaction_id or "",
            "craftsman_transaction_id": self.craftsman_transaction_id or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "escrow_held_at": self.escrow_held_at.isoformat() if self.escrow_held_at else None,
            "disbursed_at": self.disbursed_at.isoformat() if self.disbursed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
        }
