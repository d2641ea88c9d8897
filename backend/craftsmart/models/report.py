from datetime import datetime

from craftsmart.extensions import db


class Report(db.Model):
    __tablename__ = "reports"
    __table_args__ = (
        db.Index("ix_reports_lookup", "from_role", "employer_id", "craftsman_id", "job_id"),
    )

    id = db.Column(db.Integer, primary_key=True)

    subject = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    seen = db.Column(db.Boolean, nullable=False, default=False)

    from_role = db.Column(db.String(16), nullable=False)  # employer | craftsman

    employer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    craftsman_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id"), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "subject": self.subject,
            "message": self.message,
            "seen": bool(self.seen),
            "from_role": self.from_role,
            "employer_id": int(self.employer_id) if self.employer_id is not None else None,
            "craftsman_id": int(self.craftsman_id) if self.craftsman_id is not None else None,
            "job_id": int(self.job_id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
