from datetime import datetime

from craftsmart.extensions import db


class Review(db.Model):
    __tablename__ = "reviews"
    __table_args__ = (
        db.UniqueConstraint("job_id", "employer_id", name="uq_reviews_job_employer"),
    )

    id = db.Column(db.Integer, primary_key=True)

    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id"), nullable=False, index=True)
    employer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    craftsman_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    rating = db.Column(db.Integer, nullable=False, default=0)  # 1..5
    comment = db.Column(db.Text, nullable=True)
    approved = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "job_id": int(self.job_id),
            "employer_id": int(self.employer_id),
            "craftsman_id": int(self.craftsman_id),
            "rating": int(self.rating or 0),
            "comment": self.comment or "",
            "approved": bool(self.approved),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
