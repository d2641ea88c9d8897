from datetime import datetime

from craftsmart.extensions import db


class BlacklistEntry(db.Model):
    __tablename__ = "blacklist"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(120), nullable=False, default="")
    mobile = db.Column(db.String(32), nullable=False, index=True)
    reason = db.Column(db.String(400), nullable=True)

    added_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "name": self.name or "",
            "mobile": self.mobile,
            "reason": self.reason or "",
            "added_by": int(self.added_by) if self.added_by is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def public_dict(self):
        return {
            "name": self.name or "",
            "mobile": self.mobile,
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
