from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from craftsmart.extensions import db


PROFILE_FIELDS = ("communication", "technical_skill", "punctuality", "quality", "safety")


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=False)

    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(32), nullable=False, default="employer")  # employer | craftsman | admin
    # Craftsmen need admin approval before they can apply for jobs.
    approved = db.Column(db.Boolean, nullable=False, default=False)

    region = db.Column(db.String(80), nullable=True)
    district = db.Column(db.String(80), nullable=True)
    city = db.Column(db.String(80), nullable=True)

    # Employer extras
    company = db.Column(db.String(160), nullable=True)

    # Craftsman extras
    experience = db.Column(db.Integer, nullable=False, default=0)
    skills = db.Column(db.Text, nullable=True)  # comma separated
    bio = db.Column(db.Text, nullable=True)

    # Self-assessed profile scores (0-100)
    communication = db.Column(db.Integer, nullable=False, default=0)
    technical_skill = db.Column(db.Integer, nullable=False, default=0)
    punctuality = db.Column(db.Integer, nullable=False, default=0)
    quality = db.Column(db.Integer, nullable=False, default=0)
    safety = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def skill_list(self) -> list[str]:
        return [s.strip() for s in (self.skills or "").split(",") if s.strip()]

    def profile_scores(self) -> dict:
        return {k: int(getattr(self, k) or 0) for k in PROFILE_FIELDS}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role or "employer",
            "approved": bool(self.approved),
            "location": {
                "region": self.region or "",
                "district": self.district or "",
                "city": self.city or "",
            },
            "company": self.company or "",
            "experience": int(self.experience or 0),
            "skills": self.skill_list(),
            "bio": self.bio or "",
            "profile": self.profile_scores(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
