from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user
from sqlalchemy import func

from craftsmart.auth import role_required
from craftsmart.extensions import db
from craftsmart.models import Review, User
from craftsmart.models.user import PROFILE_FIELDS

craftsmen_bp = Blueprint("craftsmen_bp", __name__, url_prefix="/api/craftsmen")


def _clamp_score(value) -> int | None:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return None
    return max(0, min(100, v))


def _platform_averages() -> dict:
    cols = [func.avg(getattr(User, f)) for f in PROFILE_FIELDS]
    row = db.session.query(*cols).filter(User.role == "craftsman", User.approved.is_(True)).one()
    return {f: round(float(v or 0), 1) for f, v in zip(PROFILE_FIELDS, row)}


@craftsmen_bp.get("")
def list_craftsmen():
    q = User.query.filter(User.role == "craftsman", User.approved.is_(True))
    skill = (request.args.get("skill") or "").strip()
    city = (request.args.get("city") or "").strip()
    if skill:
        q = q.filter(User.skills.ilike(f"%{skill}%"))
    if city:
        q = q.filter(User.city.ilike(city))
    rows = q.order_by(User.created_at.desc()).limit(200).all()
    return jsonify({"items": [u.to_dict() for u in rows]}), 200


@craftsmen_bp.put("/me")
@role_required("craftsman")
def update_profile():
    u = current_user
    if not u.approved:
        return jsonify({"message": "Your profile is pending approval"}), 403

    data = request.get_json(silent=True) or {}
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return jsonify({"message": "name cannot be empty"}), 400
        u.name = name
    if "email" in data:
        email = (data.get("email") or "").strip().lower()
        if not email:
            return jsonify({"message": "email cannot be empty"}), 400
        if User.query.filter(User.email == email, User.id != u.id).first():
            return jsonify({"message": "Email already in use"}), 409
        u.email = email
    if "experience" in data:
        try:
            u.experience = max(0, int(data.get("experience") or 0))
        except (TypeError, ValueError):
            return jsonify({"message": "experience must be a number"}), 400
    if "skills" in data:
        skills = data.get("skills") or ""
        if isinstance(skills, list):
            skills = ",".join(str(s) for s in skills)
        u.skills = ",".join(s.strip() for s in skills.split(",") if s.strip()) or None
    if "bio" in data:
        u.bio = (data.get("bio") or "").strip() or None

    loc = data.get("location") if isinstance(data.get("location"), dict) else {}
    for field in ("region", "district", "city"):
        if field in loc:
            setattr(u, field, (loc.get(field) or "").strip() or None)

    profile = data.get("profile") if isinstance(data.get("profile"), dict) else data
    for field in PROFILE_FIELDS:
        if field in profile:
            score = _clamp_score(profile.get(field))
            if score is None:
                return jsonify({"message": f"{field} must be a number between 0 and 100"}), 400
            setattr(u, field, score)

    # Edited profiles go back through admin review
    u.approved = False
    db.session.add(u)
    db.session.commit()
    return jsonify({"user": u.to_dict(), "message": "Profile updated and sent for approval"}), 200


@craftsmen_bp.get("/<int:craftsman_id>")
def get_craftsman(craftsman_id: int):
    u = db.session.get(User, craftsman_id)
    if not u or u.role != "craftsman":
        return jsonify({"message": "Craftsman not found"}), 404
    if not u.approved and not (current_user.is_authenticated and current_user.role == "admin"):
        return jsonify({"message": "Craftsman not found"}), 404

    reviews = (
        Review.query.filter_by(craftsman_id=u.id, approved=True)
        .order_by(Review.created_at.desc())
        .limit(50)
        .all()
    )
    ratings = [int(r.rating) for r in reviews]
    body = u.to_dict()
    # phone is only shared with admins and employers who hire through escrow
    body.pop("phone", None)
    body.pop("email", None)
    return jsonify({
        "craftsman": body,
        "platform_average": _platform_averages(),
        "reviews": [r.to_dict() for r in reviews],
        "rating": round(sum(ratings) / len(ratings), 2) if ratings else None,
    }), 200
