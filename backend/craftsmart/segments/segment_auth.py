from __future__ import annotations

from flask import Blueprint, request, jsonify
from flask_login import current_user, login_required
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from craftsmart.extensions import db
from craftsmart.models import User
from craftsmart.utils.blacklist import is_blacklisted
from craftsmart.utils.jwt_utils import create_access_token
from craftsmart.utils.phone import normalize_msisdn

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/auth")

SIGNUP_ROLES = ("employer", "craftsman")


def _create_user(data: dict) -> tuple[User | None, tuple[dict, int] | None]:
    """Create a user from a register payload, return (user, error_response)."""
    role = (data.get("role") or "employer").strip().lower()
    if role == "admin":
        return None, ({"message": "Admin signup is not allowed"}, 403)
    if role not in SIGNUP_ROLES:
        return None, ({"message": "role must be employer or craftsman"}, 400)

    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    raw_phone = (data.get("phone") or data.get("mobile") or "").strip()
    password = data.get("password") or ""
    if not name or not email or not raw_phone or not password:
        return None, ({"message": "name, email, phone and password are required"}, 400)

    phone = normalize_msisdn(raw_phone)
    if not phone:
        return None, ({"message": "Invalid phone number"}, 400)
    if is_blacklisted(phone):
        return None, ({"message": "This phone number is blacklisted"}, 403)

    if User.query.filter(or_(User.email == email, User.phone == phone)).first():
        return None, ({"message": "Email or phone already registered"}, 409)

    loc = data.get("location") if isinstance(data.get("location"), dict) else data
    u = User(
        name=name,
        email=email,
        phone=phone,
        role=role,
        approved=False if role == "craftsman" else True,
        region=(loc.get("region") or "").strip() or None,
        district=(loc.get("district") or "").strip() or None,
        city=(loc.get("city") or "").strip() or None,
    )
    if role == "employer":
        u.company = (data.get("company") or "").strip() or None
    else:
        skills = data.get("skills") or ""
        if isinstance(skills, list):
            skills = ",".join(str(s) for s in skills)
        u.skills = ",".join(s.strip() for s in skills.split(",") if s.strip()) or None
        u.bio = (data.get("bio") or "").strip() or None
    u.set_password(password)

    try:
        db.session.add(u)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None, ({"message": "Email or phone already registered"}, 409)
    return u, None


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    u, err = _create_user(data)
    if err:
        body, code = err
        return jsonify(body), code
    return jsonify({"user": u.to_dict(), "token": create_access_token(u.id)}), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    email = (data.get("email") or "").strip().lower()
    phone = normalize_msisdn(data.get("phone") or data.get("mobile"))

    if not password or not (email or phone):
        return jsonify({"message": "Phone or email and password are required"}), 400

    q = User.query.filter_by(phone=phone) if phone else User.query.filter_by(email=email)
    u = q.first()
    if not u or not u.check_password(password):
        return jsonify({"message": "Invalid credentials"}), 401

    return jsonify({"user": u.to_dict(), "token": create_access_token(u.id)}), 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()}), 200
