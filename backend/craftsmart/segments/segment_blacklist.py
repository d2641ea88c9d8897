from flask import Blueprint, jsonify, request
from flask_login import current_user

from craftsmart.auth import role_required
from craftsmart.extensions import db
from craftsmart.models import BlacklistEntry, User
from craftsmart.utils.audit import log_audit
from craftsmart.utils.blacklist import canonical_mobile

blacklist_bp = Blueprint("blacklist_bp", __name__, url_prefix="/api/blacklist")


@blacklist_bp.get("")
def public_blacklist():
    rows = BlacklistEntry.query.order_by(BlacklistEntry.created_at.desc()).all()
    return jsonify({"items": [r.public_dict() for r in rows]}), 200


@blacklist_bp.post("")
@role_required("admin")
def add_entry():
    data = request.get_json(silent=True) or {}
    mobile = canonical_mobile(data.get("mobile") or data.get("phone"))
    name = (data.get("name") or "").strip()
    reason = (data.get("reason") or "").strip()
    if not mobile or not name:
        return jsonify({"message": "name and mobile are required"}), 400
    if BlacklistEntry.query.filter_by(mobile=mobile).first():
        return jsonify({"message": "Mobile is already blacklisted"}), 409

    user = User.query.filter_by(phone=mobile).first()
    entry = BlacklistEntry(
        user_id=int(user.id) if user else None,
        name=name[:120],
        mobile=mobile,
        reason=reason[:400] or None,
        added_by=int(current_user.id),
    )
    db.session.add(entry)
    db.session.flush()
    log_audit(int(current_user.id), "blacklist_add", target_type="blacklist", target_id=int(entry.id),
              meta={"mobile": mobile})
    db.session.commit()
    return jsonify({"entry": entry.to_dict()}), 201


@blacklist_bp.delete("/<int:entry_id>")
@role_required("admin")
def delete_entry(entry_id: int):
    entry = db.session.get(BlacklistEntry, entry_id)
    if not entry:
        return jsonify({"message": "Entry not found"}), 404
    log_audit(int(current_user.id), "blacklist_remove", target_type="blacklist", target_id=int(entry.id),
              meta={"mobile": entry.mobile})
    db.session.delete(entry)
    db.session.commit()
    return jsonify({"ok": True}), 200
