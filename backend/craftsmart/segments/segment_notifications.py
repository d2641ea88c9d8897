from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from craftsmart.extensions import db
from craftsmart.models import Notification
from craftsmart.utils.notify import mark_read

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@login_required
def list_notifications():
    q = Notification.query.filter_by(user_id=int(current_user.id))
    if (request.args.get("unread") or "").strip().lower() in ("1", "true"):
        q = q.filter(Notification.status != "read")
    rows = q.order_by(Notification.id.desc()).limit(100).all()
    return jsonify({"items": [n.to_dict() for n in rows]}), 200


@notifications_bp.post("/<int:notification_id>/read")
@login_required
def read_notification(notification_id: int):
    n = db.session.get(Notification, notification_id)
    if not n or int(n.user_id) != int(current_user.id):
        return jsonify({"message": "Notification not found"}), 404
    mark_read(n)
    db.session.commit()
    return jsonify({"notification": n.to_dict()}), 200
