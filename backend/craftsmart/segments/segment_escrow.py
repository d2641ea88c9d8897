from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from craftsmart.auth import role_required
from craftsmart.escrow import release_funds
from craftsmart.extensions import db
from craftsmart.models import Job
from craftsmart.utils.audit import log_audit

escrow_bp = Blueprint("escrow_bp", __name__, url_prefix="/api/jobs")


@escrow_bp.post("/<int:job_id>/confirm")
@role_required("employer")
def confirm_completion(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if int(job.employer_id) != int(current_user.id):
        return jsonify({"message": "Forbidden"}), 403

    tx = release_funds(job, actor_id=int(current_user.id), confirmed_by="employer")
    current_app.logger.info("job %s confirmed by employer %s", job.id, current_user.id)
    return jsonify({"job": job.to_dict(), "transaction": tx.to_dict()}), 200


@escrow_bp.post("/<int:job_id>/admin-confirm")
@role_required("admin")
def admin_confirm(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404

    data = request.get_json(silent=True) or {}
    tx = release_funds(job, actor_id=int(current_user.id), confirmed_by="admin")
    log_audit(int(current_user.id), "escrow_admin_release", target_type="job", target_id=int(job.id),
              meta={"transaction_id": tx.transaction_id, "reason": (data.get("reason") or "")[:250]})
    db.session.commit()
    current_app.logger.warning("job %s released by admin %s", job.id, current_user.id)
    return jsonify({"job": job.to_dict(), "transaction": tx.to_dict()}), 200
