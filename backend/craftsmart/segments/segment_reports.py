from flask import Blueprint, jsonify, request
from flask_login import current_user

from craftsmart.auth import role_required
from craftsmart.extensions import db
from craftsmart.models import Job, Report
from craftsmart.utils.audit import log_audit

reports_bp = Blueprint("reports_bp", __name__, url_prefix="/api/reports")


@reports_bp.post("")
@role_required("employer", "craftsman")
def file_report():
    data = request.get_json(silent=True) or {}
    subject = (data.get("subject") or "").strip()
    message = (data.get("message") or "").strip()
    try:
        job_id = int(data.get("job_id"))
    except (TypeError, ValueError):
        job_id = None
    if not subject or not message or not job_id:
        return jsonify({"message": "job_id, subject and message are required"}), 400

    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    uid = int(current_user.id)
    if uid not in (int(job.employer_id), int(job.craftsman_id or 0)):
        return jsonify({"message": "You can only report jobs you are part of"}), 403

    r = Report(
        subject=subject[:200],
        message=message,
        from_role=current_user.role,
        employer_id=int(job.employer_id),
        craftsman_id=int(job.craftsman_id) if job.craftsman_id else None,
        job_id=job.id,
    )
    db.session.add(r)
    db.session.commit()
    return jsonify({"report": r.to_dict()}), 201


@reports_bp.get("")
@role_required("admin")
def list_reports():
    q = Report.query
    seen = (request.args.get("seen") or "").strip().lower()
    if seen in ("true", "1"):
        q = q.filter(Report.seen.is_(True))
    elif seen in ("false", "0"):
        q = q.filter(Report.seen.is_(False))
    role = (request.args.get("from_role") or "").strip().lower()
    if role:
        q = q.filter(Report.from_role == role)
    rows = q.order_by(Report.created_at.desc()).all()
    return jsonify({"items": [r.to_dict() for r in rows]}), 200


@reports_bp.post("/<int:report_id>/seen")
@role_required("admin")
def mark_seen(report_id: int):
    r = db.session.get(Report, report_id)
    if not r:
        return jsonify({"message": "Report not found"}), 404
    r.seen = True
    db.session.add(r)
    log_audit(int(current_user.id), "report_seen", target_type="report", target_id=int(r.id))
    db.session.commit()
    return jsonify({"report": r.to_dict()}), 200
