from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import IntegrityError

from craftsmart.auth import role_required
from craftsmart.escrow import transition_job
from craftsmart.extensions import db
from craftsmart.models import Application, Job
from craftsmart.utils.blacklist import is_blacklisted
from craftsmart.utils.notify import queue_in_app

applications_bp = Blueprint("applications_bp", __name__, url_prefix="/api/applications")


def _owned_application(application_id: int):
    """Return (application, job, error_response) for the calling employer."""
    a = db.session.get(Application, application_id)
    if not a:
        return None, None, (jsonify({"message": "Application not found"}), 404)
    job = db.session.get(Job, int(a.job_id))
    if not job or int(job.employer_id) != int(current_user.id):
        return None, None, (jsonify({"message": "Forbidden"}), 403)
    return a, job, None


@applications_bp.post("")
@role_required("craftsman")
def apply():
    if not current_user.approved:
        return jsonify({"message": "Your profile is pending approval"}), 403
    if is_blacklisted(current_user.phone):
        return jsonify({"message": "Your account is blacklisted"}), 403

    data = request.get_json(silent=True) or {}
    try:
        job_id = int(data.get("job_id"))
    except (TypeError, ValueError):
        return jsonify({"message": "job_id is required"}), 400

    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if job.status != "open":
        return jsonify({"message": "Job is not open for applications"}), 409
    if Application.query.filter_by(job_id=job.id, craftsman_id=int(current_user.id)).first():
        return jsonify({"message": "You have already applied for this job"}), 409

    a = Application(job_id=job.id, craftsman_id=int(current_user.id), status="pending")
    try:
        db.session.add(a)
        queue_in_app(job.employer_id, "New application",
                     f"{current_user.name} applied for '{job.title}'.", meta={"job_id": job.id})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"message": "You have already applied for this job"}), 409
    return jsonify({"application": a.to_dict()}), 201


@applications_bp.get("/mine")
@role_required("craftsman")
def my_applications():
    rows = (
        Application.query.filter_by(craftsman_id=int(current_user.id))
        .order_by(Application.created_at.desc())
        .all()
    )
    items = []
    for a in rows:
        d = a.to_dict()
        job = db.session.get(Job, int(a.job_id))
        d["job"] = job.to_dict() if job else None
        items.append(d)
    return jsonify({"items": items}), 200


@applications_bp.put("/<int:application_id>/accept")
@role_required("employer")
def accept(application_id: int):
    a, job, err = _owned_application(application_id)
    if err:
        return err
    if a.status != "pending":
        return jsonify({"message": f"Application is already {a.status}"}), 409

    transition_job(job, "assign", actor_id=int(current_user.id), note=f"application {a.id} accepted")
    job.craftsman_id = int(a.craftsman_id)

    now = datetime.utcnow()
    a.status = "accepted"
    a.updated_at = now
    for other in Application.query.filter(Application.job_id == job.id, Application.id != a.id).all():
        if other.status != "rejected":
            other.status = "rejected"
            other.updated_at = now
            db.session.add(other)
    db.session.add(a)
    queue_in_app(a.craftsman_id, "Application accepted",
                 f"You have been hired for '{job.title}'.", meta={"job_id": job.id})
    db.session.commit()
    return jsonify({"application": a.to_dict(), "job": job.to_dict()}), 200


@applications_bp.put("/<int:application_id>/reject")
@role_required("employer")
def reject(application_id: int):
    a, job, err = _owned_application(application_id)
    if err:
        return err
    if a.status != "pending":
        return jsonify({"message": f"Application is already {a.status}"}), 409
    a.status = "rejected"
    a.updated_at = datetime.utcnow()
    db.session.add(a)
    db.session.commit()
    return jsonify({"application": a.to_dict()}), 200
