from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from craftsmart.auth import role_required
from craftsmart.escrow import transition_job
from craftsmart.extensions import db
from craftsmart.models import Application, Job, JobEvent, Transaction, User

jobs_bp = Blueprint("jobs_bp", __name__, url_prefix="/api/jobs")


def _is_party(job: Job, user) -> bool:
    if user.role == "admin":
        return True
    return int(user.id) in (int(job.employer_id), int(job.craftsman_id or 0))


def _job_payload(job: Job) -> dict:
    d = job.to_dict()
    employer = db.session.get(User, int(job.employer_id))
    craftsman = db.session.get(User, int(job.craftsman_id)) if job.craftsman_id else None
    d["employer_name"] = employer.name if employer else ""
    d["craftsman_name"] = craftsman.name if craftsman else ""
    return d


@jobs_bp.post("")
@role_required("employer")
def create_job():
    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    location = (data.get("location") or "").strip()
    if not title or not description or not location:
        return jsonify({"message": "title, description and location are required"}), 400
    try:
        budget = float(data.get("budget") or 0)
    except (TypeError, ValueError):
        return jsonify({"message": "budget must be a number"}), 400
    if budget <= 0:
        return jsonify({"message": "budget must be greater than 0"}), 400

    job = Job(
        title=title[:200],
        description=description,
        location=location[:200],
        category=(data.get("category") or "").strip()[:80] or None,
        budget=float(int(round(budget))),
        employer_id=int(current_user.id),
        status="open",
    )
    db.session.add(job)
    db.session.commit()
    return jsonify({"job": job.to_dict()}), 201


@jobs_bp.get("")
def list_open_jobs():
    q = Job.query.filter_by(status="open")
    category = (request.args.get("category") or "").strip()
    if category:
        q = q.filter(Job.category.ilike(category))
    rows = q.order_by(Job.created_at.desc()).limit(200).all()
    return jsonify({"items": [j.to_dict() for j in rows]}), 200


@jobs_bp.get("/mine")
@login_required
def my_jobs():
    if current_user.role == "craftsman":
        q = Job.query.filter_by(craftsman_id=int(current_user.id))
    else:
        q = Job.query.filter_by(employer_id=int(current_user.id))
    rows = q.order_by(Job.created_at.desc()).all()
    return jsonify({"items": [_job_payload(j) for j in rows]}), 200


@jobs_bp.get("/<int:job_id>")
def get_job(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    return jsonify({"job": _job_payload(job)}), 200


@jobs_bp.get("/<int:job_id>/events")
@login_required
def job_events(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if not _is_party(job, current_user):
        return jsonify({"message": "Forbidden"}), 403
    rows = JobEvent.query.filter_by(job_id=job.id).order_by(JobEvent.id.asc()).all()
    return jsonify({"items": [e.to_dict() for e in rows]}), 200


@jobs_bp.post("/<int:job_id>/cancel")
@role_required("employer")
def cancel_job(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if int(job.employer_id) != int(current_user.id):
        return jsonify({"message": "Forbidden"}), 403

    # A deposit in flight (or held) must settle first
    live = Transaction.query.filter(
        Transaction.job_id == job.id,
        Transaction.kind == "escrow_deposit",
        Transaction.status != "FAILED",
    ).first()
    if live:
        return jsonify({"message": "Job has a payment in progress and cannot be canceled"}), 409

    data = request.get_json(silent=True) or {}
    transition_job(job, "cancel", actor_id=int(current_user.id), note=(data.get("reason") or "")[:250])
    now = datetime.utcnow()
    for a in Application.query.filter_by(job_id=job.id, status="pending").all():
        a.status = "rejected"
        a.updated_at = now
        db.session.add(a)
    db.session.commit()
    return jsonify({"job": job.to_dict()}), 200


@jobs_bp.get("/<int:job_id>/applications")
@role_required("employer", "admin")
def job_applications(job_id: int):
    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if current_user.role != "admin" and int(job.employer_id) != int(current_user.id):
        return jsonify({"message": "Forbidden"}), 403

    rows = Application.query.filter_by(job_id=job.id).order_by(Application.created_at.asc()).all()
    items = []
    for a in rows:
        d = a.to_dict()
        c = db.session.get(User, int(a.craftsman_id))
        d["craftsman"] = c.to_dict() if c else None
        items.append(d)
    return jsonify({"items": items}), 200
