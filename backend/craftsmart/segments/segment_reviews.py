from flask import Blueprint, jsonify, request
from flask_login import current_user

from craftsmart.auth import role_required
from craftsmart.extensions import db
from craftsmart.models import Job, Review
from craftsmart.utils.audit import log_audit

reviews_bp = Blueprint("reviews_bp", __name__, url_prefix="/api/reviews")


@reviews_bp.post("")
@role_required("employer")
def create_review():
    data = request.get_json(silent=True) or {}
    try:
        job_id = int(data.get("job_id"))
        rating = int(data.get("rating"))
    except (TypeError, ValueError):
        return jsonify({"message": "job_id and rating are required"}), 400
    if rating < 1 or rating > 5:
        return jsonify({"message": "rating must be between 1 and 5"}), 400

    job = db.session.get(Job, job_id)
    if not job:
        return jsonify({"message": "Job not found"}), 404
    if int(job.employer_id) != int(current_user.id):
        return jsonify({"message": "Forbidden"}), 403
    if job.status != "completed" or not job.craftsman_id:
        return jsonify({"message": "Only completed jobs can be reviewed"}), 409
    if Review.query.filter_by(job_id=job.id, employer_id=int(current_user.id)).first():
        return jsonify({"message": "You have already reviewed this job"}), 409

    r = Review(
        job_id=job.id,
        employer_id=int(current_user.id),
        craftsman_id=int(job.craftsman_id),
        rating=rating,
        comment=(data.get("comment") or "").strip() or None,
        approved=False,
    )
    db.session.add(r)
    db.session.commit()
    return jsonify({"review": r.to_dict()}), 201


@reviews_bp.get("")
def list_reviews():
    q = Review.query.filter_by(approved=True)
    craftsman_id = request.args.get("craftsman_id", type=int)
    if craftsman_id:
        q = q.filter_by(craftsman_id=craftsman_id)
    rows = q.order_by(Review.created_at.desc()).limit(200).all()
    return jsonify({"items": [r.to_dict() for r in rows]}), 200


@reviews_bp.get("/pending")
@role_required("admin")
def pending_reviews():
    rows = Review.query.filter_by(approved=False).order_by(Review.created_at.asc()).all()
    return jsonify({"items": [r.to_dict() for r in rows]}), 200


@reviews_bp.post("/<int:review_id>/approve")
@role_required("admin")
def approve_review(review_id: int):
    r = db.session.get(Review, review_id)
    if not r:
        return jsonify({"message": "Review not found"}), 404
    r.approved = True
    db.session.add(r)
    log_audit(int(current_user.id), "review_approved", target_type="review", target_id=int(r.id))
    db.session.commit()
    return jsonify({"review": r.to_dict()}), 200
