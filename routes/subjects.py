from flask import Blueprint, current_app, g, request, jsonify
from sqlalchemy.exc import SQLAlchemyError
from auth import ALL_ROLES, RANDOMIZE_ROLES, role_required
from models import db, Study, StudySubject
from dateutil.parser import parse

subjects_bp = Blueprint("subjects", __name__, url_prefix="/api/subjects")

SUBJECT_STATUSES = ("available", "removed")


def _subject_dict(subject):
    return {
        "id": subject.id,
        "study_id": subject.study_id,
        "label": subject.label,
        "sex": subject.sex,
        "dob": subject.dob.isoformat() if subject.dob else None,
        "status": subject.status,
        "entered_by": subject.entered_by
    }


@subjects_bp.route("", methods=["POST"])
@role_required(*RANDOMIZE_ROLES)
def create_subject():
    data = request.get_json() or {}
    if not data.get("study_id") or not data.get("label"):
        return jsonify({"success": False, "message": "study_id and label are required"}), 400
    if not db.session.get(Study, data["study_id"]):
        return jsonify({"success": False, "message": "Study not found"}), 404

    try:
        subject = StudySubject(
            study_id=data["study_id"],
            label=data["label"],
            sex=data.get("sex"),
            dob=parse(data["dob"]).date() if data.get("dob") else None,
            entered_by=g.current_user.id
        )
        db.session.add(subject)
        db.session.commit()
        return jsonify({"success": True, "id": subject.id, "message": "Subject enrolled"}), 201
    except (ValueError, OverflowError) as e:
        db.session.rollback()
        return jsonify({"success": False, "message": f"Invalid date of birth: {e}"}), 400
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Error enrolling subject")
        return jsonify({"success": False, "message": "Error enrolling subject"}), 500


@subjects_bp.route("/<int:subject_id>", methods=["GET"])
@role_required(*ALL_ROLES)
def get_subject(subject_id):
    subject = db.session.get(StudySubject, subject_id)
    if not subject:
        return jsonify({"success": False, "message": "Subject not found"}), 404
    return jsonify({"success": True, "subject": _subject_dict(subject)}), 200


@subjects_bp.route("/<int:subject_id>/status", methods=["POST"])
@role_required(*RANDOMIZE_ROLES)
def update_subject_status(subject_id):
    subject = db.session.get(StudySubject, subject_id)
    if not subject:
        return jsonify({"success": False, "message": "Subject not found"}), 404

    status = (request.get_json() or {}).get("status")
    if status not in SUBJECT_STATUSES:
        return jsonify({"success": False, "message": f"Status must be one of: {', '.join(SUBJECT_STATUSES)}"}), 400

    subject.status = status
    db.session.commit()
    return jsonify({"success": True, "subject": _subject_dict(subject)}), 200
