from flask import Blueprint, current_app, g, request, jsonify
from sqlalchemy.exc import SQLAlchemyError
from auth import ALL_ROLES, DESIGN_ROLES, role_required
from models import db, Study, TreatmentArm, TreatmentArmClass
from datetime import datetime
from dateutil.parser import parse

studies_bp = Blueprint("studies", __name__, url_prefix="/api/studies")


def _parse_date(value):
    return parse(value).date() if value else None


def _study_dict(s):
    return {
        "id": s.id,
        "name": s.name,
        "protocol_number": s.protocol_number,
        "irb_number": s.irb_number,
        "start_date": s.start_date.isoformat() if s.start_date else None,
        "end_date": s.end_date.isoformat() if s.end_date else None,
        "created_by": s.created_by,
        "updated_by": s.updated_by,
        "group_classes": [{"id": c.id, "name": c.name} for c in s.group_classes],
        "arms": [
            {
                "id": a.id,
                "name": a.name,
                "description": a.description,
                "group_class_id": a.group_class_id
            } for a in s.treatment_arms
        ]
    }


@studies_bp.route('', methods=['POST'])
@role_required(*DESIGN_ROLES)
def create_study():
    data = request.get_json() or {}
    if not data.get('name'):
        return jsonify({"success": False, "message": "Study name is required"}), 400
    try:
        new_study = Study(
            name=data['name'],
            protocol_number=data.get('protocol_number'),
            irb_number=data.get('irb_number'),
            start_date=_parse_date(data.get('start_date')),
            end_date=_parse_date(data.get('end_date')),
            created_by=g.current_user.id,
            timestamp_created=datetime.utcnow(),
            timestamp_updated=datetime.utcnow()
        )
        db.session.add(new_study)
        db.session.commit()
        return jsonify({"success": True, "id": new_study.id, "message": "Study created"}), 201
    except (ValueError, OverflowError) as e:
        db.session.rollback()
        return jsonify({"success": False, "message": f"Invalid date: {e}"}), 400
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Error creating study")
        return jsonify({"success": False, "message": "Error creating study"}), 500


@studies_bp.route('', methods=['GET'])
@role_required(*ALL_ROLES)
def list_studies():
    search = request.args.get('search', '', type=str)
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 10, type=int)

    query = Study.query
    if g.current_user.role == 'studymanager':
        query = query.filter(Study.created_by == g.current_user.id)
    if search:
        query = query.filter(Study.name.ilike(f"%{search}%"))

    studies = query.order_by(Study.timestamp_created.desc()).paginate(page=page, per_page=limit, error_out=False)
    return jsonify({
        "studies": [_study_dict(s) for s in studies.items],
        "total": studies.total,
        "pages": studies.pages,
        "page": studies.page
    }), 200


@studies_bp.route('/<int:study_id>', methods=['PUT'])
@role_required(*DESIGN_ROLES)
def update_study(study_id):
    study = db.session.get(Study, study_id)
    if not study:
        return jsonify({"success": False, "message": "Study not found"}), 404

    if g.current_user.role != 'admin' and study.created_by != g.current_user.id:
        return jsonify({"success": False, "message": "Access denied"}), 403

    data = request.get_json() or {}
    try:
        study.name = data.get('name', study.name)
        study.protocol_number = data.get('protocol_number', study.protocol_number)
        study.irb_number = data.get('irb_number', study.irb_number)
        if 'start_date' in data:
            study.start_date = _parse_date(data['start_date'])
        if 'end_date' in data:
            study.end_date = _parse_date(data['end_date'])
        study.timestamp_updated = datetime.utcnow()
        study.updated_by = g.current_user.id
        db.session.commit()
        return jsonify({"success": True, "message": "Study updated"}), 200
    except (ValueError, OverflowError) as e:
        db.session.rollback()
        return jsonify({"success": False, "message": f"Invalid date: {e}"}), 400


@studies_bp.route('/<int:study_id>/group-classes', methods=['POST'])
@role_required(*DESIGN_ROLES)
def add_group_class(study_id):
    if not db.session.get(Study, study_id):
        return jsonify({"success": False, "message": "Study not found"}), 404
    data = request.get_json() or {}
    if not data.get('name'):
        return jsonify({"success": False, "message": "Group class name is required"}), 400

    group_class = TreatmentArmClass(study_id=study_id, name=data['name'])
    db.session.add(group_class)
    db.session.commit()
    return jsonify({"success": True, "id": group_class.id, "message": "Group class added"}), 201


@studies_bp.route('/<int:study_id>/arms', methods=['POST'])
@role_required(*DESIGN_ROLES)
def add_treatment_arm(study_id):
    if not db.session.get(Study, study_id):
        return jsonify({"success": False, "message": "Study not found"}), 404
    data = request.get_json() or {}
    if not data.get('name'):
        return jsonify({"success": False, "message": "Arm name is required"}), 400

    group_class_id = data.get('group_class_id')
    if group_class_id is not None:
        group_class = db.session.get(TreatmentArmClass, group_class_id)
        if not group_class or group_class.study_id != study_id:
            return jsonify({"success": False, "message": "Group class not found for this study"}), 400

    arm = TreatmentArm(
        study_id=study_id,
        group_class_id=group_class_id,
        name=data['name'],
        description=data.get('description')
    )
    db.session.add(arm)
    db.session.commit()
    return jsonify({"success": True, "id": arm.id, "message": "Treatment arm added"}), 201
