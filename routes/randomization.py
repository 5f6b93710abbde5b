# routes/randomization.py
from flask import Blueprint, current_app, g, request, jsonify
from auth import ALL_ROLES, DESIGN_ROLES, RANDOMIZE_ROLES, UNBLIND_ROLES, role_required
from models import db
from services.engine import RandomizationEngine

randomization_bp = Blueprint("randomization", __name__, url_prefix="/api/randomization")

STATUS_FOR_ERROR = {
    "validation": 400,
    "state": 409,
    "exhausted": 409,
    "not_found": 404,
    "infrastructure": 500,
}


def _engine():
    return RandomizationEngine(db.session, preview_limit=current_app.config["RANDOMIZATION_PREVIEW_LIMIT"])


def _respond(result, success_status=200):
    if result["success"]:
        return jsonify(result), success_status
    return jsonify(result), STATUS_FOR_ERROR.get(result.get("error"), 400)


# --- Configuration ---

@randomization_bp.route('/studies/<int:study_id>/config', methods=['GET'])
@role_required(*DESIGN_ROLES)
def get_config(study_id):
    return _respond(_engine().get_config(study_id))


@randomization_bp.route('/configs/<int:config_id>', methods=['GET'])
@role_required(*DESIGN_ROLES)
def get_config_by_id(config_id):
    return _respond(_engine().get_config_by_id(config_id))


@randomization_bp.route('/configs', methods=['POST'])
@role_required(*DESIGN_ROLES)
def create_config():
    data = request.get_json() or {}
    return _respond(_engine().save_config(data, g.current_user.id), 201)


@randomization_bp.route('/configs/<int:config_id>', methods=['PUT'])
@role_required(*DESIGN_ROLES)
def update_config(config_id):
    data = request.get_json() or {}
    return _respond(_engine().update_config(config_id, data, g.current_user.id))


@randomization_bp.route('/configs/<int:config_id>/generate', methods=['POST'])
@role_required(*DESIGN_ROLES)
def generate_list(config_id):
    return _respond(_engine().generate_list(config_id, g.current_user.id))


@randomization_bp.route('/configs/<int:config_id>/activate', methods=['POST'])
@role_required(*DESIGN_ROLES)
def activate_config(config_id):
    return _respond(_engine().activate_config(config_id, g.current_user.id))


@randomization_bp.route('/configs/<int:config_id>/stats', methods=['GET'])
@role_required(*DESIGN_ROLES)
def get_list_stats(config_id):
    return _respond(_engine().get_list_stats(config_id))


@randomization_bp.route('/configs/test', methods=['POST'])
@role_required(*DESIGN_ROLES)
def test_config():
    data = request.get_json() or {}
    return _respond(_engine().test_config(data))


@randomization_bp.route('/configs/<int:config_id>/test', methods=['GET'])
@role_required(*DESIGN_ROLES)
def test_saved_config(config_id):
    return _respond(_engine().test_saved_config(config_id))


# --- Allocation ---

@randomization_bp.route('/randomize', methods=['POST'])
@role_required(*RANDOMIZE_ROLES)
def randomize():
    data = request.get_json() or {}
    try:
        study_id = int(data.get('study_id'))
        subject_id = int(data.get('subject_id'))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "validation",
                        "message": "study_id and subject_id are required"}), 400

    stratum_values = data.get('stratum_values') or {}
    if not isinstance(stratum_values, dict):
        return jsonify({"success": False, "error": "validation",
                        "message": "stratum_values must be an object"}), 400

    result = _engine().randomize_subject(study_id, subject_id, g.current_user.id, stratum_values)
    return _respond(result, 201)


@randomization_bp.route('/subjects/<int:subject_id>', methods=['GET'])
@role_required(*ALL_ROLES)
def get_subject_randomization(subject_id):
    return _respond(_engine().get_subject_randomization(subject_id))


@randomization_bp.route('/subjects/<int:subject_id>/can-randomize', methods=['GET'])
@role_required(*ALL_ROLES)
def can_randomize(subject_id):
    return _respond(_engine().can_randomize(subject_id))


@randomization_bp.route('/subjects/<int:subject_id>/unblind', methods=['POST'])
@role_required(*UNBLIND_ROLES)
def unblind(subject_id):
    reason = (request.get_json() or {}).get('reason')
    return _respond(_engine().unblind_subject(subject_id, g.current_user.id, reason))


@randomization_bp.route('/unblinding-events', methods=['GET'])
@role_required(*UNBLIND_ROLES)
def get_unblinding_events():
    study_id = request.args.get('study_id', type=int)
    if not study_id:
        return jsonify({"success": False, "error": "validation", "message": "study_id is required"}), 400
    return _respond(_engine().get_unblinding_events(study_id))
