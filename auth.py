# auth.py
from functools import wraps

from flask import g, jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from models import db, Users

DESIGN_ROLES = ("admin", "studymanager")
RANDOMIZE_ROLES = ("admin", "investigator", "coordinator")
UNBLIND_ROLES = ("admin", "investigator")
ALL_ROLES = ("admin", "studymanager", "investigator", "coordinator", "monitor")


def role_required(*roles):
    """Require a valid token whose user holds one of ``roles``.

    The caller is available as ``g.current_user`` inside the view.
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            current_user = db.session.get(Users, int(get_jwt_identity()))
            if not current_user:
                return jsonify({"success": False, "message": "User not found"}), 404
            if roles and current_user.role not in roles:
                return jsonify({"success": False, "message": "Access denied"}), 403
            g.current_user = current_user
            return view(*args, **kwargs)
        return wrapper
    return decorator
