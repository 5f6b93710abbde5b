from flask import Blueprint, request, jsonify
from werkzeug.security import generate_password_hash
from auth import ALL_ROLES, role_required
from models import db, Users

users_bp = Blueprint('users', __name__, url_prefix='/api/users')

# GET: List all users (admin only)
@users_bp.route('', methods=['GET'])
@role_required("admin")
def get_users():
    users = Users.query.all()
    return jsonify([
        {
            "id": user.id,
            "username": user.username,
            "role": user.role
        } for user in users
    ]), 200

# POST: Create user (admin only)
@users_bp.route('', methods=['POST'])
@role_required("admin")
def create_user():
    data = request.get_json() or {}
    if not data.get("username") or not data.get("password"):
        return jsonify({"success": False, "message": "Username and password are required"}), 400
    if data.get("role") not in ALL_ROLES:
        return jsonify({"success": False, "message": f"Role must be one of: {', '.join(ALL_ROLES)}"}), 400
    if Users.query.filter_by(username=data["username"]).first():
        return jsonify({"success": False, "message": "Username already exists"}), 400

    new_user = Users(
        username=data["username"],
        password=generate_password_hash(data["password"]),
        role=data["role"],
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        title=data.get("title")
    )
    db.session.add(new_user)
    db.session.commit()
    return jsonify({"success": True, "id": new_user.id, "message": "User created successfully."}), 201

# POST: Update user role
@users_bp.route('/<int:user_id>/update-role', methods=['POST'])
@role_required("admin")
def update_role(user_id):
    data = request.get_json() or {}
    new_role = data.get('role')
    if new_role not in ALL_ROLES:
        return jsonify({"success": False, "message": "A valid role is required"}), 400

    user = db.session.get(Users, user_id)
    if not user:
        return jsonify({"success": False, "message": "User not found"}), 404

    user.role = new_role
    db.session.commit()
    return jsonify({"success": True, "message": "Role updated"}), 200
