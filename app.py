from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.security import check_password_hash
from datetime import timedelta
from flask_jwt_extended import JWTManager, create_access_token
import logging
import os
from models import db, Users
from routes.users import users_bp
from routes.studies import studies_bp
from routes.subjects import subjects_bp
from routes.randomization import randomization_bp


def create_app(test_config=None):
    app = Flask(__name__)

    # JWT & DB Configuration
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret")
    app.config["JWT_SECRET_KEY"] = app.config["SECRET_KEY"]
    app.config["JWT_TOKEN_LOCATION"] = ["headers"]
    app.config["JWT_HEADER_NAME"] = "Authorization"
    app.config["JWT_HEADER_TYPE"] = "Bearer"
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=2)

    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///local.db").replace("postgres://", "postgresql://")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["CORS_ORIGINS"] = os.environ.get("CORS_ORIGINS", "https://rctmanager.com").split(",")
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")
    app.config["RANDOMIZATION_PREVIEW_LIMIT"] = int(os.environ.get("RANDOMIZATION_PREVIEW_LIMIT", "50"))

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Init extensions
    db.init_app(app)
    jwt = JWTManager(app)
    CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}})

    # Register blueprints
    app.register_blueprint(users_bp)
    app.register_blueprint(studies_bp)
    app.register_blueprint(subjects_bp)
    app.register_blueprint(randomization_bp)

    # JWT error handlers
    @jwt.unauthorized_loader
    def handle_missing_token(error):
        return jsonify({"success": False, "message": "Token is missing!"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(error):
        return jsonify({"success": False, "message": "Invalid token!"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return jsonify({"success": False, "message": "Token has expired!"}), 401

    @app.before_request
    def handle_options_request():
        if request.method == "OPTIONS":
            response = app.make_default_options_response()
            headers = response.headers
            headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
            headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
            return response

    @app.route("/login", methods=["POST"])
    def login():
        data = request.get_json() or {}
        user = Users.query.filter_by(username=data.get("username")).first()
        if user and check_password_hash(user.password, data.get("password", "")):
            access_token = create_access_token(identity=str(user.id))
            app.logger.info("User logged in: user_id=%s", user.id)
            return jsonify({"success": True, "role": user.role, "token": access_token})
        app.logger.warning("Failed login for username=%s", data.get("username"))
        return jsonify({"success": False, "message": "Invalid credentials"}), 401

    return app


# Initialize tables
if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(debug=True)
