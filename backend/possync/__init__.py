# backend/possync/__init__.py
from flask import Flask, request

from .config import Config, DEV_JWT_SECRET
from .extensions import db, migrate

INSECURE_ENVS = {"development", "testing"}


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.from_mapping(test_config)

    if not app.config.get("JWT_SECRET"):
        if app.config["APP_ENV"] not in INSECURE_ENVS:
            raise RuntimeError("JWT_SECRET must be set outside development/testing")
        app.logger.warning("JWT_SECRET not set; using the development secret (APP_ENV=%s)", app.config["APP_ENV"])
        app.config["JWT_SECRET"] = DEV_JWT_SECRET

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.conflicts import conflicts_bp
    from .routes.records import records_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(conflicts_bp)
    app.register_blueprint(records_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
