# backend/checkout_engine/__init__.py
import logging

from flask import Flask, request
from flask.logging import default_handler

from .config import Config
from .extensions import db, migrate


def _configure_logging(app: Flask) -> None:
    """Service modules log under "checkout_engine.*"; route through Flask's handler."""
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    if not package_logger.handlers:
        package_logger.addHandler(default_handler)


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.payment_gateway import build_payment_gateway
    app.extensions["payment_gateway"] = app.config.get("PAYMENT_GATEWAY_INSTANCE") or build_payment_gateway(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.coupons import coupons_bp
    from .routes.checkout import checkout_bp
    from .routes.orders import orders_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(coupons_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(orders_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
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
