# backend/storefront/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate, configure_sqlite_transactions


def create_app(config_overrides=None, providers=None, notifier=None) -> Flask:
    """
    Application factory.

    providers / notifier replace the adapters built from configuration
    (tests inject fakes here).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    with app.app_context():
        configure_sqlite_transactions(db.engine)

    # Payment providers and notifier are built once and shared by services
    from .providers import build_providers
    from .services.notification_service import build_notifier

    app.extensions["payment_providers"] = (
        providers if providers is not None else build_providers(app.config)
    )
    app.extensions["notifier"] = notifier if notifier is not None else build_notifier(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.products import products_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)

    allowed_origins = set(app.config.get("CORS_ORIGINS", []))

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
