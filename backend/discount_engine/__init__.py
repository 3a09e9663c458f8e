# backend/discount_engine/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Process-local discount result cache, shared by every engine instance
    from .services.result_cache import InMemoryResultCache
    app.extensions["discount_cache"] = InMemoryResultCache(
        ttl_seconds=app.config["DISCOUNT_CACHE_TTL_SECONDS"],
    )

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
