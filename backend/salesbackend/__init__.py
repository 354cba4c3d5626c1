# backend/salesbackend/__init__.py
from __future__ import annotations

from flask import Flask

from .config import Config
from .extensions import db


def create_app(config_object=None, **overrides) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)
    # Overrides must land before db.init_app, which builds the engine
    app.config.update(overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)

    # Import models so metadata is complete before create_all()
    from . import models  # noqa: F401

    # One sale-number sequence per application process
    from .services.numbering import SaleNumberGenerator
    app.extensions["sale_numbers"] = SaleNumberGenerator()

    from .cli import register_commands
    register_commands(app)

    return app
