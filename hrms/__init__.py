import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Type

from flask import Flask

from .cli import register_cli_commands
from .config import Config
from .extensions import db, limiter, login_manager, migrate
from .routes.api_v1 import api_v1_bp
from .swagger_config import init_swagger
from .version import __version__


def create_app(
    config_object: Optional[Type[Config]] = None,
    instance_path: Optional[Path] = None,
) -> Flask:
    if instance_path is not None:
        app = Flask(
            __name__, instance_path=str(instance_path), instance_relative_config=True
        )
    else:
        app = Flask(__name__, instance_relative_config=True)
    cfg = config_object or Config
    app.config.from_object(cfg)

    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    configure_logging(app)
    register_extensions(app)
    register_blueprints(app)
    register_cli_commands(app)
    init_swagger(app)

    app.config.setdefault("HRMS_VERSION", __version__)

    if app.config.get("INTEGRATION_SYNC_ENABLED") and not app.config.get("TESTING"):
        from .services.sync_scheduler import init_scheduler

        init_scheduler(app)

    return app


def configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO"), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("hrms").setLevel(level)

    log_file = app.config.get("LOG_FILE")
    if not log_file or app.config.get("TESTING"):
        return
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    handler.setLevel(level)
    app.logger.addHandler(handler)
    logging.getLogger("hrms").addHandler(handler)


def register_extensions(app: Flask) -> None:
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(api_v1_bp)
