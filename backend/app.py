"""Application factory for the Purgarr Flask API server.

Uses the Flask Application Factory pattern: create_app() builds and
configures the application, initializes extensions, registers blueprints,
and starts background schedulers.
"""

import atexit
import json
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, g, has_app_context, jsonify

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class StructuredJSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging (ELK, Loki, etc.)."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = getattr(g, "request_id", None) if has_app_context() else None
        if request_id:
            entry["request_id"] = request_id

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


def _setup_logging(settings) -> None:
    """Configure the root logger: stdout always, rotating file when log_file is set."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)

    if settings.log_format.lower() == "json":
        formatter: logging.Formatter = StructuredJSONFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT)
    for handler in root.handlers:
        handler.setFormatter(formatter)

    log_file = settings.log_file
    already = any(isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(log_file)
                  for h in root.handlers) if log_file else True
    if not already:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
            fh.setLevel(log_level)
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            logging.getLogger(__name__).warning("Could not set up log file %s: %s", log_file, e)

    # Per-request connection chatter
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def create_app(testing=False):
    """Create and configure the Flask application.

    Args:
        testing: If True, skip scheduler startup (for tests and verification).

    Returns:
        Configured Flask application instance.
    """
    app = Flask(__name__)
    app.config["TESTING"] = testing

    from config import get_settings
    settings = get_settings()

    _setup_logging(settings)
    logger = logging.getLogger(__name__)

    from error_handler import register_error_handlers
    register_error_handlers(app)

    # ---- Flask-SQLAlchemy initialization ----
    db_url = settings.get_database_url()
    app.config["SQLALCHEMY_DATABASE_URI"] = db_url
    if db_url.startswith("sqlite"):
        # Worker threads (sync sources, deletion batches) each open their own connection
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
    else:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}

    from extensions import db as sa_db
    sa_db.init_app(app)

    with app.app_context():
        import db.models  # noqa: F401
        sa_db.create_all()
        if db_url.startswith("sqlite"):
            from sqlalchemy import text
            with sa_db.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA busy_timeout=5000"))
                conn.commit()

        from events import init_event_system
        init_event_system(app)

        from notifier import init_notifications
        init_notifications(app)

        from routes import register_blueprints
        register_blueprints(app)
        _register_app_routes(app)

        if not testing:
            _start_schedulers(settings, app)

    logger.info("Purgarr initialized (database: %s)", "sqlite" if db_url.startswith("sqlite") else "external")
    return app


def _register_app_routes(app):
    """Register app-level routes."""

    @app.route("/", methods=["GET"])
    def index():
        from version import __version__
        return jsonify({
            "name": "Purgarr",
            "version": __version__,
            "api": "/api/v1/health",
        })


def _start_schedulers(settings, app):
    """Start background schedulers configured to run on startup."""
    logger = logging.getLogger(__name__)
    atexit.register(_stop_schedulers)

    if settings.sync_interval > 0:
        try:
            from sync_scheduler import get_sync_scheduler
            get_sync_scheduler(app).start(settings.sync_interval, settings.sync_interval_unit,
                                          run_immediately=settings.sync_on_startup)
        except Exception as e:
            logger.warning("Sync scheduler start failed: %s", e)

    if settings.deletion_schedule_on_startup:
        try:
            from deletion_scheduler import get_deletion_scheduler
            get_deletion_scheduler(app).start(settings.deletion_default_interval_minutes)
        except Exception as e:
            logger.warning("Deletion scheduler start failed: %s", e)


def _stop_schedulers():
    """Cancel scheduler timers on interpreter exit. Runs already in flight finish on their own."""
    from deletion_scheduler import stop_deletion_scheduler
    from sync_scheduler import stop_sync_scheduler

    stop_sync_scheduler()
    stop_deletion_scheduler()


if __name__ == "__main__":
    from config import get_settings
    create_app().run(host="0.0.0.0", port=get_settings().port)
