import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask

from app.pdms.auth import bp as auth_bp, load_current_user
from app.pdms.config import load_config
from app.pdms.db import init_db, teardown_db_session
from app.pdms.errors import register_error_handlers
from app.pdms.modules.document_control.api import bp as doc_control_bp
from app.pdms.modules.reports.api import bp as reports_bp
from app.pdms.modules.reports.tasks import init_celery
from app.pdms.routes import bp as routes_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(level=app.config["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if app.config["CELERY_BROKER_URL"] == "memory://":
            app.logger.warning("CELERY_BROKER_URL is unset; reports will be generated inline in the web process.")

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    init_celery(app)

    register_error_handlers(app)
    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(doc_control_bp, url_prefix="/api")
    app.register_blueprint(reports_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info(
        "create_app() complete; env=%s storage=%s reports_eager=%s",
        env or "(unset)",
        app.config.get("STORAGE_BACKEND"),
        app.extensions["celery"].conf.task_always_eager,
    )
    return app
