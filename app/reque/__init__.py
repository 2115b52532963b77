import logging
import os
from datetime import timedelta

from flask import Flask, flash, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.reque.config import load_config
from app.reque.constants import ACTIVITY_LABELS, PRIORITY_LABELS, ROLE_LABELS, STATUS_LABELS
from app.reque.db import init_db, teardown_db_session
from app.reque.errors import PermissionDenied
from app.reque.routes import bp as routes_bp
from app.reque.auth import bp as auth_bp, load_current_user
from app.reque.admin import bp as admin_bp
from app.reque.modules.requests.admin import bp as requests_bp

logger = logging.getLogger(__name__)

# Tables (and the columns added after the first release) the code expects.
EXPECTED_SCHEMA: dict[str, tuple[str, ...]] = {
    "users": ("role", "full_name", "avatar_url", "is_active"),
    "requests": ("status", "priority", "due_date", "assigned_to_user_id"),
    "request_comments": ("comment_text",),
    "request_activity": ("activity_type", "old_value", "new_value"),
    "request_attachments": ("storage_key", "sha256"),
    "audit_events": ("action",),
}

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.reque import rbac
    from app.reque.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            return rbac.user_has_permission(getattr(g, "current_user", None), key)

        return {
            "has_perm": has_perm,
            "can_create_request": rbac.can_create_request(getattr(g, "current_user", None)),
            "role_labels": ROLE_LABELS,
            "status_labels": STATUS_LABELS,
            "priority_labels": PRIORITY_LABELS,
            "activity_labels": ACTIVITY_LABELS,
            "allow_registration": bool(app.config.get("ALLOW_REGISTRATION")),
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("filesize")
    def _filesize_filter(value) -> str:
        n = int(value or 0)
        if n < 1024:
            return f"{n} B"
        if n < 1024 * 1024:
            return f"{n / 1024:.1f} KB"
        return f"{n / (1024 * 1024):.1f} MB"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login is exempt; register and logout are not.
            if request.endpoint == "auth.login_post":
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):

        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(requests_bp, url_prefix="/requests")

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema drift detection runs once, on the first real request, so that
    # scripts and tests can create tables after the app is built.
    app.extensions["reque_schema_health"] = {"checked": False, "ok": True, "missing": []}

    def _run_schema_health_check() -> None:
        state = app.extensions["reque_schema_health"]
        missing: list[str] = []
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is None:
            raise RuntimeError("sqlalchemy_engine not initialized")
        insp = sa_inspect(engine)
        for table, columns in EXPECTED_SCHEMA.items():
            if not insp.has_table(table):
                missing.append(f"{table} (table)")
                continue
            cols = {c["name"] for c in insp.get_columns(table)}
            missing.extend(f"{table}.{col}" for col in columns if col not in cols)

        state["checked"] = True
        state["missing"] = missing
        state["ok"] = not missing
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    @app.before_request
    def _schema_health_guardrail():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        state = app.extensions["reque_schema_health"]
        if not state["checked"]:
            _run_schema_health_check()
        if state["ok"]:
            return None
        return render_template("errors/schema_out_of_date.html", missing=state["missing"]), 500

    @app.errorhandler(PermissionDenied)
    def _err_permission_denied(e: PermissionDenied):
        g.missing_permission = e.capability
        return _err_403(e)

    @app.errorhandler(400)
    def _err_400(e):
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):
        limit_mb = max(1, int(app.config.get("MAX_ATTACHMENT_BYTES") or 0) // (1024 * 1024))
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("requests.list_requests")), 302

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")

    return app
