from __future__ import annotations

import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.reque.audit import record_event
from app.reque.constants import DEFAULT_ROLE
from app.reque.db import db_session
from app.reque.models import User

bp = Blueprint("auth", __name__)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
MIN_PASSWORD_LENGTH = 8

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def _login_attempts() -> dict[str, list[datetime]]:
    # Per-app so separate app instances never share lockouts.
    return current_app.extensions.setdefault("reque_login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> bool:
    attempts = _login_attempts()
    cutoff = datetime.utcnow() - timedelta(seconds=_LOGIN_RATE_WINDOW)
    for key in [k for k, times in attempts.items() if not any(t > cutoff for t in times)]:
        del attempts[key]
    recent = [t for t in attempts.get(ip, []) if t > cutoff]
    if recent:
        attempts[ip] = recent
    return len(recent) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts()[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only local paths, to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None):
        return redirect(url_for("routes.dashboard"))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        current_app.logger.warning("Login rate limit hit ip=%s request_id=%s", ip, getattr(g, "request_id", None))
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid email or password.", "danger")
        return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

    session.clear()
    session["user_id"] = user.id
    _login_attempts().pop(ip, None)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return redirect(_safe_next(nxt) or url_for("routes.dashboard"))


@bp.get("/register")
def register_get():
    if not current_app.config.get("ALLOW_REGISTRATION"):
        flash("Self-registration is disabled. Ask an administrator for an account.", "danger")
        return redirect(url_for("auth.login_get"))
    return render_template("auth/register.html", form={})


@bp.post("/register")
def register_post():
    if not current_app.config.get("ALLOW_REGISTRATION"):
        flash("Self-registration is disabled. Ask an administrator for an account.", "danger")
        return redirect(url_for("auth.login_get"))

    form = {
        "email": (request.form.get("email") or "").strip().lower(),
        "full_name": (request.form.get("full_name") or "").strip(),
    }
    password = request.form.get("password") or ""
    password_confirm = request.form.get("password_confirm") or ""

    errors: list[str] = []
    if not is_valid_email(form["email"]):
        errors.append("Please enter a valid email address.")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if password != password_confirm:
        errors.append("Passwords do not match.")

    s = db_session()
    if not errors and s.query(User).filter(User.email == form["email"]).one_or_none():
        errors.append("An account with that email already exists.")
    if errors:
        for msg in errors:
            flash(msg, "danger")
        return render_template("auth/register.html", form=form), 400

    # Self-registered profiles always start with the default role; any role sent by the client is ignored.
    user = User(
        email=form["email"],
        full_name=form["full_name"] or None,
        password_hash=generate_password_hash(password),
        role=DEFAULT_ROLE,
        is_active=True,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="auth.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "role": user.role},
    )
    s.commit()

    session.clear()
    session["user_id"] = user.id
    flash("Welcome to ReQue! Your account has been created.", "success")
    return redirect(url_for("routes.dashboard"))


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return redirect(url_for("auth.login_get"))
