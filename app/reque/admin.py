from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from werkzeug.security import generate_password_hash

from app.reque.audit import event_metadata, record_event
from app.reque.auth import MIN_PASSWORD_LENGTH, is_valid_email
from app.reque.constants import DEFAULT_ROLE, ROLES
from app.reque.db import db_session
from app.reque.errors import PermissionDenied
from app.reque.models import AuditEvent, User
from app.reque.rbac import can_update_profile, can_view_profile, login_required, require_permission

bp = Blueprint("admin", __name__)

AUDIT_LIST_LIMIT = 200


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _password_errors(password: str, password_confirm: str) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    if password != password_confirm:
        return ["Passwords do not match."]
    return []


def _clean_avatar_url(raw: str | None) -> str | None:
    value = (raw or "").strip()
    if not value:
        return None
    if not value.startswith(("https://", "http://")):
        raise ValueError("Avatar URL must start with http:// or https://.")
    return value


@bp.get("/")
@login_required
def index():
    return redirect(url_for("admin.me"))


@bp.get("/me")
@login_required
def me():
    user = _current_user()
    if not can_view_profile(user, user.id):
        abort(403)
    return render_template("admin/me.html", user=user)


@bp.post("/me")
@login_required
def me_update():
    """Update the current profile's display fields. The role is never editable here."""
    s = db_session()
    user = _current_user()
    if "role" in request.form and request.form.get("role") != user.role:
        raise PermissionDenied("profile.change_role", "You cannot change your own role.")
    if not can_update_profile(user, user.id):
        abort(403)

    try:
        avatar_url = _clean_avatar_url(request.form.get("avatar_url"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("admin.me"))

    before = {"full_name": user.full_name, "avatar_url": user.avatar_url}
    user.full_name = (request.form.get("full_name") or "").strip() or None
    user.avatar_url = avatar_url
    after = {"full_name": user.full_name, "avatar_url": user.avatar_url}

    if before != after:
        record_event(
            s,
            actor=user,
            action="user.update_profile",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"before": before, "after": after},
        )
        s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("admin.me"))


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_LIST_LIMIT).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        metadata_for=event_metadata,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ============================================================================
# ACCOUNT MANAGEMENT (Admin Only)
# ============================================================================

@bp.get("/accounts")
@require_permission("users.manage")
def accounts_list():
    s = db_session()
    role = (request.args.get("role") or "").strip()
    q = s.query(User)
    if role in ROLES:
        q = q.filter(User.role == role)
    users = q.order_by(User.email.asc()).all()
    return render_template("admin/accounts/list.html", users=users, roles=ROLES, role=role)


@bp.get("/accounts/new")
@require_permission("users.manage")
def accounts_new_get():
    return render_template("admin/accounts/new.html", roles=ROLES, default_role=DEFAULT_ROLE)


@bp.post("/accounts/new")
@require_permission("users.manage")
def accounts_new_post():
    s = db_session()
    u = _current_user()

    email = (request.form.get("email") or "").strip().lower()
    full_name = (request.form.get("full_name") or "").strip() or None
    role = (request.form.get("role") or DEFAULT_ROLE).strip()
    password = request.form.get("password") or ""
    password_confirm = request.form.get("password_confirm") or ""

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    if role not in ROLES:
        errors.append("Invalid role.")
    errors.extend(_password_errors(password, password_confirm))

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.accounts_new_get"))

    new_user = User(
        email=email,
        full_name=full_name,
        password_hash=generate_password_hash(password),
        role=role,
        is_active=True,
    )
    s.add(new_user)
    s.flush()

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "role": role},
    )
    s.commit()
    flash(f"Account created for {email}.", "success")
    return redirect(url_for("admin.accounts_list"))


@bp.get("/accounts/<int:user_id>")
@require_permission("users.manage")
def accounts_detail(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return render_template("admin/accounts/detail.html", account=user, roles=ROLES)


@bp.post("/accounts/<int:user_id>/update")
@require_permission("users.manage")
def accounts_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    # Own role and active flag are never editable.
    if user.id == u.id:
        flash("You cannot modify your own account from this page.", "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))

    role = (request.form.get("role") or user.role).strip()
    if role not in ROLES:
        flash("Invalid role.", "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))

    before = {"is_active": user.is_active, "role": user.role, "full_name": user.full_name}
    user.is_active = request.form.get("is_active") == "1"
    user.role = role
    if "full_name" in request.form:
        user.full_name = (request.form.get("full_name") or "").strip() or None
    after = {"is_active": user.is_active, "role": user.role, "full_name": user.full_name}

    if before != after:
        record_event(
            s,
            actor=u,
            action="user.update",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"before": before, "after": after},
        )
        s.commit()
    flash(f"Account updated for {user.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))


@bp.post("/accounts/<int:user_id>/reset-password")
@require_permission("users.manage")
def accounts_reset_password(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    errors = _password_errors(request.form.get("password") or "", request.form.get("password_confirm") or "")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))

    user.password_hash = generate_password_hash(request.form.get("password") or "")

    record_event(
        s,
        actor=u,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": u.email},
    )
    s.commit()
    flash(f"Password reset for {user.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))
