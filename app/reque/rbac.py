"""
Role + ownership permission evaluator.

Every rule here is a pure function of (role, ownership, assignment). The
service layer calls these before any write; templates call them to decide
which controls to render.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any

from flask import abort, g, redirect, request, url_for
from sqlalchemy.orm import Query, Session

from app.reque.constants import ROLE_ADMIN, ROLE_GUEST, ROLE_TEAM_MEMBER, ROLE_USER
from app.reque.models import User

if TYPE_CHECKING:
    from app.reque.modules.requests.models import Request, RequestAttachment, RequestComment


# Role-level permissions (no ownership involved).
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_ADMIN: frozenset(
        {
            "requests.view",
            "requests.view_all",
            "requests.create",
            "requests.edit_any",
            "requests.delete_any",
            "profile.edit",
            "users.manage",
            "audit.view",
        }
    ),
    ROLE_TEAM_MEMBER: frozenset({"requests.view", "requests.view_all", "requests.create", "profile.edit"}),
    ROLE_USER: frozenset({"requests.view", "requests.create", "profile.edit"}),
    ROLE_GUEST: frozenset({"requests.view", "profile.edit"}),
}


def _role(user: User | None) -> str | None:
    if not user or not user.is_active:
        return None
    return user.role


def _uid(user: User | None) -> int | None:
    if _role(user) is None:
        return None
    return user.id  # type: ignore[union-attr]


def user_has_permission(user: User | None, permission_key: str) -> bool:
    role = _role(user)
    if role is None:
        return False
    return permission_key in ROLE_PERMISSIONS.get(role, frozenset())


def is_admin(user: User | None) -> bool:
    return _role(user) == ROLE_ADMIN


def is_staff(user: User | None) -> bool:
    """Admins and team members: the roles that triage every request."""
    return _role(user) in (ROLE_ADMIN, ROLE_TEAM_MEMBER)


# ---------- Requests ----------
def can_create_request(user: User | None) -> bool:
    return user_has_permission(user, "requests.create")


def can_view_all_requests(user: User | None) -> bool:
    return user_has_permission(user, "requests.view_all")


def can_view_request(user: User | None, created_by_user_id: int) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    if is_staff(user):
        return True
    return created_by_user_id == uid


def can_edit_request(user: User | None, created_by_user_id: int, assigned_to_user_id: int | None = None) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    if is_admin(user):
        return True
    if _role(user) == ROLE_TEAM_MEMBER and assigned_to_user_id == uid:
        return True
    return created_by_user_id == uid


def can_delete_request(user: User | None, created_by_user_id: int) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    if is_admin(user):
        return True
    return created_by_user_id == uid


def can_assign_request(user: User | None, created_by_user_id: int, assigned_to_user_id: int | None = None) -> bool:
    return is_staff(user) and can_edit_request(user, created_by_user_id, assigned_to_user_id)


def can_set_assignee(user: User | None, created_by_user_id: int, assignee_id: int | None) -> bool:
    """
    Post-assignment check. Admins and the creator may hand a request to anyone;
    an assigned team member may only leave it assigned to themselves.
    """
    uid = _uid(user)
    if uid is None:
        return False
    if is_admin(user) or created_by_user_id == uid:
        return True
    return assignee_id == uid


def can_comment_on_request(user: User | None, created_by_user_id: int) -> bool:
    if _role(user) in (None, ROLE_GUEST):
        return False
    return can_view_request(user, created_by_user_id)


# ---------- Comments ----------
def can_edit_comment(user: User | None, comment_user_id: int) -> bool:
    uid = _uid(user)
    return uid is not None and comment_user_id == uid


def can_delete_comment(user: User | None, comment_user_id: int) -> bool:
    return is_admin(user) or can_edit_comment(user, comment_user_id)


# ---------- Attachments ----------
def can_upload_attachment(user: User | None, created_by_user_id: int, assigned_to_user_id: int | None = None) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    if is_admin(user):
        return True
    return uid in (created_by_user_id, assigned_to_user_id)


def can_delete_attachment(user: User | None, uploaded_by_user_id: int) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    return is_admin(user) or uploaded_by_user_id == uid


# ---------- Profiles ----------
def can_view_profile(user: User | None, profile_id: int) -> bool:
    uid = _uid(user)
    if uid is None:
        return False
    return is_admin(user) or profile_id == uid


def can_update_profile(user: User | None, profile_id: int, *, changes_role: bool = False) -> bool:
    """Owners may edit their own profile but never their own role; admins may edit anything."""
    uid = _uid(user)
    if uid is None:
        return False
    if is_admin(user):
        return True
    return profile_id == uid and not changes_role


def can_manage_users(user: User | None) -> bool:
    return user_has_permission(user, "users.manage")


@dataclass(frozen=True)
class RequestCapabilities:
    can_view: bool
    can_edit: bool
    can_delete: bool
    can_assign: bool
    can_comment: bool
    can_upload: bool
    can_reassign: bool = False


def capabilities_for(user: User | None, req: "Request") -> RequestCapabilities:
    created_by = req.created_by_user_id
    assigned_to = req.assigned_to_user_id
    return RequestCapabilities(
        can_view=can_view_request(user, created_by),
        can_edit=can_edit_request(user, created_by, assigned_to),
        can_delete=can_delete_request(user, created_by),
        can_assign=can_assign_request(user, created_by, assigned_to),
        can_comment=can_comment_on_request(user, created_by),
        can_upload=can_upload_attachment(user, created_by, assigned_to),
        can_reassign=can_assign_request(user, created_by, assigned_to) and can_set_assignee(user, created_by, None),
    )


def comment_capabilities(user: User | None, comment: "RequestComment") -> tuple[bool, bool]:
    return can_edit_comment(user, comment.user_id), can_delete_comment(user, comment.user_id)


def attachment_deletable(user: User | None, attachment: "RequestAttachment") -> bool:
    return can_delete_attachment(user, attachment.uploaded_by_user_id)


def visible_requests_query(s: Session, user: User | None) -> Query:
    """Requests the user may read: staff see all, everyone else only their own."""
    from app.reque.modules.requests.models import Request

    q = s.query(Request)
    uid = _uid(user)
    if uid is None:
        return q.filter(Request.id.is_(None))
    if is_staff(user):
        return q
    return q.filter(Request.created_by_user_id == uid)


def _redirect_to_login():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _redirect_to_login()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> redirect to login
            if not user or not user.is_active:
                return _redirect_to_login()
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
