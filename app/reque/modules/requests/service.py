from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, BinaryIO

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query
from werkzeug.utils import secure_filename

from app.reque import rbac
from app.reque.audit import record_event
from app.reque.constants import (
    ACTIVITY_ASSIGNMENT_CHANGED,
    ACTIVITY_DUE_DATE_CHANGED,
    ACTIVITY_FILE_UPLOADED,
    ACTIVITY_PRIORITY_CHANGED,
    ACTIVITY_REQUEST_CREATED,
    ACTIVITY_STATUS_CHANGED,
    ASSIGNABLE_ROLES,
    CLOSED_STATUSES,
    PRIORITIES,
    PRIORITY_LABELS,
    PRIORITY_NORMAL,
    STATUSES,
    STATUS_LABELS,
    STATUS_NEW,
)
from app.reque.errors import PermissionDenied, ValidationError
from app.reque.models import User
from app.reque.modules.requests.models import Request, RequestActivity, RequestAttachment, RequestComment
from app.reque.storage import Storage, StorageError, storage_from_config

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 255
COMMENT_MAX_LENGTH = 10_000


# ---------- Validation helpers ----------
def normalize_title(raw: str | None) -> str:
    title = (raw or "").strip()
    if not title:
        raise ValidationError("Please enter a title.")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    return title


def normalize_description(raw: str | None) -> str | None:
    return (raw or "").strip() or None


def validate_status(raw: str | None) -> str:
    value = (raw or "").strip()
    if value not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    return value


def validate_priority(raw: str | None) -> str:
    value = (raw or "").strip()
    if value not in PRIORITIES:
        raise ValidationError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    return value


def parse_due_date(raw: str | None) -> date | None:
    """Parse YYYY-MM-DD (HTML date input). Blank clears the due date."""
    s = (raw or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError("Due date must be YYYY-MM-DD.")


def _require(allowed: bool, capability: str) -> None:
    if not allowed:
        raise PermissionDenied(capability)


def _log_activity(
    s: "Session",
    req: Request,
    actor: User | None,
    activity_type: str,
    *,
    old_value: str | None = None,
    new_value: str | None = None,
) -> RequestActivity:
    a = RequestActivity(
        request_id=req.id,
        user_id=actor.id if actor else None,
        activity_type=activity_type,
        old_value=old_value,
        new_value=new_value,
    )
    s.add(a)
    return a


def _date_text(d: date | None) -> str | None:
    return d.isoformat() if d else None


def _id_text(v: int | None) -> str | None:
    return str(v) if v is not None else None


# ---------- Requests ----------
def create_request(s: "Session", payload: Mapping[str, str | None], user: User) -> Request:
    """Create a request owned by `user`. Status always starts as `new`."""
    _require(rbac.can_create_request(user), "requests.create")

    title = normalize_title(payload.get("title"))
    priority_raw = (payload.get("priority") or "").strip() or PRIORITY_NORMAL
    priority = validate_priority(priority_raw)
    due_date = parse_due_date(payload.get("due_date"))

    req = Request(
        title=title,
        description=normalize_description(payload.get("description")),
        status=STATUS_NEW,
        priority=priority,
        due_date=due_date,
        created_by_user_id=user.id,
    )
    s.add(req)
    s.flush()

    _log_activity(s, req, user, ACTIVITY_REQUEST_CREATED, new_value=req.title)
    record_event(
        s,
        actor=user,
        action="request.create",
        entity_type="Request",
        entity_id=str(req.id),
        metadata={"title": req.title, "priority": req.priority, "due_date": _date_text(req.due_date)},
    )
    return req


def update_request_details(s: "Session", req: Request, payload: Mapping[str, str | None], user: User) -> bool:
    """Edit title/description. Returns True when something changed."""
    _require(rbac.can_edit_request(user, req.created_by_user_id, req.assigned_to_user_id), "requests.edit")

    title = normalize_title(payload.get("title"))
    description = normalize_description(payload.get("description"))
    changes: dict[str, dict[str, str | None]] = {}
    if title != req.title:
        changes["title"] = {"old": req.title, "new": title}
        req.title = title
    if description != req.description:
        changes["description"] = {"old": req.description, "new": description}
        req.description = description

    if changes:
        record_event(
            s,
            actor=user,
            action="request.edit",
            entity_type="Request",
            entity_id=str(req.id),
            metadata={"fields_changed": sorted(changes)},
        )
    return bool(changes)


def change_status(s: "Session", req: Request, raw_status: str | None, user: User) -> bool:
    _require(rbac.can_edit_request(user, req.created_by_user_id, req.assigned_to_user_id), "requests.edit")
    new_status = validate_status(raw_status)
    if new_status == req.status:
        return False
    old_status = req.status
    req.status = new_status
    _log_activity(s, req, user, ACTIVITY_STATUS_CHANGED, old_value=old_status, new_value=new_status)
    return True


def change_priority(s: "Session", req: Request, raw_priority: str | None, user: User) -> bool:
    _require(rbac.can_edit_request(user, req.created_by_user_id, req.assigned_to_user_id), "requests.edit")
    new_priority = validate_priority(raw_priority)
    if new_priority == req.priority:
        return False
    old_priority = req.priority
    req.priority = new_priority
    _log_activity(s, req, user, ACTIVITY_PRIORITY_CHANGED, old_value=old_priority, new_value=new_priority)
    return True


def change_due_date(s: "Session", req: Request, raw_due_date: str | None, user: User) -> bool:
    _require(rbac.can_edit_request(user, req.created_by_user_id, req.assigned_to_user_id), "requests.edit")
    new_due = parse_due_date(raw_due_date)
    if new_due == req.due_date:
        return False
    old_due = req.due_date
    req.due_date = new_due
    _log_activity(
        s,
        req,
        user,
        ACTIVITY_DUE_DATE_CHANGED,
        old_value=_date_text(old_due),
        new_value=_date_text(new_due),
    )
    return True


def assignable_profiles(s: "Session") -> list[User]:
    return (
        s.query(User)
        .filter(User.is_active.is_(True))
        .filter(User.role.in_(sorted(ASSIGNABLE_ROLES)))
        .order_by(User.full_name.asc(), User.email.asc())
        .all()
    )


def parse_assignee_id(raw: str | None) -> int | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError("Invalid assignee.")


def assign_request(s: "Session", req: Request, assignee_id: int | None, user: User) -> bool:
    """Assign (or unassign with None). Only active admins/team members can be assignees."""
    _require(rbac.can_assign_request(user, req.created_by_user_id, req.assigned_to_user_id), "requests.assign")
    if assignee_id == req.assigned_to_user_id:
        return False
    _require(rbac.can_set_assignee(user, req.created_by_user_id, assignee_id), "requests.assign")
    if assignee_id is not None:
        assignee = s.get(User, assignee_id)
        if not assignee or not assignee.is_active or assignee.role not in ASSIGNABLE_ROLES:
            raise ValidationError("Requests can only be assigned to active admins or team members.")
    old_id = req.assigned_to_user_id
    req.assigned_to_user_id = assignee_id
    _log_activity(
        s,
        req,
        user,
        ACTIVITY_ASSIGNMENT_CHANGED,
        old_value=_id_text(old_id),
        new_value=_id_text(assignee_id),
    )
    return True


def apply_request_changes(s: "Session", req: Request, payload: Mapping[str, str | None], user: User) -> list[str]:
    """
    Apply any of status/priority/due_date/assigned_to present in payload.
    Returns the names of the fields that actually changed.
    """
    changed: list[str] = []
    if "status" in payload and change_status(s, req, payload.get("status"), user):
        changed.append("status")
    if "priority" in payload and change_priority(s, req, payload.get("priority"), user):
        changed.append("priority")
    if "due_date" in payload and change_due_date(s, req, payload.get("due_date"), user):
        changed.append("due_date")
    if "assigned_to" in payload:
        assignee_id = parse_assignee_id(payload.get("assigned_to"))
        if assignee_id != req.assigned_to_user_id and assign_request(s, req, assignee_id, user):
            changed.append("assigned_to")
    return changed


def delete_request(s: "Session", req: Request, user: User) -> list[str]:
    """
    Delete a request with its comments, activity and attachment rows.
    Returns attachment storage keys; purge them after the commit succeeds.
    """
    _require(rbac.can_delete_request(user, req.created_by_user_id), "requests.delete")
    keys = [
        k
        for (k,) in s.query(RequestAttachment.storage_key).filter(RequestAttachment.request_id == req.id).all()
    ]
    comment_count = s.query(func.count(RequestComment.id)).filter(RequestComment.request_id == req.id).scalar() or 0
    record_event(
        s,
        actor=user,
        action="request.delete",
        entity_type="Request",
        entity_id=str(req.id),
        metadata={
            "title": req.title,
            "status": req.status,
            "created_by_user_id": req.created_by_user_id,
            "attachments": len(keys),
            "comments": comment_count,
        },
    )
    s.delete(req)
    return keys


def purge_blobs(keys: Iterable[str], *, storage: Storage | None = None) -> int:
    """Best-effort blob cleanup after a committed delete. Returns the number removed."""
    st = storage or _storage()
    removed = 0
    for key in keys:
        try:
            st.delete(key)
            removed += 1
        except (StorageError, OSError) as e:
            logger.warning("Failed to delete stored object %s: %s", key, e)
    return removed


# ---------- Listing ----------
@dataclass(frozen=True)
class RequestFilters:
    status: str | None = None
    priority: str | None = None
    created_by_user_id: int | None = None
    assigned_to_user_id: int | None = None
    search: str | None = None

    @classmethod
    def from_args(cls, args: Mapping[str, str]) -> "RequestFilters":
        status = (args.get("status") or "").strip() or None
        priority = (args.get("priority") or "").strip() or None
        return cls(
            status=status if status in STATUSES else None,
            priority=priority if priority in PRIORITIES else None,
            search=(args.get("q") or "").strip() or None,
        )


def list_requests(s: "Session", user: User | None, filters: RequestFilters | None = None) -> Query:
    """Visible requests matching filters, newest first."""
    f = filters or RequestFilters()
    q = rbac.visible_requests_query(s, user)
    if f.status:
        q = q.filter(Request.status == f.status)
    if f.priority:
        q = q.filter(Request.priority == f.priority)
    if f.created_by_user_id is not None:
        q = q.filter(Request.created_by_user_id == f.created_by_user_id)
    if f.assigned_to_user_id is not None:
        q = q.filter(Request.assigned_to_user_id == f.assigned_to_user_id)
    if f.search:
        escaped = f.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        like = f"%{escaped}%"
        q = q.filter(or_(Request.title.ilike(like, escape="\\"), Request.description.ilike(like, escape="\\")))
    return q.order_by(Request.created_at.desc(), Request.id.desc())


def get_visible_request(s: "Session", user: User | None, request_id: int) -> Request | None:
    req = s.get(Request, request_id)
    if not req or not rbac.can_view_request(user, req.created_by_user_id):
        return None
    return req


def request_stats(s: "Session", user: User | None, *, today: date | None = None) -> dict:
    today = today or date.today()
    visible = rbac.visible_requests_query(s, user).subquery()

    by_status = {k: 0 for k in STATUSES}
    for status, count in s.query(visible.c.status, func.count()).group_by(visible.c.status).all():
        by_status[status] = count

    by_priority = {k: 0 for k in PRIORITIES}
    for priority, count in s.query(visible.c.priority, func.count()).group_by(visible.c.priority).all():
        by_priority[priority] = count

    overdue = (
        s.query(func.count())
        .select_from(visible)
        .filter(visible.c.due_date.isnot(None))
        .filter(visible.c.due_date < today)
        .filter(visible.c.status.notin_(sorted(CLOSED_STATUSES)))
        .scalar()
    ) or 0

    assigned_open = 0
    if user is not None:
        assigned_open = (
            s.query(func.count())
            .select_from(visible)
            .filter(visible.c.assigned_to_user_id == user.id)
            .filter(visible.c.status.notin_(sorted(CLOSED_STATUSES)))
            .scalar()
        ) or 0

    return {
        "total": sum(by_status.values()),
        "open": sum(v for k, v in by_status.items() if k not in CLOSED_STATUSES),
        "by_status": by_status,
        "by_priority": by_priority,
        "overdue": overdue,
        "assigned_open": assigned_open,
    }


def describe_activity_value(activity_type: str, value: str | None, profiles: Mapping[int, User]) -> str | None:
    """Human-readable rendering of an activity old/new value."""
    if value is None:
        return None
    if activity_type == ACTIVITY_STATUS_CHANGED:
        return STATUS_LABELS.get(value, value)
    if activity_type == ACTIVITY_PRIORITY_CHANGED:
        return PRIORITY_LABELS.get(value, value)
    if activity_type == ACTIVITY_ASSIGNMENT_CHANGED:
        try:
            p = profiles.get(int(value))
        except ValueError:
            return value
        return p.display_name if p else "Unknown user"
    return value


def profiles_for_request(s: "Session", req: Request) -> dict[int, User]:
    """Every profile referenced by the request, its comments and its activity."""
    ids: set[int] = {req.created_by_user_id}
    if req.assigned_to_user_id:
        ids.add(req.assigned_to_user_id)
    ids.update(c.user_id for c in req.comments)
    for a in req.activity:
        if a.user_id:
            ids.add(a.user_id)
        if a.activity_type == ACTIVITY_ASSIGNMENT_CHANGED:
            for v in (a.old_value, a.new_value):
                if v and v.isdigit():
                    ids.add(int(v))
    if not ids:
        return {}
    return {u.id: u for u in s.query(User).filter(User.id.in_(ids)).all()}


# ---------- Comments ----------
def _normalize_comment(raw: str | None) -> str:
    text = (raw or "").strip()
    if not text:
        raise ValidationError("Comment text is required.")
    if len(text) > COMMENT_MAX_LENGTH:
        raise ValidationError(f"Comment must be at most {COMMENT_MAX_LENGTH} characters.")
    return text


def add_comment(s: "Session", req: Request, raw_text: str | None, user: User) -> RequestComment:
    _require(rbac.can_comment_on_request(user, req.created_by_user_id), "requests.comment")
    c = RequestComment(request_id=req.id, user_id=user.id, comment_text=_normalize_comment(raw_text))
    s.add(c)
    s.flush()
    record_event(
        s,
        actor=user,
        action="comment.create",
        entity_type="RequestComment",
        entity_id=str(c.id),
        metadata={"request_id": req.id},
    )
    return c


def edit_comment(s: "Session", comment: RequestComment, raw_text: str | None, user: User) -> RequestComment:
    _require(rbac.can_edit_comment(user, comment.user_id), "comments.edit")
    text = _normalize_comment(raw_text)
    if text == comment.comment_text:
        return comment
    before = comment.comment_text
    comment.comment_text = text
    record_event(
        s,
        actor=user,
        action="comment.update",
        entity_type="RequestComment",
        entity_id=str(comment.id),
        metadata={"request_id": comment.request_id, "before": before, "after": text},
    )
    return comment


def delete_comment(s: "Session", comment: RequestComment, user: User) -> None:
    _require(rbac.can_delete_comment(user, comment.user_id), "comments.delete")
    record_event(
        s,
        actor=user,
        action="comment.delete",
        entity_type="RequestComment",
        entity_id=str(comment.id),
        metadata={"request_id": comment.request_id, "author_user_id": comment.user_id},
    )
    s.delete(comment)


# ---------- Attachments ----------
def _storage() -> Storage:
    from flask import current_app

    return storage_from_config(current_app.config)


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str | None) -> str:
    fn = secure_filename(filename or "")
    return fn or "attachment.bin"


def build_attachment_storage_key(request_id: int, filename: str) -> str:
    # Random segment keeps same-named uploads from overwriting each other.
    return f"requests/{request_id}/{secrets.token_hex(8)}/{sanitize_upload_filename(filename)}"


def upload_attachment(
    s: "Session",
    req: Request,
    file_bytes: bytes,
    filename: str | None,
    content_type: str | None,
    user: User,
    *,
    max_bytes: int | None = None,
    storage: Storage | None = None,
) -> RequestAttachment:
    _require(rbac.can_upload_attachment(user, req.created_by_user_id, req.assigned_to_user_id), "attachments.upload")
    if not file_bytes:
        raise ValidationError("The selected file is empty.")
    if max_bytes is not None and len(file_bytes) > max_bytes:
        raise ValidationError(f"File too large. Maximum size is {max_bytes // (1024 * 1024) or 1}MB.")

    safe_name = sanitize_upload_filename(filename)
    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    storage_key = build_attachment_storage_key(req.id, safe_name)
    mime_type = (content_type or "application/octet-stream").strip()

    st = storage or _storage()
    st.put_bytes(storage_key, file_bytes, content_type=mime_type)

    att = RequestAttachment(
        request_id=req.id,
        storage_key=storage_key,
        filename=safe_name,
        file_size=size_bytes,
        mime_type=mime_type,
        sha256=sha256,
        uploaded_by_user_id=user.id,
    )
    try:
        s.add(att)
        s.flush()

        _log_activity(s, req, user, ACTIVITY_FILE_UPLOADED, new_value=safe_name)
        record_event(
            s,
            actor=user,
            action="attachment.upload",
            entity_type="RequestAttachment",
            entity_id=str(att.id),
            metadata={"request_id": req.id, "filename": safe_name, "sha256": sha256, "size_bytes": size_bytes},
        )
    except SQLAlchemyError:
        purge_blobs([storage_key], storage=st)
        raise
    return att


def open_attachment(
    s: "Session",
    att: RequestAttachment,
    user: User,
    *,
    storage: Storage | None = None,
) -> BinaryIO:
    _require(rbac.can_view_request(user, att.request.created_by_user_id), "attachments.download")
    fobj = (storage or _storage()).open(att.storage_key)
    record_event(
        s,
        actor=user,
        action="attachment.download",
        entity_type="RequestAttachment",
        entity_id=str(att.id),
        metadata={"request_id": att.request_id, "filename": att.filename},
    )
    return fobj


def delete_attachment(s: "Session", att: RequestAttachment, user: User) -> str:
    """Remove the attachment row. Returns its storage key for post-commit purge."""
    _require(rbac.can_delete_attachment(user, att.uploaded_by_user_id), "attachments.delete")
    record_event(
        s,
        actor=user,
        action="attachment.delete",
        entity_type="RequestAttachment",
        entity_id=str(att.id),
        metadata={"request_id": att.request_id, "filename": att.filename},
    )
    key = att.storage_key
    s.delete(att)
    return key
