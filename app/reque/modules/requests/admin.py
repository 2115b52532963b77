from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.reque import rbac
from app.reque.constants import PRIORITIES, PRIORITY_NORMAL, REQUESTS_PER_PAGE, STATUSES
from app.reque.db import db_session
from app.reque.errors import ValidationError
from app.reque.models import User
from app.reque.modules.requests.models import Request, RequestAttachment, RequestComment
from app.reque.modules.requests.service import (
    RequestFilters,
    add_comment,
    apply_request_changes,
    assign_request,
    assignable_profiles,
    change_due_date,
    change_priority,
    change_status,
    create_request,
    delete_attachment,
    delete_comment,
    delete_request,
    describe_activity_value,
    edit_comment,
    get_visible_request,
    list_requests as query_requests,
    open_attachment,
    parse_assignee_id,
    profiles_for_request,
    purge_blobs,
    update_request_details,
    upload_attachment,
)
from app.reque.rbac import login_required
from app.reque.storage import StorageError, storage_from_config

bp = Blueprint("requests", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_request_or_404(request_id: int) -> Request:
    # Invisible requests look exactly like missing ones.
    req = get_visible_request(db_session(), _current_user(), request_id)
    if not req:
        abort(404)
    return req


def _detail_redirect(request_id: int):
    return redirect(url_for("requests.request_detail", request_id=request_id))


def _render_list(endpoint: str, title: str, filters: RequestFilters):
    s = db_session()
    u = _current_user()

    page = max(1, request.args.get("page", 1, type=int) or 1)
    per_page = REQUESTS_PER_PAGE

    q = query_requests(s, u, filters)
    total = q.count()
    rows = q.offset((page - 1) * per_page).limit(per_page).all()
    total_pages = (total + per_page - 1) // per_page

    def build_url(p):
        args = dict(request.args)
        args["page"] = p
        return url_for(endpoint, **args)

    return render_template(
        "requests/list.html",
        title=title,
        list_endpoint=endpoint,
        requests=rows,
        search=filters.search or "",
        status_filter=filters.status or "",
        priority_filter=filters.priority or "",
        statuses=STATUSES,
        priorities=PRIORITIES,
        today=date.today(),
        page=page,
        total=total,
        total_pages=total_pages,
        build_url=build_url,
    )


# ---------- Lists ----------
@bp.get("")
@login_required
def list_requests():
    u = _current_user()
    if not rbac.can_view_all_requests(u):
        return redirect(url_for("requests.my_requests", **request.args))
    return _render_list("requests.list_requests", "All Requests", RequestFilters.from_args(request.args))


@bp.get("/mine")
@login_required
def my_requests():
    u = _current_user()
    base = RequestFilters.from_args(request.args)
    filters = RequestFilters(
        status=base.status,
        priority=base.priority,
        search=base.search,
        created_by_user_id=u.id,
    )
    return _render_list("requests.my_requests", "My Requests", filters)


@bp.get("/assigned")
@login_required
def assigned_requests():
    u = _current_user()
    base = RequestFilters.from_args(request.args)
    filters = RequestFilters(
        status=base.status,
        priority=base.priority,
        search=base.search,
        assigned_to_user_id=u.id,
    )
    return _render_list("requests.assigned_requests", "Assigned to Me", filters)


# ---------- New ----------
@bp.get("/new")
@rbac.require_permission("requests.create")
def request_new_get():
    return render_template(
        "requests/new.html",
        priorities=PRIORITIES,
        form={"priority": PRIORITY_NORMAL},
    )


@bp.post("/new")
@rbac.require_permission("requests.create")
def request_new_post():
    s = db_session()
    u = _current_user()

    payload = {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
        "priority": request.form.get("priority"),
        "due_date": request.form.get("due_date"),
    }
    try:
        req = create_request(s, payload, u)
    except ValidationError as e:
        flash(str(e), "danger")
        return render_template("requests/new.html", priorities=PRIORITIES, form=payload), 400
    s.commit()

    flash("Request created.", "success")
    return _detail_redirect(req.id)


# ---------- Detail ----------
@bp.get("/<int:request_id>")
@login_required
def request_detail(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(request_id)

    caps = rbac.capabilities_for(u, req)
    profiles = profiles_for_request(s, req)
    return render_template(
        "requests/detail.html",
        req=req,
        caps=caps,
        profiles=profiles,
        comments=list(reversed(req.comments)),
        comment_caps={c.id: rbac.comment_capabilities(u, c) for c in req.comments},
        attachment_caps={a.id: rbac.attachment_deletable(u, a) for a in req.attachments},
        assignees=assignable_profiles(s) if caps.can_reassign else [],
        describe=lambda a, v: describe_activity_value(a.activity_type, v, profiles),
        statuses=STATUSES,
        priorities=PRIORITIES,
        today=date.today(),
    )


# ---------- Edit ----------
@bp.get("/<int:request_id>/edit")
@login_required
def request_edit_get(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(request_id)
    caps = rbac.capabilities_for(u, req)
    if not caps.can_edit:
        g.missing_permission = "requests.edit"
        abort(403)
    return render_template(
        "requests/edit.html",
        req=req,
        caps=caps,
        assignees=assignable_profiles(s) if caps.can_reassign else [],
        statuses=STATUSES,
        priorities=PRIORITIES,
    )


@bp.post("/<int:request_id>/edit")
@login_required
def request_edit_post(request_id: int):
    s = db_session()
    u = _current_user()
    req = _get_request_or_404(request_id)

    payload = {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
    }
    for key in ("status", "priority", "due_date", "assigned_to"):
        if key in request.form:
            payload[key] = request.form.get(key)

    try:
        changed = update_request_details(s, req, payload, u)
        fields = apply_request_changes(s, req, payload, u)
    except ValidationError as e:
        flash(str(e), "danger")
        return redirect(url_for("requests.request_edit_get", request_id=request_id))
    s.commit()

    flash("Request updated." if (changed or fields) else "No changes.", "success")
    return _detail_redirect(request_id)


# ---------- Quick field changes ----------
@bp.post("/<int:request_id>/status")
@login_required
def request_status(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    try:
        changed = change_status(s, req, request.form.get("status"), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    if changed:
        flash(f"Status changed to {req.status_label}.", "success")
    return _detail_redirect(request_id)


@bp.post("/<int:request_id>/priority")
@login_required
def request_priority(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    try:
        changed = change_priority(s, req, request.form.get("priority"), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    if changed:
        flash(f"Priority changed to {req.priority_label}.", "success")
    return _detail_redirect(request_id)


@bp.post("/<int:request_id>/due-date")
@login_required
def request_due_date(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    try:
        changed = change_due_date(s, req, request.form.get("due_date"), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    if changed:
        flash("Due date updated.", "success")
    return _detail_redirect(request_id)


@bp.post("/<int:request_id>/assign")
@login_required
def request_assign(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    try:
        changed = assign_request(s, req, parse_assignee_id(request.form.get("assigned_to")), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    if changed:
        flash("Assignment updated.", "success")
    return _detail_redirect(request_id)


# ---------- Delete ----------
@bp.post("/<int:request_id>/delete")
@login_required
def request_delete(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    keys = delete_request(s, req, _current_user())
    s.commit()
    if keys:
        purge_blobs(keys, storage=storage_from_config(current_app.config))
    flash("Request deleted.", "success")
    return redirect(url_for("requests.list_requests"))


# ---------- Comments ----------
def _get_comment_or_404(req: Request, comment_id: int) -> RequestComment:
    c = db_session().get(RequestComment, comment_id)
    if not c or c.request_id != req.id:
        abort(404)
    return c


@bp.post("/<int:request_id>/comments")
@login_required
def comment_add(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    try:
        add_comment(s, req, request.form.get("comment_text"), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    flash("Comment added.", "success")
    return _detail_redirect(request_id)


@bp.post("/<int:request_id>/comments/<int:comment_id>/edit")
@login_required
def comment_edit(request_id: int, comment_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    c = _get_comment_or_404(req, comment_id)
    try:
        edit_comment(s, c, request.form.get("comment_text"), _current_user())
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    s.commit()
    flash("Comment updated.", "success")
    return _detail_redirect(request_id)


@bp.post("/<int:request_id>/comments/<int:comment_id>/delete")
@login_required
def comment_delete(request_id: int, comment_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    c = _get_comment_or_404(req, comment_id)
    delete_comment(s, c, _current_user())
    s.commit()
    flash("Comment deleted.", "success")
    return _detail_redirect(request_id)


# ---------- Attachments ----------
def _get_attachment_or_404(req: Request, attachment_id: int) -> RequestAttachment:
    a = db_session().get(RequestAttachment, attachment_id)
    if not a or a.request_id != req.id:
        abort(404)
    return a


@bp.post("/<int:request_id>/attachments")
@login_required
def attachment_upload(request_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)

    f = request.files.get("file")
    if not f or not f.filename:
        flash("Please select a file to upload.", "danger")
        return _detail_redirect(request_id)

    storage = storage_from_config(current_app.config)
    try:
        att = upload_attachment(
            s,
            req,
            f.read(),
            f.filename,
            f.mimetype,
            _current_user(),
            max_bytes=current_app.config.get("MAX_ATTACHMENT_BYTES"),
            storage=storage,
        )
    except ValidationError as e:
        flash(str(e), "danger")
        return _detail_redirect(request_id)
    try:
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        purge_blobs([att.storage_key], storage=storage)
        raise
    flash("File uploaded.", "success")
    return _detail_redirect(request_id)


@bp.get("/<int:request_id>/attachments/<int:attachment_id>/download")
@login_required
def attachment_download(request_id: int, attachment_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    att = _get_attachment_or_404(req, attachment_id)
    try:
        fobj = open_attachment(s, att, _current_user(), storage=storage_from_config(current_app.config))
    except StorageError as e:
        current_app.logger.error(
            "Attachment blob missing id=%s key=%s request_id=%s: %s",
            att.id,
            att.storage_key,
            getattr(g, "request_id", None),
            e,
        )
        abort(404)
    s.commit()

    return send_file(
        fobj,
        mimetype=att.mime_type,
        as_attachment=True,
        download_name=att.filename,
        max_age=0,
    )


@bp.post("/<int:request_id>/attachments/<int:attachment_id>/delete")
@login_required
def attachment_delete(request_id: int, attachment_id: int):
    s = db_session()
    req = _get_request_or_404(request_id)
    att = _get_attachment_or_404(req, attachment_id)
    key = delete_attachment(s, att, _current_user())
    s.commit()
    purge_blobs([key], storage=storage_from_config(current_app.config))
    flash("Attachment deleted.", "success")
    return _detail_redirect(request_id)
