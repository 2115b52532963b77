from datetime import date

from flask import Blueprint, g, redirect, render_template, url_for

from app.reque.db import db_session
from app.reque.modules.requests.service import RequestFilters, list_requests, request_stats
from app.reque.rbac import login_required

bp = Blueprint("routes", __name__)

RECENT_REQUESTS_LIMIT = 5


@bp.get("/")
def index():
    if getattr(g, "current_user", None):
        return redirect(url_for("routes.dashboard"))
    return redirect(url_for("auth.login_get"))


@bp.get("/dashboard")
@login_required
def dashboard():
    s = db_session()
    user = g.current_user
    stats = request_stats(s, user, today=date.today())
    recent = list_requests(s, user).limit(RECENT_REQUESTS_LIMIT).all()
    assigned = (
        list_requests(s, user, RequestFilters(assigned_to_user_id=user.id)).limit(RECENT_REQUESTS_LIMIT).all()
    )
    return render_template("dashboard.html", stats=stats, recent=recent, assigned=assigned)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access.
    """
    return "ok", 200
