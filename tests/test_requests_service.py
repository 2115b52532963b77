from datetime import date, timedelta

import pytest

from app.reque.errors import PermissionDenied, ValidationError
from app.reque.models import AuditEvent, User
from app.reque.modules.requests.models import Request, RequestActivity, RequestAttachment, RequestComment
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
    delete_comment,
    delete_request,
    describe_activity_value,
    edit_comment,
    list_requests,
    profiles_for_request,
    purge_blobs,
    request_stats,
    update_request_details,
)
from app.reque.storage import LocalStorage


@pytest.fixture()
def people(db, ids):
    return {key: db.get(User, uid) for key, uid in ids.items()}


def _activity(db, req, activity_type=None):
    q = db.query(RequestActivity).filter(RequestActivity.request_id == req.id)
    if activity_type:
        q = q.filter(RequestActivity.activity_type == activity_type)
    return q.order_by(RequestActivity.id.asc()).all()


def test_create_request_defaults_and_activity(db, people):
    req = create_request(
        db,
        {"title": "  Printer on 3rd floor is jammed  ", "description": "Paper tray 2", "priority": "high", "due_date": "2026-03-01"},
        people["alice"],
    )
    db.commit()

    assert req.title == "Printer on 3rd floor is jammed"
    assert req.status == "new"
    assert req.priority == "high"
    assert req.due_date == date(2026, 3, 1)
    assert req.created_by_user_id == people["alice"].id
    assert req.assigned_to_user_id is None

    acts = _activity(db, req)
    assert [(a.activity_type, a.old_value, a.new_value) for a in acts] == [
        ("request_created", None, "Printer on 3rd floor is jammed")
    ]
    assert db.query(AuditEvent).filter(AuditEvent.action == "request.create").count() == 1


def test_create_request_ignores_status_and_defaults_priority(db, people):
    req = create_request(db, {"title": "Defaults", "status": "completed"}, people["alice"])
    assert req.status == "new"
    assert req.priority == "normal"
    assert req.due_date is None


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"title": "   "}, "title"),
        ({"title": "x" * 256}, "at most 255"),
        ({"title": "ok", "priority": "critical"}, "Invalid priority"),
        ({"title": "ok", "due_date": "03/01/2026"}, "YYYY-MM-DD"),
    ],
)
def test_create_request_validation(db, people, payload, message):
    with pytest.raises(ValidationError) as exc:
        create_request(db, payload, people["alice"])
    assert message in str(exc.value)


def test_guest_cannot_create(db, people):
    with pytest.raises(PermissionDenied):
        create_request(db, {"title": "Nope"}, people["guest"])


def test_status_change_only_logged_on_real_change(db, people):
    req = create_request(db, {"title": "Status"}, people["alice"])
    db.commit()

    assert change_status(db, req, "new", people["alice"]) is False
    assert change_status(db, req, "in_progress", people["alice"]) is True
    db.commit()

    acts = _activity(db, req, "status_changed")
    assert [(a.old_value, a.new_value) for a in acts] == [("new", "in_progress")]
    assert acts[0].user_id == people["alice"].id

    with pytest.raises(ValidationError):
        change_status(db, req, "done", people["alice"])


def test_priority_and_due_date_changes(db, people):
    req = create_request(db, {"title": "Fields", "due_date": "2026-01-10"}, people["alice"])
    db.commit()

    assert change_priority(db, req, "urgent", people["alice"]) is True
    assert change_priority(db, req, "urgent", people["alice"]) is False
    assert change_due_date(db, req, "2026-01-10", people["alice"]) is False
    assert change_due_date(db, req, "2026-02-20", people["alice"]) is True
    assert change_due_date(db, req, "", people["alice"]) is True
    db.commit()

    assert [(a.old_value, a.new_value) for a in _activity(db, req, "priority_changed")] == [("normal", "urgent")]
    assert [(a.old_value, a.new_value) for a in _activity(db, req, "due_date_changed")] == [
        ("2026-01-10", "2026-02-20"),
        ("2026-02-20", None),
    ]
    assert req.due_date is None


def test_non_owner_cannot_edit(db, people):
    req = create_request(db, {"title": "Alice's"}, people["alice"])
    db.commit()

    with pytest.raises(PermissionDenied):
        change_status(db, req, "completed", people["bob"])
    # team members need to be assigned first
    with pytest.raises(PermissionDenied):
        change_status(db, req, "completed", people["team"])
    with pytest.raises(PermissionDenied):
        update_request_details(db, req, {"title": "Hijacked"}, people["bob"])


def test_update_request_details(db, people):
    req = create_request(db, {"title": "Old", "description": "old desc"}, people["alice"])
    db.commit()

    assert update_request_details(db, req, {"title": "Old", "description": "old desc"}, people["alice"]) is False
    assert update_request_details(db, req, {"title": "New", "description": ""}, people["alice"]) is True
    db.commit()
    assert req.title == "New"
    assert req.description is None
    ev = db.query(AuditEvent).filter(AuditEvent.action == "request.edit").one()
    assert "title" in ev.metadata_json


def test_assignment_rules(db, people):
    req = create_request(db, {"title": "Assign me"}, people["alice"])
    db.commit()

    # creator with the plain user role cannot assign
    with pytest.raises(PermissionDenied):
        assign_request(db, req, people["team"].id, people["alice"])

    # only admins/team members can be assignees
    with pytest.raises(ValidationError):
        assign_request(db, req, people["bob"].id, people["admin"])

    assert assign_request(db, req, people["team"].id, people["admin"]) is True
    db.commit()
    assert req.assigned_to_user_id == people["team"].id

    # the assigned team member can edit but not hand the request to someone else
    assert change_status(db, req, "under_review", people["team"]) is True
    with pytest.raises(PermissionDenied):
        assign_request(db, req, people["team2"].id, people["team"])
    with pytest.raises(PermissionDenied):
        assign_request(db, req, None, people["team"])
    assert assign_request(db, req, people["team"].id, people["team"]) is False
    assert req.assigned_to_user_id == people["team"].id

    assert assign_request(db, req, people["team2"].id, people["admin"]) is True
    assert assign_request(db, req, None, people["admin"]) is True
    db.commit()

    acts = _activity(db, req, "assignment_changed")
    assert [(a.old_value, a.new_value) for a in acts] == [
        (None, str(people["team"].id)),
        (str(people["team"].id), str(people["team2"].id)),
        (str(people["team2"].id), None),
    ]


def test_cannot_assign_inactive_staff(db, people):
    people["team2"].is_active = False
    db.commit()
    req = create_request(db, {"title": "x"}, people["alice"])
    db.commit()
    with pytest.raises(ValidationError):
        assign_request(db, req, people["team2"].id, people["admin"])
    assert people["team2"] not in assignable_profiles(db)
    assert people["team"] in assignable_profiles(db)


def test_apply_request_changes_skips_unchanged_assignment(db, people):
    req = create_request(db, {"title": "Combined"}, people["alice"])
    db.commit()

    changed = apply_request_changes(
        db,
        req,
        {"status": "in_progress", "priority": "normal", "due_date": "2026-05-05", "assigned_to": ""},
        people["alice"],
    )
    assert changed == ["status", "due_date"]


def test_apply_request_changes_keeps_assigned_team_member_on_request(db, people):
    req = create_request(db, {"title": "Handled by team"}, people["alice"])
    assign_request(db, req, people["team"].id, people["admin"])
    db.commit()

    # unchanged assignee passes through with the other fields
    changed = apply_request_changes(
        db, req, {"status": "in_progress", "assigned_to": str(people["team"].id)}, people["team"]
    )
    assert changed == ["status"]

    with pytest.raises(PermissionDenied):
        apply_request_changes(db, req, {"assigned_to": str(people["team2"].id)}, people["team"])
    db.rollback()
    assert db.get(Request, req.id).assigned_to_user_id == people["team"].id


def test_team_member_creator_may_assign_own_request(db, people):
    req = create_request(db, {"title": "Own ticket"}, people["team"])
    db.commit()
    assert assign_request(db, req, people["team2"].id, people["team"]) is True
    assert assign_request(db, req, None, people["team"]) is True


def test_visibility_and_filters(db, people):
    a1 = create_request(db, {"title": "Broken printer", "priority": "high"}, people["alice"])
    create_request(db, {"title": "New laptop", "description": "for the PRINTER room"}, people["alice"])
    b1 = create_request(db, {"title": "VPN access"}, people["bob"])
    db.commit()

    assert {r.id for r in list_requests(db, people["alice"])} == {a1.id, a1.id + 1}
    assert [r.id for r in list_requests(db, people["bob"])] == [b1.id]
    assert len(list_requests(db, people["team"]).all()) == 3
    assert len(list_requests(db, people["admin"]).all()) == 3
    assert list_requests(db, people["guest"]).all() == []
    assert list_requests(db, None).all() == []

    # newest first
    assert [r.id for r in list_requests(db, people["admin"])] == [b1.id, a1.id + 1, a1.id]

    search = RequestFilters(search="printer")
    assert len(list_requests(db, people["admin"], search).all()) == 2
    assert [r.id for r in list_requests(db, people["admin"], RequestFilters(priority="high"))] == [a1.id]
    mine = RequestFilters(created_by_user_id=people["bob"].id)
    assert [r.id for r in list_requests(db, people["admin"], mine)] == [b1.id]


def test_search_treats_wildcards_literally(db, people):
    pct = create_request(db, {"title": "Disk at 100% usage"}, people["alice"])
    create_request(db, {"title": "Disk at 1000 GB"}, people["alice"])
    under = create_request(db, {"title": "Rename file_a"}, people["alice"])
    create_request(db, {"title": "Rename fileXa"}, people["alice"])
    db.commit()

    assert [r.id for r in list_requests(db, people["admin"], RequestFilters(search="100%"))] == [pct.id]
    assert [r.id for r in list_requests(db, people["admin"], RequestFilters(search="file_a"))] == [under.id]


def test_filters_from_args_drop_unknown_values():
    f = RequestFilters.from_args({"status": "bogus", "priority": "urgent", "q": "  vpn "})
    assert f.status is None
    assert f.priority == "urgent"
    assert f.search == "vpn"


def test_request_stats(db, people):
    today = date(2026, 6, 15)
    yesterday = (today - timedelta(days=1)).isoformat()

    create_request(db, {"title": "late", "due_date": yesterday}, people["alice"])
    closed = create_request(db, {"title": "late but done", "due_date": yesterday, "priority": "urgent"}, people["alice"])
    create_request(db, {"title": "no due"}, people["alice"])
    create_request(db, {"title": "bob's"}, people["bob"])
    db.commit()
    change_status(db, closed, "completed", people["alice"])
    db.commit()

    stats = request_stats(db, people["alice"], today=today)
    assert stats["total"] == 3
    assert stats["open"] == 2
    assert stats["by_status"]["new"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["rejected"] == 0
    assert stats["by_priority"] == {"normal": 2, "high": 0, "urgent": 1}
    assert stats["overdue"] == 1

    assert request_stats(db, people["admin"], today=today)["total"] == 4


def test_comments_lifecycle(db, people):
    req = create_request(db, {"title": "Discuss"}, people["alice"])
    db.commit()

    with pytest.raises(ValidationError):
        add_comment(db, req, "   ", people["alice"])
    with pytest.raises(PermissionDenied):
        add_comment(db, req, "peeking", people["bob"])

    c = add_comment(db, req, "First!", people["alice"])
    staff = add_comment(db, req, "Looking into it", people["team"])
    db.commit()

    with pytest.raises(PermissionDenied):
        edit_comment(db, c, "edited by admin", people["admin"])
    edit_comment(db, c, "First, edited", people["alice"])
    db.commit()
    assert c.comment_text == "First, edited"

    with pytest.raises(PermissionDenied):
        delete_comment(db, staff, people["alice"])
    delete_comment(db, staff, people["admin"])
    db.commit()

    remaining = db.query(RequestComment).filter(RequestComment.request_id == req.id).all()
    assert [x.comment_text for x in remaining] == ["First, edited"]
    assert db.query(AuditEvent).filter(AuditEvent.action == "comment.delete").count() == 1


def test_delete_request_cascades_and_returns_blob_keys(db, people, tmp_path):
    from app.reque.modules.requests.service import upload_attachment

    storage = LocalStorage(root=tmp_path / "blobs")
    req = create_request(db, {"title": "Doomed"}, people["alice"])
    db.commit()
    att = upload_attachment(db, req, b"data", "notes.txt", "text/plain", people["alice"], storage=storage)
    add_comment(db, req, "bye", people["alice"])
    db.commit()
    assert storage.exists(att.storage_key)

    with pytest.raises(PermissionDenied):
        delete_request(db, req, people["team"])

    req_id = req.id
    keys = delete_request(db, req, people["alice"])
    db.commit()
    assert keys == [att.storage_key]
    assert purge_blobs(keys, storage=storage) == 1
    assert not storage.exists(att.storage_key)

    db.expire_all()
    assert db.get(Request, req_id) is None
    assert db.query(RequestComment).filter(RequestComment.request_id == req_id).count() == 0
    assert db.query(RequestActivity).filter(RequestActivity.request_id == req_id).count() == 0
    assert db.query(RequestAttachment).filter(RequestAttachment.request_id == req_id).count() == 0
    ev = db.query(AuditEvent).filter(AuditEvent.action == "request.delete").one()
    assert ev.entity_id == str(req_id)

def test_upload_removes_blob_when_row_cannot_be_saved(db, people, tmp_path, monkeypatch):
    from sqlalchemy.exc import SQLAlchemyError

    from app.reque.modules.requests.service import upload_attachment

    storage = LocalStorage(root=tmp_path / "blobs")
    req = create_request(db, {"title": "Flaky db"}, people["alice"])
    db.commit()

    def _failing_flush(*args, **kwargs):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(db, "flush", _failing_flush)
    with pytest.raises(SQLAlchemyError):
        upload_attachment(db, req, b"data", "notes.txt", "text/plain", people["alice"], storage=storage)
    assert [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()] == []



def test_describe_activity_values(db, people):
    req = create_request(db, {"title": "Labels"}, people["alice"])
    db.commit()
    assign_request(db, req, people["team"].id, people["admin"])
    db.commit()
    db.expire_all()
    req = db.get(Request, req.id)

    profiles = profiles_for_request(db, req)
    assert set(profiles) == {people["alice"].id, people["team"].id, people["admin"].id}
    assert describe_activity_value("status_changed", "in_progress", profiles) == "In Progress"
    assert describe_activity_value("priority_changed", "urgent", profiles) == "Urgent"
    assert describe_activity_value("assignment_changed", str(people["team"].id), profiles) == "Tom Team"
    assert describe_activity_value("assignment_changed", "999999", profiles) == "Unknown user"
    assert describe_activity_value("due_date_changed", None, profiles) is None
