"""Permission evaluator: pure role + ownership rules."""
import pytest

from app.reque import rbac
from app.reque.models import User
from app.reque.modules.requests.models import Request, RequestComment


def _user(uid: int, role: str, active: bool = True) -> User:
    return User(id=uid, email=f"u{uid}@example.com", password_hash="x", role=role, is_active=active)


ADMIN = _user(1, "admin")
TEAM = _user(2, "team_member")
ALICE = _user(3, "user")
BOB = _user(4, "user")
GUEST = _user(5, "guest")
INACTIVE_ADMIN = _user(6, "admin", active=False)


@pytest.mark.parametrize(
    "user,expected",
    [(ADMIN, True), (TEAM, True), (ALICE, True), (GUEST, False), (INACTIVE_ADMIN, False), (None, False)],
)
def test_can_create_request(user, expected):
    assert rbac.can_create_request(user) is expected


def test_view_all_is_staff_only():
    assert rbac.can_view_all_requests(ADMIN)
    assert rbac.can_view_all_requests(TEAM)
    assert not rbac.can_view_all_requests(ALICE)
    assert not rbac.can_view_all_requests(GUEST)


def test_view_request_staff_or_creator():
    assert rbac.can_view_request(ADMIN, ALICE.id)
    assert rbac.can_view_request(TEAM, ALICE.id)
    assert rbac.can_view_request(ALICE, ALICE.id)
    assert not rbac.can_view_request(BOB, ALICE.id)
    assert not rbac.can_view_request(None, ALICE.id)
    assert not rbac.can_view_request(INACTIVE_ADMIN, ALICE.id)


def test_edit_request_rules():
    # admin always
    assert rbac.can_edit_request(ADMIN, ALICE.id, None)
    # creator
    assert rbac.can_edit_request(ALICE, ALICE.id, None)
    assert not rbac.can_edit_request(BOB, ALICE.id, None)
    # team member only when assigned
    assert not rbac.can_edit_request(TEAM, ALICE.id, None)
    assert rbac.can_edit_request(TEAM, ALICE.id, TEAM.id)
    # a plain user being the assignee is not enough
    assert not rbac.can_edit_request(BOB, ALICE.id, BOB.id)


def test_delete_request_admin_or_creator():
    assert rbac.can_delete_request(ADMIN, ALICE.id)
    assert rbac.can_delete_request(ALICE, ALICE.id)
    assert not rbac.can_delete_request(TEAM, ALICE.id)
    assert not rbac.can_delete_request(BOB, ALICE.id)


def test_assign_requires_staff_with_edit_rights():
    assert rbac.can_assign_request(ADMIN, ALICE.id, None)
    assert rbac.can_assign_request(TEAM, ALICE.id, TEAM.id)
    assert not rbac.can_assign_request(TEAM, ALICE.id, None)
    # creators who are plain users cannot assign their own request
    assert not rbac.can_assign_request(ALICE, ALICE.id, None)


def test_assigned_team_member_cannot_hand_request_away():
    assert rbac.can_set_assignee(ADMIN, ALICE.id, None)
    assert rbac.can_set_assignee(ALICE, ALICE.id, TEAM.id)
    assert rbac.can_set_assignee(TEAM, ALICE.id, TEAM.id)
    assert not rbac.can_set_assignee(TEAM, ALICE.id, None)
    assert not rbac.can_set_assignee(TEAM, ALICE.id, ADMIN.id)
    assert rbac.can_set_assignee(TEAM, TEAM.id, None)


def test_comment_rules():
    assert rbac.can_comment_on_request(ALICE, ALICE.id)
    assert rbac.can_comment_on_request(TEAM, ALICE.id)
    assert not rbac.can_comment_on_request(BOB, ALICE.id)
    assert not rbac.can_comment_on_request(GUEST, GUEST.id)

    assert rbac.can_edit_comment(ALICE, ALICE.id)
    assert not rbac.can_edit_comment(ADMIN, ALICE.id)
    assert rbac.can_delete_comment(ADMIN, ALICE.id)
    assert rbac.can_delete_comment(ALICE, ALICE.id)
    assert not rbac.can_delete_comment(TEAM, ALICE.id)


def test_attachment_rules():
    assert rbac.can_upload_attachment(ADMIN, ALICE.id, None)
    assert rbac.can_upload_attachment(ALICE, ALICE.id, None)
    assert rbac.can_upload_attachment(TEAM, ALICE.id, TEAM.id)
    assert not rbac.can_upload_attachment(TEAM, ALICE.id, None)

    assert rbac.can_delete_attachment(TEAM, TEAM.id)
    assert rbac.can_delete_attachment(ADMIN, TEAM.id)
    assert not rbac.can_delete_attachment(ALICE, TEAM.id)


def test_profile_rules():
    assert rbac.can_view_profile(ALICE, ALICE.id)
    assert not rbac.can_view_profile(ALICE, BOB.id)
    assert rbac.can_view_profile(ADMIN, BOB.id)

    assert rbac.can_update_profile(ALICE, ALICE.id)
    assert not rbac.can_update_profile(ALICE, ALICE.id, changes_role=True)
    assert not rbac.can_update_profile(ALICE, BOB.id)
    assert rbac.can_update_profile(ADMIN, BOB.id, changes_role=True)

    assert rbac.can_manage_users(ADMIN)
    assert not rbac.can_manage_users(TEAM)


def test_capabilities_for_request():
    req = Request(id=10, title="t", created_by_user_id=ALICE.id, assigned_to_user_id=TEAM.id)

    caps = rbac.capabilities_for(TEAM, req)
    assert caps.can_view and caps.can_edit and caps.can_assign and caps.can_comment and caps.can_upload
    assert not caps.can_delete
    assert not caps.can_reassign

    assert rbac.capabilities_for(ADMIN, req).can_reassign

    caps = rbac.capabilities_for(BOB, req)
    assert caps == rbac.RequestCapabilities(False, False, False, False, False, False)

    caps = rbac.capabilities_for(ALICE, req)
    assert caps.can_edit and caps.can_delete and not caps.can_assign


def test_comment_capabilities():
    c = RequestComment(id=1, request_id=10, user_id=ALICE.id, comment_text="hi")
    assert rbac.comment_capabilities(ALICE, c) == (True, True)
    assert rbac.comment_capabilities(ADMIN, c) == (False, True)
    assert rbac.comment_capabilities(BOB, c) == (False, False)


def test_role_permission_keys():
    assert rbac.user_has_permission(ADMIN, "users.manage")
    assert rbac.user_has_permission(ADMIN, "audit.view")
    assert not rbac.user_has_permission(TEAM, "users.manage")
    assert rbac.user_has_permission(GUEST, "requests.view")
    assert not rbac.user_has_permission(GUEST, "requests.create")
    assert not rbac.user_has_permission(None, "requests.view")
