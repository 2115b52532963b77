"""
Central constants for ReQue: roles, request workflow values and display labels.
"""
from __future__ import annotations

ROLE_ADMIN = "admin"
ROLE_TEAM_MEMBER = "team_member"
ROLE_USER = "user"
ROLE_GUEST = "guest"

ROLES = (ROLE_ADMIN, ROLE_TEAM_MEMBER, ROLE_USER, ROLE_GUEST)
DEFAULT_ROLE = ROLE_USER

ROLE_LABELS = {
    ROLE_ADMIN: "Admin",
    ROLE_TEAM_MEMBER: "Team Member",
    ROLE_USER: "User",
    ROLE_GUEST: "Guest",
}

# Roles that may be assigned a request.
ASSIGNABLE_ROLES = frozenset({ROLE_ADMIN, ROLE_TEAM_MEMBER})

STATUS_NEW = "new"
STATUS_IN_PROGRESS = "in_progress"
STATUS_UNDER_REVIEW = "under_review"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"

STATUSES = (STATUS_NEW, STATUS_IN_PROGRESS, STATUS_UNDER_REVIEW, STATUS_COMPLETED, STATUS_REJECTED)

# Closed requests never count as overdue.
CLOSED_STATUSES = frozenset({STATUS_COMPLETED, STATUS_REJECTED})

STATUS_LABELS = {
    STATUS_NEW: "New",
    STATUS_IN_PROGRESS: "In Progress",
    STATUS_UNDER_REVIEW: "Under Review",
    STATUS_COMPLETED: "Completed",
    STATUS_REJECTED: "Rejected",
}

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"
PRIORITY_URGENT = "urgent"

PRIORITIES = (PRIORITY_NORMAL, PRIORITY_HIGH, PRIORITY_URGENT)

PRIORITY_LABELS = {
    PRIORITY_NORMAL: "Normal",
    PRIORITY_HIGH: "High",
    PRIORITY_URGENT: "Urgent",
}

# Request activity types (append-only timeline)
ACTIVITY_REQUEST_CREATED = "request_created"
ACTIVITY_STATUS_CHANGED = "status_changed"
ACTIVITY_PRIORITY_CHANGED = "priority_changed"
ACTIVITY_ASSIGNMENT_CHANGED = "assignment_changed"
ACTIVITY_DUE_DATE_CHANGED = "due_date_changed"
ACTIVITY_FILE_UPLOADED = "file_uploaded"

ACTIVITY_LABELS = {
    ACTIVITY_REQUEST_CREATED: "created the request",
    ACTIVITY_STATUS_CHANGED: "changed status",
    ACTIVITY_PRIORITY_CHANGED: "changed priority",
    ACTIVITY_ASSIGNMENT_CHANGED: "changed assignment",
    ACTIVITY_DUE_DATE_CHANGED: "changed due date",
    ACTIVITY_FILE_UPLOADED: "uploaded a file",
}

REQUESTS_PER_PAGE = 50
