"""
Requests: the ticket lifecycle (create, triage, assign, comment, attach files).

Write operations live in service.py and raise PermissionDenied/ValidationError;
views in admin.py turn those into 403s or flash messages.
"""
