from __future__ import annotations


class ValidationError(ValueError):
    """Invalid user input. Message is safe to show to the user."""


class PermissionDenied(Exception):
    """The acting profile is not allowed to perform the operation."""

    def __init__(self, capability: str, message: str | None = None) -> None:
        self.capability = capability
        super().__init__(message or f"Not allowed: {capability}")
