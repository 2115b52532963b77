"""
Feature modules live under this package.

Each module owns its routes, templates and models, and reuses the platform
primitives (auth, RBAC, audit, storage, DB session).
"""
