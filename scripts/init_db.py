import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.reque.constants import ROLE_ADMIN
from app.reque.models import User
from scripts._db_utils import database_url as _database_url, script_session


def seed_only(*, database_url: str | None = None) -> User:
    """
    Seed the bootstrap admin profile in an idempotent way.
    Does NOT overwrite an existing user's password; promotes it to admin if needed.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@reque.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(_database_url(database_url)) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                full_name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role=ROLE_ADMIN,
                is_active=True,
            )
            s.add(user)
        elif user.role != ROLE_ADMIN:
            user.role = ROLE_ADMIN

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    return user


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
