#!/usr/bin/env python3
"""Set a profile's role (idempotent).

Usage:
  python scripts/set_role.py --email someone@example.com --role team_member
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.reque.audit import record_event
from app.reque.constants import ROLES
from app.reque.models import User
from scripts._db_utils import database_url, script_session


def set_role(email: str, role: str, *, db_url: str | None = None) -> bool:
    """Returns True when the role changed."""
    if role not in ROLES:
        raise ValueError(f"Unknown role {role!r}. Must be one of: {', '.join(ROLES)}")
    with script_session(database_url(db_url)) as s:
        user = s.query(User).filter(User.email.ilike(email.strip())).one_or_none()
        if not user:
            raise LookupError(f"User not found: {email}")
        if user.role == role:
            return False
        before = user.role
        user.role = role
        record_event(
            s,
            actor=None,
            action="user.set_role",
            entity_type="User",
            entity_id=str(user.id),
            reason="scripts/set_role.py",
            metadata={"before": before, "after": role},
        )
    return True


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=ROLES)
    args = parser.parse_args()

    try:
        changed = set_role(args.email, args.role)
    except LookupError as e:
        print(str(e))
        sys.exit(1)
    if changed:
        print(f"Role for {args.email} set to {args.role}")
    else:
        print(f"User already has role {args.role}: {args.email}")


if __name__ == "__main__":
    main()
