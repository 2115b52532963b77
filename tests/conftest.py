import pytest
from werkzeug.security import generate_password_hash

from app.reque import create_app
from app.reque.db import session_scope
from app.reque.models import Base, User

PASSWORD = "pw-12345678"

# key -> (email, role, full name)
SEED_USERS = {
    "admin": ("admin@example.com", "admin", "Ada Admin"),
    "team": ("team@example.com", "team_member", "Tom Team"),
    "team2": ("team2@example.com", "team_member", "Tess Team"),
    "alice": ("alice@example.com", "user", "Alice User"),
    "bob": ("bob@example.com", "user", "Bob User"),
    "guest": ("guest@example.com", "guest", None),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ALLOW_REGISTRATION", "1")
    monkeypatch.setenv("MAX_ATTACHMENT_BYTES", str(1024 * 1024))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        for email, role, full_name in SEED_USERS.values():
            s.add(
                User(
                    email=email,
                    full_name=full_name,
                    password_hash=generate_password_hash(PASSWORD),
                    role=role,
                    is_active=True,
                )
            )
    return app


@pytest.fixture()
def ids(app) -> dict[str, int]:
    with session_scope(app) as s:
        by_email = {u.email: u.id for u in s.query(User).all()}
    return {key: by_email[email] for key, (email, _, _) in SEED_USERS.items()}


@pytest.fixture()
def db(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.close()


@pytest.fixture()
def client(app):
    return app.test_client()


def csrf_token(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
        if not token:
            token = "test-csrf-token"
            sess["csrf_token"] = token
    return token


@pytest.fixture()
def login(client):
    def _login(key: str, password: str = PASSWORD):
        email = SEED_USERS[key][0]
        return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)

    return _login


@pytest.fixture()
def post(client):
    """POST with a valid CSRF token attached."""

    def _post(url: str, data: dict | None = None, **kwargs):
        payload = dict(data or {})
        payload["csrf_token"] = csrf_token(client)
        return client.post(url, data=payload, **kwargs)

    return _post


def request_id_from(resp) -> int:
    """Request id from a redirect to /requests/<id>."""
    return int(resp.headers["Location"].rstrip("/").rsplit("/", 1)[1])
