import pytest
from werkzeug.security import generate_password_hash

from app.pdms import create_app
from app.pdms.db import session_scope
from app.pdms.models import Base, User
from app.pdms.rbac import actor_for
from app.pdms.storage import storage_from_config

SEED_USERS = {
    "admin": ("admin@example.com", "Ada Admin", "admin"),
    "manager": ("manager@example.com", "Mia Manager", "management"),
    "manager2": ("manager2@example.com", "Max Manager", "management"),
    "author": ("author@example.com", "Lee Lab", "lab"),
    "other": ("other@example.com", "Pat Production", "production"),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("REPORTS_EAGER", "1")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "CELERY_BROKER_URL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        for email, name, role in SEED_USERS.values():
            s.add(User(email=email, name=name, role=role, password_hash=generate_password_hash("pw"), is_active=True))

    yield app

    engine.dispose()


@pytest.fixture()
def users(app):
    with session_scope(app) as s:
        return {key: actor_for(s.query(User).filter(User.email == email).one()) for key, (email, _, _) in SEED_USERS.items()}


@pytest.fixture()
def put(app):
    storage = storage_from_config(app.config)

    def _put(data: bytes, filename: str = "content.txt"):
        return storage.put_content(data, prefix="test", filename=filename)

    return _put


@pytest.fixture()
def document(app, users, put):
    """A public document owned by the lab author, with official version 1."""
    from app.pdms.modules.document_control.documents import create_document

    with session_scope(app) as s:
        d = create_document(
            s,
            title="Cleanroom SOP",
            file_type="text/plain",
            classification="public",
            content=put(b"v1 body"),
            actor=users["author"],
        )
        return d.id


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    def _login(email: str, password: str = "pw"):
        r = client.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        return r

    return _login
