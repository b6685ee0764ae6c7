import os
import tempfile

import pytest

# Point the app at a throwaway database before anything from wiki.api is imported
_TMP_DIR = tempfile.mkdtemp(prefix="wiki-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"

from fakes import FakeLLM  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from wiki.api import database  # noqa: E402
from wiki.api.auth import create_user  # noqa: E402
from wiki.api.main import app, get_llm  # noqa: E402
from wiki.api.models import Base  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def client(fake_llm):
    app.dependency_overrides[get_llm] = lambda: fake_llm
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_client(client, db):
    create_user(db, "alice", "secret123")
    resp = client.post("/api/login", data={"username": "alice", "password": "secret123"})
    assert resp.status_code == 200
    return client


@pytest.fixture
def make_note(auth_client):
    def _make(title, content, tags=""):
        resp = auth_client.post("/api/notes", data={"title": title, "content": content, "tags": tags})
        assert resp.status_code == 201, resp.text
        return resp.json()["note"]
    return _make
