import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jobflow.main import create_app
from jobflow.store import store

COMPANY = {"user_id": "company_1", "role": "company"}
OTHER_COMPANY = {"user_id": "company_2", "role": "company"}
WORKER = {"user_id": "worker_1", "role": "worker"}
OTHER_WORKER = {"user_id": "worker_2", "role": "worker"}
ADMIN = {"user_id": "admin_1", "role": "admin"}

SUBMISSION_TEXT = "Completed the landing page redesign with responsive layout"
PROPOSAL_TEXT = "Built a dozen marketing landing pages on this stack and can start today."


def _issue_token(*, secret: str, user_id: str, role: str, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _tomorrow_iso() -> str:
    return (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()


class ActorClient:
    """TestClient that speaks as one marketplace user via the development headers."""

    def __init__(self, client: TestClient, *, user_id: str, role: str):
        self._client = client
        self.user_id = user_id
        self.role = role

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        headers.setdefault("x-user-id", self.user_id)
        headers.setdefault("x-user-role", self.role)
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    for name in ("JWT_SHARED_SECRET", "JWT_ISSUER", "JWT_AUDIENCE", "JWT_REQUIRED_CLAIMS", "JWT_ROLE_CLAIM"):
        monkeypatch.delenv(name, raising=False)
    store.reset()
    yield
    store.reset()


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def company_client(client) -> ActorClient:
    return ActorClient(client, **COMPANY)


@pytest.fixture
def worker_client(client) -> ActorClient:
    return ActorClient(client, **WORKER)


def apply_to(job_id: str, worker: dict | None = None) -> dict:
    """Apply to a posted job as ``worker`` (WORKER by default)."""
    return store.apply_to_job(job_id=job_id, actor=worker or WORKER, payload={"proposal": PROPOSAL_TEXT})


@pytest.fixture
def apply_for():
    return apply_to


@pytest.fixture
def make_job():
    """Create a job owned by COMPANY and walk it forward to ``status``."""

    def _make(status: str = "posted", *, title: str = "Landing page redesign") -> dict:
        job = store.create_job(actor=COMPANY, payload={"title": title, "description": "Rebuild the page"})
        application_id = None
        if status != "posted":
            application_id = apply_to(job["id"])["id"]
        steps = [
            ("assigned", "assign", COMPANY, {"application_id": application_id}),
            ("in-progress", "start", WORKER, {}),
            ("submitted", "submit", WORKER, {"description": SUBMISSION_TEXT}),
            ("completed", "approve", COMPANY, {}),
        ]
        if status == "revision-requested":
            steps[3] = (
                "revision-requested",
                "request_revision",
                COMPANY,
                {"feedback": "Please use the brand colors", "new_deadline": _tomorrow_iso()},
            )
        for _target, action, actor, payload in steps:
            if job["status"] == status:
                break
            job = store.transition_job(job_id=job["id"], action=action, actor=actor, payload=payload)
        assert job["status"] == status
        return job

    return _make


@pytest.fixture
def jwt_env(monkeypatch: pytest.MonkeyPatch):
    """Switch the API to bearer-token auth and return a token minting function."""
    secret = "test-shared-secret"
    monkeypatch.setenv("JWT_SHARED_SECRET", secret)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")

    def _mint(user_id: str, role: str, **kwargs) -> str:
        return _issue_token(secret=kwargs.pop("secret", secret), user_id=user_id, role=role, **kwargs)

    return _mint
