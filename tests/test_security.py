import pytest
from fastapi.testclient import TestClient

from jobflow.errors import ApiError
from jobflow.main import create_app
from jobflow.security import JwtSecurityConfig, context_from_dev_headers, validate_token


def test_bearer_token_identifies_user_and_role(jwt_env):
    client = TestClient(create_app())
    token = jwt_env("company_1", "company")

    resp = client.post(
        "/api/v1/jobs",
        json={"title": "Brand refresh"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert resp.status_code == 201
    assert resp.json()["data"]["company_id"] == "company_1"


def test_dev_headers_are_ignored_once_jwt_is_configured(jwt_env):
    client = TestClient(create_app())

    resp = client.get("/api/v1/jobs", headers={"x-user-id": "company_1", "x-user-role": "company"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_wrong_secret_and_expired_tokens_are_rejected(jwt_env):
    client = TestClient(create_app())
    forged = jwt_env("company_1", "company", secret="not-the-secret")
    expired = jwt_env("company_1", "company", ttl_minutes=-5)

    for token in (forged, expired):
        resp = client.get("/api/v1/jobs", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


def test_token_without_known_role_is_rejected(jwt_env):
    cfg = JwtSecurityConfig.from_env()
    token = jwt_env("someone", "moderator")

    with pytest.raises(ApiError) as exc:
        validate_token(token, cfg=cfg)

    assert exc.value.http_status == 401


def test_role_claim_name_is_configurable(jwt_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_ROLE_CLAIM", "marketplace_role")
    cfg = JwtSecurityConfig.from_env()
    token = jwt_env("worker_1", "worker")

    with pytest.raises(ApiError):
        validate_token(token, cfg=cfg)


def test_dev_headers_require_known_role():
    assert context_from_dev_headers(user_id="worker_1", role="Worker").role == "worker"
    with pytest.raises(ApiError):
        context_from_dev_headers(user_id="worker_1", role="guest")
    with pytest.raises(ApiError):
        context_from_dev_headers(user_id=" ", role="worker")
