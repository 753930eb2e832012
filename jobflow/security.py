from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from jobflow.errors import ApiError
from jobflow.models import Role


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    user_id: str
    role: str
    claims: dict[str, Any]

    def as_actor(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role}


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    role_claim: str

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            role_claim=os.environ.get("JWT_ROLE_CLAIM", "role").strip() or "role",
        )


def _decode_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise _unauthorized("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def validate_token(token: str, *, cfg: JwtSecurityConfig) -> AuthContext:
    """Check an HS256 token and resolve the user id and marketplace role it names."""
    header_obj, payload_obj, signing_input, signature_raw = _decode_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    expected = _b64url_encode(
        hmac.new(cfg.shared_secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    )
    if not hmac.compare_digest(expected, signature_raw):
        raise _unauthorized("invalid token signature")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise _unauthorized("token expired")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        values = {str(x) for x in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in values:
            raise _unauthorized("jwt audience mismatch")
    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise _unauthorized(f"missing required claim: {claim}")

    subject = str(payload_obj.get("sub") or "").strip()
    role = str(payload_obj.get(cfg.role_claim) or "").strip().lower()
    if not subject:
        raise _unauthorized("missing subject claim")
    if role not in Role.ALL:
        raise _unauthorized("missing or unknown role claim")
    return AuthContext(user_id=subject, role=role, claims=payload_obj)


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return validate_token(token, cfg=cfg)


def context_from_dev_headers(*, user_id: str | None, role: str | None) -> AuthContext:
    """Identity for local runs without a configured secret."""
    subject = (user_id or "").strip()
    normalized_role = (role or "").strip().lower()
    if not subject:
        raise _unauthorized("missing x-user-id header")
    if normalized_role not in Role.ALL:
        raise _unauthorized("missing or unknown x-user-role header")
    return AuthContext(user_id=subject, role=normalized_role, claims={})


def resolve_auth_context(
    *,
    cfg: JwtSecurityConfig,
    authorization: str | None = None,
    token: str | None = None,
    user_id: str | None = None,
    role: str | None = None,
) -> AuthContext:
    if cfg.enabled:
        if token is not None:
            return validate_token(token, cfg=cfg)
        return parse_and_validate_bearer_token(authorization=authorization, cfg=cfg)
    return context_from_dev_headers(user_id=user_id, role=role)
