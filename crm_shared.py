from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func
from sqlalchemy import func as sa_func, or_

from shared.config import get_auth_settings, get_setting
from shared.db import SessionLocal, Tenant, User
from services.crm_rbac import CRMActor, normalize_role

logger = logging.getLogger(__name__)


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _utcnow() -> datetime:
    # Identity columns hold naive UTC timestamps.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError):
        return None


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return f"{salt}${hashed}"


def verify_password(password: str, stored: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, hashed = stored.split("$", 1)
    check = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return secrets.compare_digest(check, hashed)


def _auth_session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "SECRET_KEY"):
        value = str(get_setting(key) or "").strip()
        if value:
            return value
    return ""


def _extract_auth_session_token(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    body = body or {}
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    if auth_header:
        parts = auth_header.split(" ", 1)
        if len(parts) == 2 and parts[0].strip().lower() == "bearer":
            token = parts[1].strip()
            if token:
                return token
    query_token = req.params.get("auth_token")
    if isinstance(query_token, str) and query_token.strip():
        return query_token.strip()
    body_token = body.get("auth_token") or body.get("authToken")
    if isinstance(body_token, str) and body_token.strip():
        return body_token.strip()
    return ""


def issue_auth_session_token(
    email: str,
    *,
    tenant_id: Optional[int] = None,
    role: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[str], Optional[str]]:
    normalized_email = _normalize_email(email)
    if not normalized_email:
        return None, None
    secret = _auth_session_secret()
    if not secret:
        logger.warning("AUTH_SESSION_SECRET is not configured; refusing to issue session tokens")
        return None, None
    expires_in = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else get_auth_settings()["session_ttl_seconds"]
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=expires_in)
    payload: Dict[str, Any] = {
        "email": normalized_email,
        "exp": int(expires_at.timestamp()),
    }
    if tenant_id is not None:
        payload["tenant_id"] = int(tenant_id)
    if role:
        payload["role"] = str(role).strip().lower()
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    token = f"{_b64url_encode(payload_bytes)}.{_b64url_encode(digest)}"
    return token, expires_at.isoformat()


def verify_auth_session_token(token: str, *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    raw = str(token or "").strip()
    if "." not in raw:
        return None
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    if not payload_bytes or not sig_bytes:
        return None
    secret = _auth_session_secret()
    if not secret:
        return None
    expected = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, sig_bytes):
        return None
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp_ts = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    current = now or datetime.now(timezone.utc)
    if exp_ts <= int(current.timestamp()):
        return None
    email = _normalize_email(payload.get("email"))
    if not email:
        return None
    payload["email"] = email
    return payload


def _find_user(db, identifier: str) -> Optional[User]:
    normalized = _normalize_email(identifier)
    if not normalized:
        return None
    return (
        db.query(User)
        .filter(
            or_(
                sa_func.lower(sa_func.trim(User.email)) == normalized,
                sa_func.lower(sa_func.trim(User.username)) == normalized,
            )
        )
        .order_by(User.id.asc())
        .first()
    )


def _is_user_active(user: User) -> bool:
    if user.is_active is False:
        return False
    tenant = user.tenant
    return bool(tenant) and tenant.is_active is not False


def authenticate(
    db,
    identifier: str,
    password: str,
    *,
    now: Optional[datetime] = None,
) -> Tuple[Optional[User], Optional[str], Optional[datetime]]:
    """Check a username/email and password, applying the failed-login lockout.

    Returns ``(user, None, None)`` on success, otherwise ``(None, code,
    locked_until)`` where ``code`` is ``invalid_credentials``,
    ``account_disabled`` or ``account_locked``. Commits the attempt counters.
    """
    current = now or _utcnow()
    settings = get_auth_settings()
    user = _find_user(db, identifier)
    if not user:
        return None, "invalid_credentials", None
    if not _is_user_active(user):
        return None, "account_disabled", None
    if user.locked_until and user.locked_until > current:
        return None, "account_locked", user.locked_until

    if not verify_password(password or "", user.password_hash):
        attempts = int(user.failed_login_attempts or 0) + 1
        if attempts >= settings["max_failed_logins"]:
            user.locked_until = current + timedelta(seconds=settings["lockout_seconds"])
            user.failed_login_attempts = 0
            db.commit()
            logger.warning("Locked account %s after %s failed logins", user.email, attempts)
            return None, "account_locked", user.locked_until
        user.failed_login_attempts = attempts
        db.commit()
        return None, "invalid_credentials", None

    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = current
    db.commit()
    return user, None, None


def actor_for_user(user: User) -> CRMActor:
    return CRMActor(
        tenant_id=str(user.tenant_id),
        email=_normalize_email(user.email),
        role=normalize_role(user.role),
        user_id=str(user.id),
        display_name=user.display_name or user.username,
        raw_role=user.role,
    )


def _resolve_actor_for_claims(db, claims: Dict[str, Any]) -> Optional[CRMActor]:
    user = _find_user(db, claims.get("email"))
    if not user or not _is_user_active(user):
        return None
    claim_tenant_id = claims.get("tenant_id")
    if claim_tenant_id is not None:
        try:
            if int(claim_tenant_id) != int(user.tenant_id):
                return None
        except (TypeError, ValueError):
            return None
    return actor_for_user(user)


def resolve_actor_from_session(req: func.HttpRequest, body: Optional[dict] = None) -> Optional[CRMActor]:
    claims = verify_auth_session_token(_extract_auth_session_token(req, body))
    if not claims:
        return None
    db = SessionLocal()
    try:
        return _resolve_actor_for_claims(db, claims)
    finally:
        db.close()


def describe_actor(actor: CRMActor) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        tenant = db.query(Tenant).filter_by(id=int(actor.tenant_id)).one_or_none()
    finally:
        db.close()
    return {
        "userId": actor.user_id,
        "email": actor.email,
        "displayName": actor.display_name,
        "role": actor.role,
        "rawRole": actor.raw_role,
        "tenantId": actor.tenant_id,
        "tenantName": tenant.name if tenant else None,
        "tenantSlug": tenant.slug if tenant else None,
    }
