import json
import logging

import azure.functions as func
from sqlalchemy.exc import SQLAlchemyError

from function_app import app
from crm_shared import (
    actor_for_user,
    authenticate,
    describe_actor,
    issue_auth_session_token,
    resolve_actor_from_session,
)
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

LOGIN_ERRORS = {
    "invalid_credentials": (401, "Invalid credentials"),
    "account_disabled": (403, "Account is disabled"),
    "account_locked": (423, "Account locked due to too many failed attempts"),
}


@app.function_name(name="AuthLogin")
@app.route(route="auth/login", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_login(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    try:
        body = req.get_json()
    except ValueError:
        body = None
    identifier = (body or {}).get("username") or (body or {}).get("email")
    password = (body or {}).get("password")
    if not identifier or not password:
        return func.HttpResponse(
            json.dumps({"error": "username and password are required", "code": "validation_error"}),
            status_code=400,
            mimetype="application/json",
            headers=cors,
        )

    db = SessionLocal()
    try:
        user, error_code, locked_until = authenticate(db, identifier, password)
        if error_code:
            status_code, message = LOGIN_ERRORS[error_code]
            payload = {"error": message, "code": error_code}
            if locked_until:
                payload["lockedUntil"] = locked_until.isoformat() + "Z"
            return func.HttpResponse(
                json.dumps(payload),
                status_code=status_code,
                mimetype="application/json",
                headers=cors,
            )
        actor = actor_for_user(user)
        token, expires_at = issue_auth_session_token(
            actor.email,
            tenant_id=user.tenant_id,
            role=actor.role,
        )
        if not token:
            return func.HttpResponse(
                json.dumps({"error": "Sessions are not configured", "code": "auth_unavailable"}),
                status_code=503,
                mimetype="application/json",
                headers=cors,
            )
        return func.HttpResponse(
            json.dumps(
                {
                    "token": token,
                    "expiresAt": expires_at,
                    "user": describe_actor(actor),
                }
            ),
            status_code=200,
            mimetype="application/json",
            headers=cors,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Login failed: %s", exc)
        return func.HttpResponse(
            json.dumps({"error": "Login failed", "code": "server_error"}),
            status_code=500,
            mimetype="application/json",
            headers=cors,
        )
    finally:
        db.close()


@app.function_name(name="AuthMe")
@app.route(route="auth/me", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_me(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    actor = resolve_actor_from_session(req)
    if not actor:
        return func.HttpResponse(
            json.dumps({"error": "CRM authentication required", "code": "auth_required"}),
            status_code=401,
            mimetype="application/json",
            headers=cors,
        )
    return func.HttpResponse(
        json.dumps({"user": describe_actor(actor)}),
        status_code=200,
        mimetype="application/json",
        headers=cors,
    )
