from __future__ import annotations

import csv
import json
import logging
from io import StringIO
from typing import Any, Callable, Dict, List, Optional, Tuple

import azure.functions as func

from function_app import app
from crm_shared import resolve_actor_from_session
from services import crm_lifecycle as lifecycle
from services.crm_analytics import (
    get_advanced_analytics,
    get_analytics,
    get_projects_by_lead,
    global_search,
)
from services.crm_filters import apply_filters, filters_from_params
from services.crm_lifecycle import CRMError
from services.crm_rbac import CRMActor, can_manage_all, can_view_reports, has_permission
from services.crm_store import list_audit_events
from services.project_import import import_projects_csv
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

REPORT_COLUMNS = {
    "contacts": [
        "id",
        "name",
        "email",
        "phone",
        "companyName",
        "industry",
        "source",
        "status",
        "ownerEmail",
        "tags",
        "createdAt",
        "updatedAt",
    ],
    "deals": [
        "id",
        "dealName",
        "stage",
        "value",
        "currency",
        "companyName",
        "contactId",
        "startDate",
        "endDate",
        "closedAt",
        "origin",
        "ownerEmail",
        "createdAt",
    ],
    "projects": [
        "id",
        "title",
        "status",
        "leadName",
        "companyName",
        "dealId",
        "ownerEmail",
        "assignedTeam",
        "dueDate",
        "origin",
        "createdAt",
    ],
    "tasks": [
        "id",
        "title",
        "status",
        "priority",
        "dueDate",
        "assignedToEmail",
        "createdByEmail",
        "dealId",
        "projectId",
        "completedAt",
        "createdAt",
    ],
}


def _json(data: Any, *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def _error(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return _json(payload, status_code=status_code, cors=cors)


def _parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def _flag(req: func.HttpRequest, name: str) -> bool:
    return str(req.params.get(name) or "").strip().lower() in {"1", "true", "yes"}


def _get_limit(req: func.HttpRequest, default: int = 50) -> int:
    raw = req.params.get("limit")
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(1, min(MAX_PAGE_SIZE, parsed))


def _resolve_actor_or_error(
    req: func.HttpRequest,
    body: Dict[str, Any],
    cors: Dict[str, str],
) -> Tuple[Optional[CRMActor], Optional[func.HttpResponse]]:
    actor = resolve_actor_from_session(req, body)
    if not actor:
        return None, _error(
            cors=cors,
            status_code=401,
            message="CRM authentication required",
            code="auth_required",
        )
    return actor, None


def _call(cors: Dict[str, str], fn: Callable[[], Any], *, status_code: int = 200, wrap: str = "item") -> func.HttpResponse:
    """Run a service call and translate ``CRMError`` into the error envelope."""
    try:
        result = fn()
    except CRMError as exc:
        return _error(
            cors=cors,
            status_code=exc.status_code,
            message=exc.message,
            code=exc.code,
            details=exc.details,
        )
    if wrap:
        return _json({wrap: result}, status_code=status_code, cors=cors)
    return _json(result, status_code=status_code, cors=cors)


def _list_response(items: List[Dict[str, Any]], cors: Dict[str, str]) -> func.HttpResponse:
    return _json({"items": items, "total": len(items)}, status_code=200, cors=cors)


def _list_or_error(
    cors: Dict[str, str],
    entity: str,
    req: func.HttpRequest,
    loader: Callable[[], List[Dict[str, Any]]],
) -> func.HttpResponse:
    try:
        items = loader()
    except CRMError as exc:
        return _error(cors=cors, status_code=exc.status_code, message=exc.message, code=exc.code)
    filtered = apply_filters(
        entity,
        items,
        search=req.params.get("search") or req.params.get("q"),
        **filters_from_params(entity, dict(req.params)),
    )
    return _list_response(filtered, cors)


# -- contacts ------------------------------------------------------------------


@app.function_name(name="CrmContacts")
@app.route(route="crm/contacts", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_contacts(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "GET":
        show_lost = _flag(req, "showLost")
        return _list_or_error(cors, "contacts", req, lambda: lifecycle.list_contacts(actor, show_lost=show_lost))
    return _call(cors, lambda: lifecycle.create_contact(actor, body), status_code=201)


@app.function_name(name="CrmContactDetail")
@app.route(route="crm/contacts/{contact_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_contact_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    contact_id = str(req.route_params.get("contact_id") or "").strip()
    if req.method == "GET":
        return _call(cors, lambda: lifecycle.get_contact_overview(actor, contact_id), wrap="")
    if req.method == "DELETE":
        return _call(cors, lambda: lifecycle.delete_contact(actor, contact_id), wrap="deleted")
    return _call(cors, lambda: lifecycle.update_contact(actor, contact_id, body))


@app.function_name(name="CrmContactStatus")
@app.route(route="crm/contacts/{contact_id}/status", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_contact_status(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    contact_id = str(req.route_params.get("contact_id") or "").strip()
    return _call(cors, lambda: lifecycle.change_contact_status(actor, contact_id, body.get("status")))


# -- deals ---------------------------------------------------------------------


@app.function_name(name="CrmDeals")
@app.route(route="crm/deals", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_deals(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "GET":
        show_lost = _flag(req, "showLost")
        return _list_or_error(cors, "deals", req, lambda: lifecycle.list_deals(actor, show_lost=show_lost))
    return _call(cors, lambda: lifecycle.create_deal(actor, body), status_code=201)


@app.function_name(name="CrmDealDetail")
@app.route(route="crm/deals/{deal_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_deal_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    deal_id = str(req.route_params.get("deal_id") or "").strip()
    if req.method == "GET":
        return _call(cors, lambda: lifecycle.get_deal(actor, deal_id))
    if req.method == "DELETE":
        return _call(cors, lambda: lifecycle.delete_deal(actor, deal_id), wrap="deleted")
    return _call(cors, lambda: lifecycle.update_deal(actor, deal_id, body))


# -- projects ------------------------------------------------------------------


@app.function_name(name="CrmProjects")
@app.route(route="crm/projects", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_projects(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "GET":
        lead_id = req.params.get("leadId")
        return _list_or_error(cors, "projects", req, lambda: lifecycle.list_projects(actor, lead_id=lead_id))
    return _call(cors, lambda: lifecycle.create_project(actor, body), status_code=201)


@app.function_name(name="CrmProjectsImport")
@app.route(route="crm/projects/import", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_projects_import(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    text = body.get("csv")
    if not isinstance(text, str):
        try:
            text = (req.get_body() or b"").decode("utf-8-sig")
        except UnicodeDecodeError:
            return _error(cors=cors, status_code=400, message="CSV must be UTF-8", code="validation_error")
    if not text.strip():
        return _error(cors=cors, status_code=400, message="CSV content is required", code="validation_error")
    return _call(cors, lambda: import_projects_csv(actor, text), wrap="")


@app.function_name(name="CrmProjectDetail")
@app.route(route="crm/projects/{project_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_project_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    project_id = str(req.route_params.get("project_id") or "").strip()
    if req.method == "GET":
        return _call(cors, lambda: lifecycle.get_project(actor, project_id))
    if req.method == "DELETE":
        return _call(cors, lambda: lifecycle.delete_project(actor, project_id), wrap="deleted")
    return _call(cors, lambda: lifecycle.update_project(actor, project_id, body))


@app.function_name(name="CrmProjectLead")
@app.route(route="crm/projects/{project_id}/lead", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_project_lead(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    project_id = str(req.route_params.get("project_id") or "").strip()
    return _call(cors, lambda: lifecycle.update_project_lead(actor, project_id, body.get("leadId")))


@app.function_name(name="CrmProjectOwner")
@app.route(route="crm/projects/{project_id}/owner", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_project_owner(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    project_id = str(req.route_params.get("project_id") or "").strip()
    return _call(cors, lambda: lifecycle.update_project_owner(actor, project_id, body.get("ownerEmail")))


# -- tasks ---------------------------------------------------------------------


@app.function_name(name="CrmTasks")
@app.route(route="crm/tasks", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_tasks(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "GET":
        return _list_or_error(cors, "tasks", req, lambda: lifecycle.list_tasks(actor))
    return _call(cors, lambda: lifecycle.create_task(actor, body), status_code=201)


@app.function_name(name="CrmTaskDetail")
@app.route(route="crm/tasks/{task_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_task_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    task_id = str(req.route_params.get("task_id") or "").strip()
    if req.method == "GET":
        return _call(cors, lambda: lifecycle.get_task(actor, task_id))
    if req.method == "DELETE":
        return _call(cors, lambda: lifecycle.delete_task(actor, task_id), wrap="deleted")
    return _call(cors, lambda: lifecycle.update_task(actor, task_id, body))


@app.function_name(name="CrmTaskStatus")
@app.route(route="crm/tasks/{task_id}/status", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_task_status(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = _parse_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    task_id = str(req.route_params.get("task_id") or "").strip()
    return _call(cors, lambda: lifecycle.update_task_status(actor, task_id, body.get("status")))


# -- analytics, search and audit -----------------------------------------------


@app.function_name(name="CrmAnalytics")
@app.route(route="crm/analytics", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_analytics(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    return _call(cors, lambda: get_analytics(actor), wrap="")


@app.function_name(name="CrmAdvancedAnalytics")
@app.route(route="crm/analytics/advanced", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_advanced_analytics(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_view_reports(actor.role):
        return _error(cors=cors, status_code=403, message="Reports are not available for this role", code="forbidden")
    return _call(cors, lambda: get_advanced_analytics(actor), wrap="")


@app.function_name(name="CrmProjectsByLead")
@app.route(route="crm/analytics/projects-by-lead", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_projects_by_lead(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    return _call(cors, lambda: get_projects_by_lead(actor), wrap="items")


@app.function_name(name="CrmSearch")
@app.route(route="crm/search", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_search(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    query = req.params.get("q") or ""
    return _call(cors, lambda: global_search(actor, query, limit=_get_limit(req, default=20)), wrap="results")


@app.function_name(name="CrmAudit")
@app.route(route="crm/audit", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_audit(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return _json({"items": [], "nextCursor": None}, status_code=200, cors=cors)
    items, next_cursor = list_audit_events(
        actor.tenant_id,
        entity_type=str(req.params.get("entityType") or "").strip() or None,
        entity_id=str(req.params.get("entityId") or "").strip() or None,
        limit=_get_limit(req, default=100),
        cursor=req.params.get("cursor"),
    )
    return _json({"items": items, "nextCursor": next_cursor}, status_code=200, cors=cors)


# -- reports -------------------------------------------------------------------


def _csv_cell(value: Any) -> Any:
    if isinstance(value, list):
        return ",".join(str(item) for item in value)
    if value is None:
        return ""
    return value


def _csv_response(rows: List[Dict[str, Any]], *, columns: List[str], filename: str, cors: Dict[str, str]) -> func.HttpResponse:
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({column: _csv_cell(row.get(column)) for column in columns})
    headers = dict(cors)
    headers["Content-Type"] = "text/csv; charset=utf-8"
    headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return func.HttpResponse(output.getvalue(), status_code=200, headers=headers)


def _report_rows(actor: CRMActor, report: str) -> List[Dict[str, Any]]:
    if report == "contacts":
        return lifecycle.list_contacts(actor, show_lost=True)
    if report == "deals":
        return lifecycle.list_deals(actor, show_lost=True)
    if report == "projects":
        return lifecycle.list_projects(actor)
    return lifecycle.list_tasks(actor)


@app.function_name(name="CrmReports")
@app.route(route="crm/reports/{report}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_reports(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = _resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor

    report = str(req.route_params.get("report") or "").strip().lower()
    if report not in REPORT_COLUMNS:
        return _error(cors=cors, status_code=404, message=f"unknown report: {report}", code="not_found")
    if not can_view_reports(actor.role) or (report == "deals" and not has_permission(actor.role, "deals")):
        return _error(cors=cors, status_code=403, message="Reports are not available for this role", code="forbidden")
    try:
        rows = _report_rows(actor, report)
    except CRMError as exc:
        return _error(cors=cors, status_code=exc.status_code, message=exc.message, code=exc.code)
    logger.info("Exported %s report with %s rows (tenant=%s)", report, len(rows), actor.tenant_id)
    return _csv_response(rows, columns=REPORT_COLUMNS[report], filename=f"crm_{report}_report.csv", cors=cors)
