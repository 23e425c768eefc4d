"""Lifecycle rules for contacts, deals, projects and tasks.

Status changes and deletions cascade across the four entity tables:

* a contact entering ``Won`` gets a deal (origin ``contact_won``),
* a deal entering ``Won`` gets a project (origin ``deal_won``),
* deleting a contact deletes its deals, deleting a deal deletes its projects
  and every task linked to the deal or to one of those projects,
* deleting a project on its own only unlinks its tasks.

Every function takes the calling ``CRMActor`` first and only touches the
actor's tenant partition. Cascade children are created and deleted on behalf
of the actor even when the actor could not create them directly.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from services.crm_rbac import (
    CRMActor,
    TASK_MANAGER_MUTABLE_FIELDS,
    can_create,
    can_delete,
    can_edit,
    can_patch_contact,
    can_patch_task,
    can_view_contact,
    can_view_deal,
    can_view_project,
    can_view_task,
    has_permission,
)
from services.crm_store import (
    create_entity,
    delete_entity,
    get_entity,
    list_all_entities,
    upsert_entity,
    utc_now_iso,
    write_audit_event,
)
from shared.config import get_pipeline_settings

logger = logging.getLogger(__name__)

CONTACT_STATUSES = ["Prospect", "Negotiation", "Won", "Lost"]
DEAL_STAGES = ["Lead", "Proposal Sent", "Negotiation", "Won", "Lost"]
PROJECT_STATUSES = ["Active", "Completed", "Paused"]
TASK_STATUSES = ["Pending", "In Progress", "Completed", "Overdue"]
TASK_PRIORITIES = ["Low", "Medium", "High"]

OPEN_TASK_STATUSES = {"Pending", "In Progress"}
CLOSED_DEAL_STAGES = {"Won", "Lost"}

# Labels used by earlier data sets, mapped onto the current vocabularies.
_STATUS_ALIASES = {
    "contact": {"win": "Won", "lose": "Lost"},
    "deal": {"closed won": "Won", "closed lost": "Lost", "completed": "Won", "ongoing": "Lead"},
    "project": {"in progress": "Active", "on hold": "Paused"},
    "task": {"done": "Completed", "not started": "Pending"},
    "priority": {"med": "Medium", "critical": "High"},
}

CONTACT_FIELDS = {
    "name",
    "email",
    "phone",
    "companyName",
    "designation",
    "industry",
    "source",
    "assignedTo",
    "notes",
    "tags",
    "ownerEmail",
}
DEAL_FIELDS = {
    "dealName",
    "stage",
    "value",
    "currency",
    "contactId",
    "startDate",
    "endDate",
    "ownerEmail",
    "notes",
}
PROJECT_FIELDS = {
    "title",
    "status",
    "dueDate",
    "assignedTeam",
    "milestones",
    "companyName",
    "description",
}


class CRMError(Exception):
    status_code = 400
    code = "crm_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ValidationFailed(CRMError):
    status_code = 400
    code = "validation_error"


class PermissionDenied(CRMError):
    status_code = 403
    code = "forbidden"


class EntityNotFound(CRMError):
    status_code = 404
    code = "not_found"


# -- normalisation -----------------------------------------------------------


def _status_key(value: Any) -> str:
    text = str(value or "").strip().lower().replace("_", " ").replace("-", " ")
    return " ".join(text.split())


def _canonical(value: Any, choices: Iterable[str], kind: str) -> Optional[str]:
    key = _status_key(value)
    if not key:
        return None
    for choice in choices:
        if _status_key(choice) == key:
            return choice
    return _STATUS_ALIASES.get(kind, {}).get(key)


def normalize_contact_status(value: Any) -> Optional[str]:
    return _canonical(value, CONTACT_STATUSES, "contact")


def normalize_deal_stage(value: Any) -> Optional[str]:
    return _canonical(value, DEAL_STAGES, "deal")


def normalize_project_status(value: Any) -> Optional[str]:
    return _canonical(value, PROJECT_STATUSES, "project")


def normalize_task_status(value: Any) -> Optional[str]:
    return _canonical(value, TASK_STATUSES, "task")


def normalize_task_priority(value: Any) -> Optional[str]:
    return _canonical(value, TASK_PRIORITIES, "priority")


def _resolve_choice(value: Any, normalizer: Callable[[Any], Optional[str]], default: Optional[str], label: str) -> Optional[str]:
    if value is None or str(value).strip() == "":
        return default
    resolved = normalizer(value)
    if resolved is None:
        raise ValidationFailed(f"invalid {label}: {value}", code="validation_error")
    return resolved


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _normalize_text(value: Any) -> str:
    return str(value or "").strip()


def _normalize_list(value: Any, *, lower: bool = False) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        text = str(item or "").strip()
        if not text:
            continue
        out.append(text.lower() if lower else text)
    return out


def _parse_datetime_utc(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _date_only(value: Any) -> Optional[date]:
    raw = str(value or "").strip()
    if len(raw) != 10:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def _normalize_date(value: Any, label: str) -> Optional[str]:
    if value is None or str(value).strip() == "":
        return None
    day = _date_only(value)
    if day is not None:
        return day.isoformat()
    parsed = _parse_datetime_utc(value)
    if parsed is None:
        raise ValidationFailed(f"{label} must be an ISO-8601 date")
    return _iso(parsed)


def _parse_value(value: Any) -> float:
    if value is None or str(value).strip() == "":
        return 0.0
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("deal value must be a number") from exc
    if numeric < 0:
        raise ValidationFailed("deal value cannot be negative")
    return numeric


def _normalize_milestones(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    out: List[Dict[str, Any]] = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        name = _normalize_text(raw.get("name"))
        if not name:
            continue
        out.append(
            {
                "name": name,
                "dueDate": _normalize_date(raw.get("dueDate"), "milestone dueDate"),
                "status": _normalize_text(raw.get("status")) or "Not Started",
            }
        )
    return out


# -- shared plumbing -----------------------------------------------------------


def _audit(
    actor: CRMActor,
    entity_type: str,
    entity_id: str,
    action: str,
    *,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    meta: Optional[dict] = None,
) -> None:
    write_audit_event(
        actor.tenant_id,
        actor_email=actor.email,
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        meta=meta,
    )


def _require(table_key: str, actor: CRMActor, entity_id: Any, label: str) -> Dict[str, Any]:
    normalized_id = _normalize_text(entity_id)
    if not normalized_id:
        raise ValidationFailed(f"{label} id is required")
    item = get_entity(table_key, actor.tenant_id, normalized_id)
    if not item:
        raise EntityNotFound(f"{label} not found")
    return item


def _require_reference(table_key: str, actor: CRMActor, entity_id: Any, label: str) -> Dict[str, Any]:
    item = get_entity(table_key, actor.tenant_id, _normalize_text(entity_id))
    if not item:
        raise ValidationFailed(f"{label} {entity_id} does not exist", code="invalid_reference")
    return item


def _require_module(actor: CRMActor, module: str) -> None:
    if not has_permission(actor.role, module):
        raise PermissionDenied(f"{module} are not available for role {actor.role}")


def _timeline_entry(actor: CRMActor, from_status: Optional[str], to_status: str) -> Dict[str, Any]:
    return {
        "from": from_status,
        "to": to_status,
        "at": utc_now_iso(),
        "byEmail": actor.email,
    }


# -- contacts ------------------------------------------------------------------


def _contact_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in CONTACT_FIELDS:
        if key not in payload:
            continue
        if key in {"email", "ownerEmail"}:
            fields[key] = _normalize_email(payload.get(key))
        elif key == "tags":
            fields[key] = _normalize_list(payload.get(key))
        else:
            fields[key] = _normalize_text(payload.get(key))
    return fields


def create_contact(actor: CRMActor, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not can_create(actor.role, "contacts"):
        raise PermissionDenied("Contact creation is not permitted")
    fields = _contact_fields(payload)
    if not fields.get("name"):
        raise ValidationFailed("contact name is required")
    status = _resolve_choice(payload.get("status"), normalize_contact_status, "Prospect", "contact status")
    contact = {
        "email": "",
        "phone": "",
        "companyName": "",
        "tags": [],
        **fields,
        "status": status,
        "statusTimeline": [_timeline_entry(actor, None, status)],
        "ownerEmail": fields.get("ownerEmail") or actor.email,
        "createdByEmail": actor.email,
    }
    created = create_entity("contacts", actor.tenant_id, contact)
    _audit(actor, "contact", created["id"], "contact_created", after=created)
    if status == "Won":
        ensure_deal_for_won_contact(actor, created)
    return created


def get_contact(actor: CRMActor, contact_id: str) -> Dict[str, Any]:
    contact = _require("contacts", actor, contact_id, "contact")
    if not can_view_contact(actor, contact):
        raise PermissionDenied("forbidden")
    return contact


def get_contact_overview(actor: CRMActor, contact_id: str) -> Dict[str, Any]:
    contact = get_contact(actor, contact_id)
    deals: List[Dict[str, Any]] = []
    if has_permission(actor.role, "deals"):
        deals = list_all_entities(
            "deals",
            actor.tenant_id,
            filter_fn=lambda item: str(item.get("contactId") or "") == contact["id"],
            descending=True,
        )
    projects = list_projects_by_lead(actor, contact["id"])
    return {"item": contact, "deals": deals, "projects": projects}


def list_contacts(actor: CRMActor, *, show_lost: bool = False) -> List[Dict[str, Any]]:
    _require_module(actor, "contacts")

    def _visible(item: Dict[str, Any]) -> bool:
        if not show_lost and item.get("status") == "Lost":
            return False
        return can_view_contact(actor, item)

    return list_all_entities("contacts", actor.tenant_id, filter_fn=_visible, descending=True)


def update_contact(actor: CRMActor, contact_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    before = get_contact(actor, contact_id)
    patch = _contact_fields(updates)
    if "status" in updates:
        patch["status"] = updates.get("status")
    if not patch:
        raise ValidationFailed("no valid fields to update")
    allowed, reason = can_patch_contact(actor, patch)
    if not allowed:
        raise PermissionDenied("forbidden", code="forbidden", details=reason)
    if "name" in patch and not patch["name"]:
        raise ValidationFailed("contact name is required")

    entered_status = None
    if "status" in patch:
        status = _resolve_choice(patch["status"], normalize_contact_status, None, "contact status")
        if status is None:
            raise ValidationFailed("contact status is required")
        patch["status"] = status
        if status != before.get("status"):
            timeline = list(before.get("statusTimeline") or [])
            timeline.append(_timeline_entry(actor, before.get("status"), status))
            patch["statusTimeline"] = timeline
            entered_status = status

    after = upsert_entity("contacts", actor.tenant_id, before["id"], patch)
    _audit(actor, "contact", before["id"], "contact_updated", before=before, after=after)
    _sync_contact_names(actor, before, after)
    if entered_status:
        logger.info(
            "Contact %s moved %s -> %s (tenant=%s)",
            before["id"],
            before.get("status"),
            entered_status,
            actor.tenant_id,
        )
    if entered_status == "Won":
        ensure_deal_for_won_contact(actor, after)
    return after


def _sync_contact_names(actor: CRMActor, before: Dict[str, Any], after: Dict[str, Any]) -> None:
    """Carry a renamed contact onto the projects it leads and the deals it owns."""
    contact_id = before["id"]
    if after.get("name") != before.get("name"):
        projects = list_all_entities(
            "projects",
            actor.tenant_id,
            filter_fn=lambda item: str(item.get("leadId") or "") == contact_id,
        )
        for project in projects:
            upsert_entity("projects", actor.tenant_id, project["id"], {"leadName": after.get("name")})
    if after.get("companyName") != before.get("companyName"):
        deals = list_all_entities(
            "deals",
            actor.tenant_id,
            filter_fn=lambda item: str(item.get("contactId") or "") == contact_id,
        )
        for deal in deals:
            upsert_entity("deals", actor.tenant_id, deal["id"], {"companyName": after.get("companyName")})


def change_contact_status(actor: CRMActor, contact_id: str, status: Any) -> Dict[str, Any]:
    return update_contact(actor, contact_id, {"status": status})


def delete_contact(actor: CRMActor, contact_id: str) -> Dict[str, int]:
    """Delete a contact, its deals, and everything hanging off those deals."""
    if not can_delete(actor.role):
        raise PermissionDenied("Only admin/manager can delete contacts")
    before = get_contact(actor, contact_id)
    summary = {"contacts": 0, "deals": 0, "projects": 0, "tasks": 0, "tasksUnlinked": 0}

    deals = list_all_entities(
        "deals",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("contactId") or "") == before["id"],
    )
    for deal in deals:
        _delete_deal_tree(actor, deal, summary, parent=("contact", before["id"]))

    # Projects led by this contact but owned by other deals survive without a lead.
    led_projects = list_all_entities(
        "projects",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("leadId") or "") == before["id"],
    )
    for project in led_projects:
        upsert_entity("projects", actor.tenant_id, project["id"], {"leadId": None, "leadName": None})

    if delete_entity("contacts", actor.tenant_id, before["id"]):
        summary["contacts"] = 1
        _audit(actor, "contact", before["id"], "contact_deleted", before=before, meta=summary)
    logger.info("Deleted contact %s with cascade %s (tenant=%s)", before["id"], summary, actor.tenant_id)
    return summary


# -- deals -----------------------------------------------------------------------


def _deal_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in DEAL_FIELDS:
        if key not in payload:
            continue
        if key == "value":
            fields[key] = _parse_value(payload.get(key))
        elif key in {"startDate", "endDate"}:
            fields[key] = _normalize_date(payload.get(key), key)
        elif key == "ownerEmail":
            fields[key] = _normalize_email(payload.get(key))
        elif key == "currency":
            fields[key] = _normalize_text(payload.get(key)).upper()
        else:
            fields[key] = _normalize_text(payload.get(key))
    if "dealName" not in fields and "name" in payload:
        fields["dealName"] = _normalize_text(payload.get("name"))
    return fields


def _insert_deal(actor: CRMActor, deal: Dict[str, Any]) -> Dict[str, Any]:
    created = create_entity("deals", actor.tenant_id, deal)
    _audit(
        actor,
        "deal",
        created["id"],
        "deal_created",
        after=created,
        meta={"origin": created.get("origin")},
    )
    if created.get("stage") == "Won":
        ensure_project_for_won_deal(actor, created)
    return created


def _build_deal(actor: CRMActor, fields: Dict[str, Any], contact: Dict[str, Any], origin: str) -> Dict[str, Any]:
    settings = get_pipeline_settings()
    start = _parse_datetime_utc(fields.get("startDate")) or datetime.now(timezone.utc)
    end = _parse_datetime_utc(fields.get("endDate")) or start + timedelta(days=settings["deal_default_days"])
    if end < start:
        raise ValidationFailed("endDate cannot be before startDate")
    stage = _resolve_choice(fields.get("stage"), normalize_deal_stage, "Lead", "deal stage")
    deal = {
        "dealName": fields["dealName"],
        "stage": stage,
        "value": fields.get("value", 0.0),
        "currency": fields.get("currency") or settings["default_currency"],
        "contactId": contact["id"],
        "companyName": contact.get("companyName") or "",
        "startDate": _iso(start),
        "endDate": _iso(end),
        "ownerEmail": fields.get("ownerEmail") or contact.get("ownerEmail") or actor.email,
        "notes": fields.get("notes") or "",
        "origin": origin,
        "createdByEmail": actor.email,
    }
    if stage in CLOSED_DEAL_STAGES:
        deal["closedAt"] = utc_now_iso()
    return deal


def create_deal(actor: CRMActor, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not can_create(actor.role, "deals"):
        raise PermissionDenied("Deal creation is not permitted")
    fields = _deal_fields(payload)
    if not fields.get("dealName"):
        raise ValidationFailed("deal name is required")
    if not fields.get("contactId"):
        raise ValidationFailed("contactId is required")
    contact = _require_reference("contacts", actor, fields["contactId"], "contact")
    return _insert_deal(actor, _build_deal(actor, fields, contact, "manual"))


def create_deal_from_contact(actor: CRMActor, contact: Dict[str, Any]) -> Dict[str, Any]:
    label = _normalize_text(contact.get("companyName")) or _normalize_text(contact.get("name"))
    fields = {"dealName": f"Deal for {label}", "stage": "Lead", "value": 0.0}
    deal = _insert_deal(actor, _build_deal(actor, fields, contact, "contact_won"))
    logger.info("Auto-created deal %s for won contact %s (tenant=%s)", deal["id"], contact["id"], actor.tenant_id)
    return deal


def ensure_deal_for_won_contact(actor: CRMActor, contact: Dict[str, Any]) -> Dict[str, Any]:
    existing = list_all_entities(
        "deals",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("contactId") or "") == contact["id"]
        and item.get("origin") == "contact_won",
    )
    if existing:
        return existing[0]
    return create_deal_from_contact(actor, contact)


def get_deal(actor: CRMActor, deal_id: str) -> Dict[str, Any]:
    _require_module(actor, "deals")
    deal = _require("deals", actor, deal_id, "deal")
    if not can_view_deal(actor, deal):
        raise PermissionDenied("forbidden")
    return deal


def list_deals(actor: CRMActor, *, show_lost: bool = False) -> List[Dict[str, Any]]:
    _require_module(actor, "deals")

    def _visible(item: Dict[str, Any]) -> bool:
        if not show_lost and item.get("stage") == "Lost":
            return False
        return can_view_deal(actor, item)

    return list_all_entities("deals", actor.tenant_id, filter_fn=_visible, descending=True)


def update_deal(actor: CRMActor, deal_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    before = get_deal(actor, deal_id)
    if not can_edit(actor.role, "deals"):
        raise PermissionDenied("Deal updates are not permitted")
    patch = _deal_fields(updates)
    if not patch:
        raise ValidationFailed("no valid fields to update")
    if "dealName" in patch and not patch["dealName"]:
        raise ValidationFailed("deal name is required")
    if "contactId" in patch:
        contact = _require_reference("contacts", actor, patch["contactId"], "contact")
        patch["companyName"] = contact.get("companyName") or ""

    start = _parse_datetime_utc(patch.get("startDate") or before.get("startDate"))
    end = _parse_datetime_utc(patch.get("endDate") or before.get("endDate"))
    if start and end and end < start:
        raise ValidationFailed("endDate cannot be before startDate")

    entered_stage = None
    if "stage" in patch:
        stage = _resolve_choice(patch["stage"], normalize_deal_stage, None, "deal stage")
        if stage is None:
            raise ValidationFailed("deal stage is required")
        patch["stage"] = stage
        if stage != before.get("stage"):
            entered_stage = stage
            patch["closedAt"] = utc_now_iso() if stage in CLOSED_DEAL_STAGES else None

    after = upsert_entity("deals", actor.tenant_id, before["id"], patch)
    _audit(actor, "deal", before["id"], "deal_updated", before=before, after=after)
    if entered_stage == "Won":
        ensure_project_for_won_deal(actor, after)
    return after


def _delete_deal_tree(
    actor: CRMActor,
    deal: Dict[str, Any],
    summary: Dict[str, int],
    *,
    parent: Optional[Tuple[str, str]] = None,
) -> None:
    """Delete ``deal`` with its projects and tasks, counting into ``summary``.

    Audit entries of the children point at ``parent`` (the deleted contact)
    when given, otherwise at the deal.
    """
    parent_type, parent_id = parent or ("deal", deal["id"])
    child_meta = {"cascade": True, "parentType": parent_type, "parentId": parent_id}
    projects = list_all_entities(
        "projects",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("dealId") or "") == deal["id"],
    )
    project_ids = {project["id"] for project in projects}
    tasks = list_all_entities(
        "tasks",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("dealId") or "") == deal["id"]
        or str(item.get("projectId") or "") in project_ids,
    )
    for task in tasks:
        if delete_entity("tasks", actor.tenant_id, task["id"]):
            summary["tasks"] += 1
            _audit(actor, "task", task["id"], "task_deleted", before=task, meta=child_meta)
    for project in projects:
        if delete_entity("projects", actor.tenant_id, project["id"]):
            summary["projects"] += 1
            _audit(actor, "project", project["id"], "project_deleted", before=project, meta=child_meta)
    if delete_entity("deals", actor.tenant_id, deal["id"]):
        summary["deals"] += 1
        _audit(
            actor,
            "deal",
            deal["id"],
            "deal_deleted",
            before=deal,
            meta=child_meta if parent else None,
        )


def delete_deal(actor: CRMActor, deal_id: str) -> Dict[str, int]:
    """Delete a deal with its projects and every task linked to either."""
    if not can_delete(actor.role):
        raise PermissionDenied("Only admin/manager can delete deals")
    before = get_deal(actor, deal_id)
    summary = {"deals": 0, "projects": 0, "tasks": 0}
    _delete_deal_tree(actor, before, summary)
    logger.info("Deleted deal %s with cascade %s (tenant=%s)", before["id"], summary, actor.tenant_id)
    return summary


# -- projects --------------------------------------------------------------------


def _project_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in PROJECT_FIELDS:
        if key not in payload:
            continue
        if key == "dueDate":
            fields[key] = _normalize_date(payload.get(key), key)
        elif key == "assignedTeam":
            fields[key] = _normalize_list(payload.get(key), lower=True)
        elif key == "milestones":
            fields[key] = _normalize_milestones(payload.get(key))
        else:
            fields[key] = _normalize_text(payload.get(key))
    if "title" not in fields and "projectName" in payload:
        fields["title"] = _normalize_text(payload.get("projectName"))
    return fields


def _insert_project(actor: CRMActor, project: Dict[str, Any]) -> Dict[str, Any]:
    created = create_entity("projects", actor.tenant_id, project)
    _audit(
        actor,
        "project",
        created["id"],
        "project_created",
        after=created,
        meta={"origin": created.get("origin")},
    )
    return created


def create_project(actor: CRMActor, payload: Dict[str, Any], *, origin: str = "manual") -> Dict[str, Any]:
    if not can_create(actor.role, "projects"):
        raise PermissionDenied("Project creation is not permitted")
    fields = _project_fields(payload)
    if not fields.get("title"):
        raise ValidationFailed("project title is required")
    status = _resolve_choice(fields.get("status"), normalize_project_status, "Active", "project status")

    deal = None
    deal_id = _normalize_text(payload.get("dealId"))
    if deal_id:
        deal = _require_reference("deals", actor, deal_id, "deal")
    lead = None
    lead_id = _normalize_text(payload.get("leadId")) or (deal.get("contactId") if deal else "")
    if lead_id:
        lead = _require_reference("contacts", actor, lead_id, "contact")

    owner_email = _normalize_email(payload.get("ownerEmail")) or actor.email
    team = fields.get("assignedTeam") or [owner_email]
    project = {
        "title": fields["title"],
        "status": status,
        "dealId": deal["id"] if deal else None,
        "leadId": lead["id"] if lead else None,
        "leadName": lead.get("name") if lead else None,
        "companyName": fields.get("companyName")
        or (deal.get("companyName") if deal else "")
        or (lead.get("companyName") if lead else ""),
        "description": fields.get("description") or "",
        "ownerEmail": owner_email,
        "assignedTeam": team,
        "dueDate": fields.get("dueDate"),
        "milestones": fields.get("milestones") or [],
        "origin": origin,
        "createdByEmail": actor.email,
    }
    return _insert_project(actor, project)


def create_project_from_deal(actor: CRMActor, deal: Dict[str, Any]) -> Dict[str, Any]:
    lead = get_entity("contacts", actor.tenant_id, str(deal.get("contactId") or ""))
    owner_email = _normalize_email(deal.get("ownerEmail")) or actor.email
    project = {
        "title": f"Project: {deal.get('dealName')}",
        "status": "Active",
        "dealId": deal["id"],
        "leadId": lead["id"] if lead else None,
        "leadName": lead.get("name") if lead else None,
        "companyName": deal.get("companyName") or "",
        "description": "",
        "ownerEmail": owner_email,
        "assignedTeam": [owner_email],
        "milestones": [],
        "origin": "deal_won",
        "createdByEmail": actor.email,
    }
    created = _insert_project(actor, project)
    logger.info("Auto-created project %s for won deal %s (tenant=%s)", created["id"], deal["id"], actor.tenant_id)
    return created


def ensure_project_for_won_deal(actor: CRMActor, deal: Dict[str, Any]) -> Dict[str, Any]:
    existing = list_all_entities(
        "projects",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("dealId") or "") == deal["id"] and item.get("origin") == "deal_won",
    )
    if existing:
        return existing[0]
    return create_project_from_deal(actor, deal)


def get_project(actor: CRMActor, project_id: str) -> Dict[str, Any]:
    _require_module(actor, "projects")
    project = _require("projects", actor, project_id, "project")
    if not can_view_project(actor, project):
        raise PermissionDenied("forbidden")
    return project


def list_projects(actor: CRMActor, *, lead_id: Optional[str] = None) -> List[Dict[str, Any]]:
    _require_module(actor, "projects")
    normalized_lead = _normalize_text(lead_id)

    def _visible(item: Dict[str, Any]) -> bool:
        if normalized_lead and str(item.get("leadId") or "") != normalized_lead:
            return False
        return can_view_project(actor, item)

    return list_all_entities("projects", actor.tenant_id, filter_fn=_visible, descending=True)


def list_projects_by_lead(actor: CRMActor, contact_id: str) -> List[Dict[str, Any]]:
    if not has_permission(actor.role, "projects"):
        return []
    return list_projects(actor, lead_id=contact_id)


def update_project(actor: CRMActor, project_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    before = get_project(actor, project_id)
    if not can_edit(actor.role, "projects"):
        raise PermissionDenied("Only admin/manager can update projects")
    patch = _project_fields(updates)
    if not patch:
        raise ValidationFailed("no valid fields to update")
    if "title" in patch and not patch["title"]:
        raise ValidationFailed("project title is required")
    if "status" in patch:
        status = _resolve_choice(patch["status"], normalize_project_status, None, "project status")
        if status is None:
            raise ValidationFailed("project status is required")
        patch["status"] = status
    after = upsert_entity("projects", actor.tenant_id, before["id"], patch)
    _audit(actor, "project", before["id"], "project_updated", before=before, after=after)
    return after


def update_project_lead(actor: CRMActor, project_id: str, contact_id: str) -> Dict[str, Any]:
    before = get_project(actor, project_id)
    if not can_edit(actor.role, "projects"):
        raise PermissionDenied("Only admin/manager can change the project lead")
    if not _normalize_text(contact_id):
        raise ValidationFailed("leadId is required")
    lead = _require_reference("contacts", actor, contact_id, "contact")
    after = upsert_entity(
        "projects",
        actor.tenant_id,
        before["id"],
        {"leadId": lead["id"], "leadName": lead.get("name") or ""},
    )
    _audit(actor, "project", before["id"], "project_lead_changed", before=before, after=after)
    return after


def update_project_owner(actor: CRMActor, project_id: str, owner_email: str) -> Dict[str, Any]:
    before = get_project(actor, project_id)
    if not can_edit(actor.role, "projects"):
        raise PermissionDenied("Only admin/manager can change the project owner")
    email = _normalize_email(owner_email)
    if not email:
        raise ValidationFailed("ownerEmail is required")
    team = _normalize_list(before.get("assignedTeam"), lower=True)
    if email not in team:
        team.append(email)
    after = upsert_entity("projects", actor.tenant_id, before["id"], {"ownerEmail": email, "assignedTeam": team})
    _audit(actor, "project", before["id"], "project_owner_changed", before=before, after=after)
    return after


def delete_project(actor: CRMActor, project_id: str) -> Dict[str, int]:
    """Delete a project; its tasks stay and lose their project reference."""
    if not can_delete(actor.role):
        raise PermissionDenied("Only admin/manager can delete projects")
    before = get_project(actor, project_id)
    tasks = list_all_entities(
        "tasks",
        actor.tenant_id,
        filter_fn=lambda item: str(item.get("projectId") or "") == before["id"],
    )
    for task in tasks:
        upsert_entity("tasks", actor.tenant_id, task["id"], {"projectId": None})
    summary = {"projects": 0, "tasksUnlinked": len(tasks)}
    if delete_entity("projects", actor.tenant_id, before["id"]):
        summary["projects"] = 1
        _audit(actor, "project", before["id"], "project_deleted", before=before, meta=summary)
    return summary


# -- tasks -----------------------------------------------------------------------


def effective_task_status(task: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Stored status, except open tasks past their due date read as Overdue."""
    status = normalize_task_status(task.get("status")) or "Pending"
    if status not in OPEN_TASK_STATUSES:
        return status
    due = _parse_datetime_utc(task.get("dueDate"))
    if due is not None and _date_only(task.get("dueDate")) is not None:
        # Date-only due dates run until the end of that day.
        due += timedelta(days=1)
    current = now or datetime.now(timezone.utc)
    if due is not None and due < current:
        return "Overdue"
    return status


def _with_effective_status(task: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    status = effective_task_status(task, now)
    if status == task.get("status"):
        return task
    return {**task, "status": status, "storedStatus": task.get("status")}


def _task_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in TASK_MANAGER_MUTABLE_FIELDS:
        if key not in payload:
            continue
        if key == "dueDate":
            fields[key] = _normalize_date(payload.get(key), key)
        elif key == "assignedToEmail":
            fields[key] = _normalize_email(payload.get(key))
        elif key in {"dealId", "projectId"}:
            fields[key] = _normalize_text(payload.get(key)) or None
        else:
            fields[key] = _normalize_text(payload.get(key))
    if "title" not in fields and "taskTitle" in payload:
        fields["title"] = _normalize_text(payload.get("taskTitle"))
    return fields


def _check_task_links(actor: CRMActor, fields: Dict[str, Any]) -> None:
    if fields.get("dealId"):
        _require_reference("deals", actor, fields["dealId"], "deal")
    if fields.get("projectId"):
        _require_reference("projects", actor, fields["projectId"], "project")


def create_task(actor: CRMActor, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not can_create(actor.role, "tasks"):
        raise PermissionDenied("Task creation is not permitted")
    fields = _task_fields(payload)
    if not fields.get("title"):
        raise ValidationFailed("task title is required")
    if not fields.get("assignedToEmail"):
        raise ValidationFailed("Please select who to assign the task to")
    if not fields.get("priority"):
        raise ValidationFailed("Please select a priority level")
    priority = _resolve_choice(fields["priority"], normalize_task_priority, None, "task priority")
    _check_task_links(actor, fields)
    task = {
        "title": fields["title"],
        "description": fields.get("description") or "",
        "status": "Pending",
        "priority": priority,
        "dueDate": fields.get("dueDate"),
        "dealId": fields.get("dealId"),
        "projectId": fields.get("projectId"),
        "assignedToEmail": fields["assignedToEmail"],
        "createdByEmail": actor.email,
    }
    created = create_entity("tasks", actor.tenant_id, task)
    _audit(actor, "task", created["id"], "task_created", after=created)
    return created


def get_task(actor: CRMActor, task_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    _require_module(actor, "tasks")
    task = _require("tasks", actor, task_id, "task")
    if not can_view_task(actor, task):
        raise PermissionDenied("forbidden")
    return _with_effective_status(task, now)


def list_tasks(actor: CRMActor, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    _require_module(actor, "tasks")
    tasks = list_all_entities(
        "tasks",
        actor.tenant_id,
        filter_fn=lambda item: can_view_task(actor, item),
        descending=True,
    )
    return [_with_effective_status(task, now) for task in tasks]


def update_task(actor: CRMActor, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    _require_module(actor, "tasks")
    before = _require("tasks", actor, task_id, "task")
    if not can_view_task(actor, before):
        raise PermissionDenied("forbidden")
    patch = _task_fields(updates)
    if not patch:
        raise ValidationFailed("no valid fields to update")
    allowed, reason = can_patch_task(actor, before, patch)
    if not allowed:
        raise PermissionDenied("forbidden", code="forbidden", details=reason)
    if "title" in patch and not patch["title"]:
        raise ValidationFailed("task title is required")
    if "assignedToEmail" in patch and not patch["assignedToEmail"]:
        raise ValidationFailed("assignedToEmail is required")
    if "priority" in patch:
        patch["priority"] = _resolve_choice(patch["priority"], normalize_task_priority, None, "task priority")
        if patch["priority"] is None:
            raise ValidationFailed("task priority is required")
    if "status" in patch:
        status = _resolve_choice(patch["status"], normalize_task_status, None, "task status")
        if status is None:
            raise ValidationFailed("task status is required")
        patch["status"] = status
        if status == "Completed" and before.get("status") != "Completed":
            patch["completedAt"] = utc_now_iso()
        elif status != "Completed":
            patch["completedAt"] = None
    _check_task_links(actor, patch)

    after = upsert_entity("tasks", actor.tenant_id, before["id"], patch)
    _audit(actor, "task", before["id"], "task_updated", before=before, after=after)
    return _with_effective_status(after)


def update_task_status(actor: CRMActor, task_id: str, status: Any) -> Dict[str, Any]:
    return update_task(actor, task_id, {"status": status})


def delete_task(actor: CRMActor, task_id: str) -> Dict[str, int]:
    if not can_delete(actor.role):
        raise PermissionDenied("Only admin/manager can delete tasks")
    _require_module(actor, "tasks")
    before = _require("tasks", actor, task_id, "task")
    deleted = delete_entity("tasks", actor.tenant_id, before["id"])
    if deleted:
        _audit(actor, "task", before["id"], "task_deleted", before=before)
    return {"tasks": 1 if deleted else 0}
