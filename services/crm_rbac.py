from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

ROLES = ("admin", "manager", "member")

MODULES = ("contacts", "deals", "projects", "tasks", "reports")

ROLE_PERMISSIONS = {
    "admin": {"all"},
    "manager": {"contacts", "projects", "tasks", "reports"},
    "member": {"contacts", "projects", "tasks"},
}

CONTACT_MEMBER_MUTABLE_FIELDS = {"status", "notes", "tags"}
TASK_MEMBER_MUTABLE_FIELDS = {"status"}
TASK_SYSTEM_MUTABLE_FIELDS = {"updatedAt", "completedAt"}
TASK_MANAGER_MUTABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "dueDate",
    "assignedToEmail",
    "dealId",
    "projectId",
}


@dataclass
class CRMActor:
    tenant_id: str
    email: str
    role: str
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    raw_role: Optional[str] = None


def normalize_role(raw_role: str | None) -> str:
    role = str(raw_role or "").strip().lower()
    if role in {"founder", "ceo", "owner", "admin"}:
        return "admin"
    if role in {"cto", "manager", "lead"}:
        return "manager"
    # Developers and unknown roles get the restricted view.
    return "member"


def permissions_for(role: str) -> set:
    return set(ROLE_PERMISSIONS.get(role, ROLE_PERMISSIONS["member"]))


def has_permission(role: str, module: str) -> bool:
    granted = permissions_for(role)
    return "all" in granted or module in granted


def can_manage_all(role: str) -> bool:
    return role in {"admin", "manager"}


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _to_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    return []


def is_task_member(task: Dict[str, Any], actor_email: str | None) -> bool:
    email = _normalize_email(actor_email)
    if not email:
        return False
    assigned = _normalize_email(task.get("assignedToEmail"))
    created_by = _normalize_email(task.get("createdByEmail"))
    return email in {assigned, created_by}


def can_view_contact(actor: CRMActor, contact: Dict[str, Any]) -> bool:
    return has_permission(actor.role, "contacts")


def can_view_deal(actor: CRMActor, deal: Dict[str, Any]) -> bool:
    return has_permission(actor.role, "deals")


def can_view_project(actor: CRMActor, project: Dict[str, Any]) -> bool:
    if not has_permission(actor.role, "projects"):
        return False
    if can_manage_all(actor.role):
        return True
    email = _normalize_email(actor.email)
    if email and _normalize_email(project.get("ownerEmail")) == email:
        return True
    team = [_normalize_email(item) for item in _to_list(project.get("assignedTeam"))]
    return bool(email) and email in team


def can_view_task(actor: CRMActor, task: Dict[str, Any]) -> bool:
    if not has_permission(actor.role, "tasks"):
        return False
    if can_manage_all(actor.role):
        return True
    return is_task_member(task, actor.email)


def can_create(role: str, module: str) -> bool:
    if module == "projects":
        return can_manage_all(role)
    return has_permission(role, module)


def can_edit(role: str, module: str) -> bool:
    if module == "projects":
        return can_manage_all(role)
    return has_permission(role, module)


def can_delete(role: str) -> bool:
    return can_manage_all(role)


def can_view_reports(role: str) -> bool:
    return has_permission(role, "reports")


def can_patch_contact(actor: CRMActor, updates: Dict[str, Any]) -> Tuple[bool, str | None]:
    if not has_permission(actor.role, "contacts"):
        return False, "forbidden"
    if can_manage_all(actor.role):
        return True, None
    forbidden_for_member = set(updates.keys()) - CONTACT_MEMBER_MUTABLE_FIELDS
    if forbidden_for_member:
        return False, f"member_cannot_update_fields:{','.join(sorted(forbidden_for_member))}"
    return True, None


def can_patch_task(
    actor: CRMActor,
    before: Dict[str, Any],
    updates: Dict[str, Any],
) -> Tuple[bool, str | None]:
    if can_manage_all(actor.role):
        return True, None
    if actor.role != "member":
        return False, "forbidden"
    if not is_task_member(before, actor.email):
        return False, "forbidden"
    forbidden_for_member = set(updates.keys()) - TASK_MEMBER_MUTABLE_FIELDS - TASK_SYSTEM_MUTABLE_FIELDS
    if forbidden_for_member:
        return False, f"member_cannot_update_fields:{','.join(sorted(forbidden_for_member))}"
    return True, None
