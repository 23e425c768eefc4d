from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List

from services.crm_lifecycle import (
    CRMError,
    PermissionDenied,
    create_project,
    list_contacts,
    normalize_project_status,
)
from services.crm_rbac import CRMActor, can_create

logger = logging.getLogger(__name__)

MAX_IMPORT_ROWS = 1000


def import_projects_csv(actor: CRMActor, text: str) -> Dict[str, Any]:
    """Create projects from ``project name, lead name, status`` rows.

    The first row is a header. Leads are matched by contact name, ignoring
    case; a row whose lead is unknown, whose status is not a project status,
    or which has fewer than three columns is reported in ``failures``.
    """
    if not can_create(actor.role, "projects"):
        raise PermissionDenied("Only admin/manager can import projects")

    contacts_by_name: Dict[str, Dict[str, Any]] = {}
    for contact in list_contacts(actor, show_lost=True):
        key = str(contact.get("name") or "").strip().lower()
        if key and key not in contacts_by_name:
            contacts_by_name[key] = contact

    items: List[Dict[str, Any]] = []
    failures: List[Dict[str, Any]] = []
    reader = csv.reader(io.StringIO(text or ""))
    next(reader, None)
    for line_no, row in enumerate(reader, start=2):
        cells = [cell.strip() for cell in row]
        if not any(cells):
            continue
        if line_no - 1 > MAX_IMPORT_ROWS:
            failures.append({"row": line_no, "error": f"import is limited to {MAX_IMPORT_ROWS} rows"})
            break
        if len(cells) < 3 or not cells[0]:
            failures.append({"row": line_no, "error": "expected project name, lead name, status"})
            continue
        title, lead_name, raw_status = cells[0], cells[1], cells[2]
        lead = contacts_by_name.get(lead_name.lower())
        if lead is None:
            failures.append({"row": line_no, "error": f"contact not found for lead: {lead_name}"})
            continue
        status = normalize_project_status(raw_status)
        if status is None:
            failures.append({"row": line_no, "error": f"invalid project status: {raw_status}"})
            continue
        try:
            project = create_project(
                actor,
                {"title": title, "status": status, "leadId": lead["id"]},
                origin="import",
            )
        except CRMError as exc:
            failures.append({"row": line_no, "error": exc.message})
            continue
        items.append(project)

    logger.info(
        "Project import finished: %s imported, %s errors (tenant=%s)",
        len(items),
        len(failures),
        actor.tenant_id,
    )
    return {
        "imported": len(items),
        "errors": len(failures),
        "items": items,
        "failures": failures,
    }
