"""Read-only aggregations over the lifecycle listings.

All figures are computed from what the actor can see, so a member's
dashboard only counts their own projects and tasks.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from services.crm_filters import SEARCH_FIELDS, matches_search
from services.crm_lifecycle import (
    CONTACT_STATUSES,
    DEAL_STAGES,
    PROJECT_STATUSES,
    TASK_STATUSES,
    list_contacts,
    list_deals,
    list_projects,
    list_tasks,
)
from services.crm_rbac import CRMActor, has_permission

logger = logging.getLogger(__name__)

OPEN_DEAL_STAGES = ("Lead", "Proposal Sent", "Negotiation")
SEARCH_RESULT_LIMIT = 20


def _value(deal: Dict[str, Any]) -> float:
    try:
        return float(deal.get("value") or 0)
    except (TypeError, ValueError):
        return 0.0


def _percent(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 1)


def _breakdown(items: List[Dict[str, Any]], field: str, labels: List[str]) -> Dict[str, int]:
    counts = Counter(str(item.get(field) or "") for item in items)
    out = {label: counts.get(label, 0) for label in labels}
    out["total"] = len(items)
    return out


def contacts_breakdown(contacts: List[Dict[str, Any]]) -> Dict[str, int]:
    return _breakdown(contacts, "status", CONTACT_STATUSES)


def deals_breakdown(deals: List[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = _breakdown(deals, "stage", DEAL_STAGES)
    out["totalValue"] = sum(_value(deal) for deal in deals)
    out["wonValue"] = sum(_value(deal) for deal in deals if deal.get("stage") == "Won")
    return out


def projects_breakdown(projects: List[Dict[str, Any]]) -> Dict[str, int]:
    return _breakdown(projects, "status", PROJECT_STATUSES)


def tasks_breakdown(tasks: List[Dict[str, Any]]) -> Dict[str, int]:
    # Tasks come from list_tasks, so Overdue is already derived.
    return _breakdown(tasks, "status", TASK_STATUSES)


def get_analytics(actor: CRMActor, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "contacts": contacts_breakdown(list_contacts(actor, show_lost=True)),
        "projects": projects_breakdown(list_projects(actor)),
        "tasks": tasks_breakdown(list_tasks(actor, now=now)),
    }
    if has_permission(actor.role, "deals"):
        summary["deals"] = deals_breakdown(list_deals(actor, show_lost=True))
    return summary


def conversion_funnel(contacts: List[Dict[str, Any]]) -> Dict[str, Any]:
    counts = Counter(str(item.get("status") or "") for item in contacts)
    won = counts.get("Won", 0)
    lost = counts.get("Lost", 0)
    rate = _percent(won, won + lost)
    return {
        "prospects": counts.get("Prospect", 0),
        "negotiations": counts.get("Negotiation", 0),
        "won": won,
        "lost": lost,
        "conversionRate": rate,
        "winRate": rate,
    }


def source_breakdown(contacts: List[Dict[str, Any]], deals: List[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    """``{source: {count, value}}``; value sums the deals of that source's contacts."""
    value_by_contact: Dict[str, float] = {}
    for deal in deals:
        contact_id = str(deal.get("contactId") or "")
        value_by_contact[contact_id] = value_by_contact.get(contact_id, 0.0) + _value(deal)

    sources: Dict[str, Dict[str, float]] = {}
    for contact in contacts:
        source = str(contact.get("source") or "").strip() or "Unknown"
        bucket = sources.setdefault(source, {"count": 0, "value": 0.0})
        bucket["count"] += 1
        bucket["value"] += value_by_contact.get(contact["id"], 0.0)
    return sources


def industry_breakdown(contacts: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = Counter(str(item.get("industry") or "").strip() or "Unknown" for item in contacts)
    return dict(counts)


def pipeline_summary(deals: List[Dict[str, Any]], projects: List[Dict[str, Any]]) -> Dict[str, Any]:
    open_deals = [deal for deal in deals if deal.get("stage") in OPEN_DEAL_STAGES]
    won = [deal for deal in deals if deal.get("stage") == "Won"]
    closed = [deal for deal in deals if deal.get("stage") in {"Won", "Lost"}]
    return {
        "totalValue": sum(_value(deal) for deal in open_deals),
        "openDeals": len(open_deals),
        "winRate": _percent(len(won), len(closed)),
        "avgDealSize": round(sum(_value(deal) for deal in deals) / len(deals), 2) if deals else 0.0,
        "activeProjects": sum(1 for project in projects if project.get("status") == "Active"),
    }


def get_advanced_analytics(actor: CRMActor) -> Dict[str, Any]:
    contacts = list_contacts(actor, show_lost=True)
    deals = list_deals(actor, show_lost=True) if has_permission(actor.role, "deals") else []
    projects = list_projects(actor)
    return {
        "conversion": conversion_funnel(contacts),
        "sources": source_breakdown(contacts, deals),
        "industries": industry_breakdown(contacts),
        "pipeline": pipeline_summary(deals, projects),
    }


def projects_by_lead(projects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows: Dict[str, Dict[str, Any]] = {}
    for project in projects:
        lead_id = str(project.get("leadId") or "")
        if not lead_id:
            continue
        row = rows.setdefault(
            lead_id,
            {
                "leadId": lead_id,
                "leadName": project.get("leadName") or "",
                "total": 0,
                "active": 0,
                "completed": 0,
                "paused": 0,
            },
        )
        row["total"] += 1
        status = str(project.get("status") or "").lower()
        if status in {"active", "completed", "paused"}:
            row[status] += 1
    return sorted(rows.values(), key=lambda row: (-row["total"], row["leadName"]))


def get_projects_by_lead(actor: CRMActor) -> List[Dict[str, Any]]:
    return projects_by_lead(list_projects(actor))


def global_search(actor: CRMActor, query: str, *, limit: int = SEARCH_RESULT_LIMIT) -> Dict[str, List[Dict[str, Any]]]:
    """Search every entity the actor can list; lost records are included."""
    needle = str(query or "").strip()
    results: Dict[str, List[Dict[str, Any]]] = {"contacts": [], "deals": [], "projects": [], "tasks": []}
    if not needle:
        return results
    sources = {
        "contacts": lambda: list_contacts(actor, show_lost=True),
        "projects": lambda: list_projects(actor),
        "tasks": lambda: list_tasks(actor),
    }
    if has_permission(actor.role, "deals"):
        sources["deals"] = lambda: list_deals(actor, show_lost=True)
    for entity, loader in sources.items():
        matched = [item for item in loader() if matches_search(item, needle, SEARCH_FIELDS[entity])]
        results[entity] = matched[:limit]
    logger.debug("Global search %r matched %s", needle, {key: len(val) for key, val in results.items()})
    return results
