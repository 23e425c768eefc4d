from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import TableServiceClient, UpdateMode

from shared.config import get_setting

logger = logging.getLogger(__name__)

TABLES = {
    "contacts": get_setting("CRM_CONTACTS_TABLE", "CRMContacts"),
    "deals": get_setting("CRM_DEALS_TABLE", "CRMDeals"),
    "projects": get_setting("CRM_PROJECTS_TABLE", "CRMProjects"),
    "tasks": get_setting("CRM_TASKS_TABLE", "CRMTasks"),
    "audit": get_setting("CRM_AUDIT_TABLE", "CRMAuditLog"),
}

MAX_LIST_LIMIT = 200

_service_client: Optional[TableServiceClient] = None
_table_clients: Dict[str, Any] = {}
_table_init_failed = False
_table_lock = Lock()

_memory_lock = Lock()
_memory_store: Dict[str, Dict[str, Dict[str, dict]]] = {}


def tenant_partition(tenant_id: Any) -> str:
    return str(tenant_id or "").strip()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


_id_lock = Lock()
_last_id_ns = 0


def _new_id() -> str:
    # Nanosecond prefix, bumped per process, keeps RowKey order aligned with creation order.
    global _last_id_ns
    with _id_lock:
        _last_id_ns = max(time.time_ns(), _last_id_ns + 1)
        ts_ns = _last_id_ns
    return f"{ts_ns:019d}_{uuid4().hex[:8]}"


def _escape_odata(value: str) -> str:
    return str(value or "").replace("'", "''")


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _json_load(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _get_service_client() -> Optional[TableServiceClient]:
    global _service_client, _table_init_failed
    if _table_init_failed:
        return None
    if _service_client is not None:
        return _service_client
    conn_str = get_setting("AZURE_STORAGE_CONNECTION_STRING")
    if not conn_str:
        return None
    try:
        _service_client = TableServiceClient.from_connection_string(conn_str)
        return _service_client
    except ValueError as exc:
        _table_init_failed = True
        logger.warning("Invalid storage connection string for CRM, using in-memory store: %s", exc)
        return None


def _get_table_client(table_name: str):
    if table_name in _table_clients:
        return _table_clients[table_name]
    service = _get_service_client()
    if service is None:
        return None
    with _table_lock:
        if table_name in _table_clients:
            return _table_clients[table_name]
        client = service.get_table_client(table_name)
        try:
            client.create_table()
        except ResourceExistsError:
            pass
        _table_clients[table_name] = client
        return client


def using_memory_store() -> bool:
    return _get_service_client() is None


def _encode_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (list, dict)):
            encoded[f"{key}Json"] = _json_dump(value)
        else:
            encoded[key] = value
    return encoded


def _decode_payload(entity: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in entity.items():
        if key in {"PartitionKey", "RowKey", "Timestamp", "etag"}:
            continue
        if key.endswith("Json"):
            out[key[:-4]] = _json_load(value)
        else:
            out[key] = value
    out["id"] = entity.get("RowKey") or out.get("id")
    return out


def _memory_put(table_name: str, tenant_id: str, row_key: str, payload: Dict[str, Any]) -> dict:
    with _memory_lock:
        table_bucket = _memory_store.setdefault(table_name, {})
        tenant_bucket = table_bucket.setdefault(tenant_id, {})
        entity = {
            "PartitionKey": tenant_id,
            "RowKey": row_key,
            **payload,
        }
        tenant_bucket[row_key] = entity
        return dict(entity)


def _memory_get(table_name: str, tenant_id: str, row_key: str) -> Optional[dict]:
    with _memory_lock:
        entity = (
            _memory_store
            .get(table_name, {})
            .get(tenant_id, {})
            .get(row_key)
        )
        return dict(entity) if entity else None


def _memory_delete(table_name: str, tenant_id: str, row_key: str) -> bool:
    with _memory_lock:
        table_bucket = _memory_store.get(table_name, {})
        tenant_bucket = table_bucket.get(tenant_id, {})
        return tenant_bucket.pop(row_key, None) is not None


def _memory_list(table_name: str, tenant_id: str) -> List[dict]:
    with _memory_lock:
        tenant_bucket = _memory_store.get(table_name, {}).get(tenant_id, {})
        return [dict(item) for item in tenant_bucket.values()]


def create_entity(table_key: str, tenant_id: str, payload: Dict[str, Any], entity_id: Optional[str] = None) -> Dict[str, Any]:
    tenant = tenant_partition(tenant_id)
    if not tenant:
        raise ValueError("tenant_id is required")
    now = utc_now_iso()
    row_key = str(entity_id or payload.get("id") or _new_id())
    base = {
        **payload,
        "createdAt": payload.get("createdAt") or now,
        "updatedAt": now,
    }
    base.pop("id", None)
    encoded = _encode_payload(base)
    client = _get_table_client(TABLES[table_key])
    if client:
        entity = {
            "PartitionKey": tenant,
            "RowKey": row_key,
            **encoded,
        }
        client.create_entity(entity=entity)
        return _decode_payload(entity)

    memory_entity = _memory_put(TABLES[table_key], tenant, row_key, encoded)
    return _decode_payload(memory_entity)


def upsert_entity(table_key: str, tenant_id: str, entity_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``payload`` into the stored document and write it back.

    Keys mapped to ``None`` are dropped from the stored document, which is how
    callers clear a reference.
    """
    tenant = tenant_partition(tenant_id)
    existing = get_entity(table_key, tenant, entity_id) or {}
    merged = {
        **existing,
        **payload,
        "createdAt": existing.get("createdAt") or payload.get("createdAt") or utc_now_iso(),
        "updatedAt": utc_now_iso(),
    }
    merged.pop("id", None)
    encoded = _encode_payload(merged)
    client = _get_table_client(TABLES[table_key])
    if client:
        entity = {
            "PartitionKey": tenant,
            "RowKey": entity_id,
            **encoded,
        }
        # Replace mode: columns missing from the merged document are dropped.
        client.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
        return _decode_payload(entity)
    memory_entity = _memory_put(TABLES[table_key], tenant, entity_id, encoded)
    return _decode_payload(memory_entity)


def get_entity(table_key: str, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return None
    client = _get_table_client(TABLES[table_key])
    if client:
        try:
            entity = client.get_entity(partition_key=tenant, row_key=entity_id)
        except ResourceNotFoundError:
            return None
        return _decode_payload(entity)
    memory_entity = _memory_get(TABLES[table_key], tenant, entity_id)
    return _decode_payload(memory_entity) if memory_entity else None


def delete_entity(table_key: str, tenant_id: str, entity_id: str) -> bool:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return False
    client = _get_table_client(TABLES[table_key])
    if client:
        try:
            client.get_entity(partition_key=tenant, row_key=entity_id)
        except ResourceNotFoundError:
            return False
        client.delete_entity(partition_key=tenant, row_key=entity_id)
        return True
    return _memory_delete(TABLES[table_key], tenant, entity_id)


def _load_rows(table_key: str, tenant: str, cursor_value: str = "", descending: bool = False) -> List[Dict[str, Any]]:
    client = _get_table_client(TABLES[table_key])
    if client:
        filter_expr = f"PartitionKey eq '{_escape_odata(tenant)}'"
        if cursor_value:
            op = "lt" if descending else "gt"
            filter_expr += f" and RowKey {op} '{_escape_odata(cursor_value)}'"
        rows = [_decode_payload(item) for item in client.query_entities(query_filter=filter_expr)]
    else:
        rows = [_decode_payload(item) for item in _memory_list(TABLES[table_key], tenant)]
        if cursor_value:
            if descending:
                rows = [item for item in rows if str(item.get("id") or "") < cursor_value]
            else:
                rows = [item for item in rows if str(item.get("id") or "") > cursor_value]

    rows.sort(key=lambda item: str(item.get("id") or ""))
    if descending:
        rows.reverse()
    return rows


def list_entities(
    table_key: str,
    tenant_id: str,
    *,
    limit: int = 50,
    cursor: Optional[str] = None,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
    descending: bool = False,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    tenant = tenant_partition(tenant_id)
    safe_limit = max(1, min(MAX_LIST_LIMIT, int(limit or 50)))
    rows = _load_rows(table_key, tenant, str(cursor or ""), descending=descending)
    if filter_fn:
        rows = [item for item in rows if filter_fn(item)]
    page = rows[:safe_limit]
    next_cursor = page[-1]["id"] if len(rows) > safe_limit and page else None
    return page, next_cursor


def list_all_entities(
    table_key: str,
    tenant_id: str,
    *,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
    descending: bool = False,
) -> List[Dict[str, Any]]:
    """Return every document of a tenant partition, unpaged."""
    rows = _load_rows(table_key, tenant_partition(tenant_id), descending=descending)
    if filter_fn:
        rows = [item for item in rows if filter_fn(item)]
    return rows


def write_audit_event(
    tenant_id: str,
    *,
    actor_email: str,
    actor_user_id: Optional[str],
    actor_role: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    meta: Optional[dict] = None,
) -> Dict[str, Any]:
    payload = {
        "tenantId": tenant_partition(tenant_id),
        "actorEmail": actor_email,
        "actorUserId": actor_user_id,
        "actorRole": actor_role,
        "entityType": entity_type,
        "entityId": entity_id,
        "action": action,
        "before": before or None,
        "after": after or None,
        "meta": meta or None,
        "timestamp": utc_now_iso(),
    }
    return create_entity("audit", tenant_id, payload)


def list_audit_events(
    tenant_id: str,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    def matches(item: Dict[str, Any]) -> bool:
        if entity_type and str(item.get("entityType") or "").lower() != str(entity_type).lower():
            return False
        if entity_id and str(item.get("entityId") or "") != str(entity_id):
            return False
        return True

    return list_entities("audit", tenant_id, limit=limit, cursor=cursor, filter_fn=matches, descending=True)


def reset_memory_store_for_tests() -> None:
    with _memory_lock:
        _memory_store.clear()
