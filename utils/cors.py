from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import azure.functions as func

from shared.config import get_setting

DEFAULT_ALLOWED_HEADERS = ["Content-Type", "Authorization"]
# Report downloads set a filename the browser must be able to read.
EXPOSED_HEADERS = "Content-Disposition"

_TRUTHY = {"1", "true", "yes", "y"}
_FALSY = {"0", "false", "no", "n"}


def _env_flag(names: Iterable[str], default: bool = False) -> bool:
    for name in names:
        raw = get_setting(name)
        if raw is None:
            continue
        lowered = raw.strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
    return default


def parse_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for origin in str(raw or "").split(","):
        cleaned = origin.strip().rstrip("/")
        if not cleaned:
            continue
        if cleaned == "*":
            return ["*"]
        origins.append(cleaned)
    return origins


def cors_settings() -> Dict[str, object]:
    raw = get_setting("ALLOWED_ORIGINS") or get_setting("CORS_ALLOWED_ORIGINS") or "http://localhost:5173"
    return {
        "origins": parse_origins(raw),
        "allow_credentials": _env_flag(["CORS_ALLOW_CREDENTIALS"]),
        "allow_localhost": _env_flag(["CORS_ALLOW_LOCALHOST"], default=True),
    }


def _split_origin(value: str, *, default_scheme: Optional[str] = None) -> Tuple[Optional[str], Optional[str], Optional[int]]:
    text = str(value or "").strip().rstrip("/")
    if not text:
        return None, None, None
    has_scheme = "://" in text
    if not has_scheme and default_scheme:
        text = f"{default_scheme}://{text}"
    parsed = urlparse(text)
    host = (parsed.hostname or "").lower()
    if not host:
        return None, None, None
    try:
        port = parsed.port
    except ValueError:
        return None, None, None
    scheme = (parsed.scheme or "").lower() if has_scheme else None
    return scheme, host, port


def _effective_port(scheme: Optional[str], port: Optional[int]) -> Optional[int]:
    if port is not None:
        return port
    return {"https": 443, "http": 80}.get(scheme or "")


def is_local_origin(origin: Optional[str]) -> bool:
    _, host, _ = _split_origin(origin or "", default_scheme="https")
    return host in {"localhost", "127.0.0.1"}


def origin_matches(origin: Optional[str], allowed_origin: str) -> bool:
    """Match ``origin`` against one allow-list entry.

    Entries may omit the scheme (any scheme matches), pin a port, or use a
    ``*.`` wildcard that covers the bare domain and every subdomain.
    """
    if not origin or not allowed_origin:
        return False
    if allowed_origin == "*":
        return True
    origin_scheme, origin_host, origin_port = _split_origin(origin, default_scheme="https")
    allowed_scheme, allowed_host, allowed_port = _split_origin(allowed_origin, default_scheme="https")
    if not origin_host or not allowed_host:
        return False
    if allowed_scheme and origin_scheme and allowed_scheme != origin_scheme:
        return False
    if allowed_port is not None and _effective_port(origin_scheme, origin_port) != _effective_port(allowed_scheme, allowed_port):
        return False
    if allowed_host.startswith("*."):
        suffix = allowed_host[2:]
        return origin_host == suffix or origin_host.endswith(f".{suffix}")
    return origin_host == allowed_host


def _allow_headers(req: func.HttpRequest) -> str:
    merged: Dict[str, str] = {name.lower(): name for name in DEFAULT_ALLOWED_HEADERS}
    for name in req.headers.get("Access-Control-Request-Headers", "").split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    settings = cors_settings()
    origins = settings["origins"]
    origin = req.headers.get("origin") or req.headers.get("Origin")

    seen: Set[str] = set()
    methods: List[str] = []
    for method in list(allowed_methods) + ["OPTIONS"]:
        normalized = method.strip().upper()
        if normalized and normalized not in seen:
            seen.add(normalized)
            methods.append(normalized)

    headers: Dict[str, str] = {"Vary": "Origin"}
    allow_all = not origins or "*" in origins
    allowed = allow_all or any(origin_matches(origin, entry) for entry in origins)
    if not allowed and settings["allow_localhost"] and is_local_origin(origin):
        allowed = True
    if not allowed:
        return headers

    if settings["allow_credentials"] and origin:
        allow_origin = origin
    elif allow_all:
        allow_origin = "*"
    else:
        allow_origin = origin or "*"
    headers.update(
        {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(methods),
            "Access-Control-Allow-Headers": _allow_headers(req),
            "Access-Control-Expose-Headers": EXPOSED_HEADERS,
        }
    )
    if settings["allow_credentials"]:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
