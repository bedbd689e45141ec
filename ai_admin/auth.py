import re
from typing import Any, Dict, Mapping, Optional

from .config import AppSettings

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def read_api_key(headers: Mapping[str, str]) -> Optional[str]:
    direct = (headers.get("x-ai-admin-api-key") or "").strip()
    if direct:
        return direct
    match = _BEARER_RE.match(headers.get("authorization") or "")
    if match:
        return match.group(1).strip() or None
    return None


def is_admin_email(email: Optional[str], settings: AppSettings) -> bool:
    if not email:
        return False
    normalized = email.strip().lower()
    if not normalized:
        return False
    if normalized in {entry.lower() for entry in settings.admin_emails}:
        return True
    _, at, domain = normalized.rpartition("@")
    if not at or not domain:
        return False
    domains = {entry.lower().lstrip("@") for entry in settings.admin_domains}
    return domain in domains


def authorize_request(
    headers: Mapping[str, str], caller_email: Optional[str], settings: AppSettings
) -> Dict[str, Any]:
    """Returns {"ok": True} or {"ok": False, "reason": ...}."""
    configured = settings.ai_admin_api_key
    if configured:
        supplied = read_api_key(headers)
        if supplied and supplied == configured:
            return {"ok": True}
        return {"ok": False, "reason": "invalid_api_key"}

    # No key configured: only non-production callers on the admin allowlist get through.
    if not settings.is_production and is_admin_email(caller_email, settings):
        return {"ok": True}
    return {
        "ok": False,
        "reason": "missing_api_key_configuration" if settings.is_production else "admin_email_required",
    }
