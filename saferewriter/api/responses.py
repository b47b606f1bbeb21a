from datetime import datetime
from typing import Any, Dict


def utc_timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


def success_response(data: Any, **extra) -> Dict[str, Any]:
    """Standard success envelope; extra keys sit beside data (e.g. cached)."""
    body = {"success": True, "data": data}
    body.update(extra)
    body["timestamp"] = utc_timestamp()
    return body


def error_body(error: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": False, "error": {**error, "timestamp": utc_timestamp()}}
