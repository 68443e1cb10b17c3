from typing import Any


def ok(data: Any = None, message: str = "") -> dict:
    """Success envelope used by every router."""
    return {"success": True, "message": message, "data": data}
