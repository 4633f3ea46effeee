"""
Shopfloor Planner
Blueprint registry and shared request helpers.
"""

from flask import request

from shopfloor.core.exceptions import ValidationError


def current_user_id(required=True):
    """Acting user id from the ``X-User-Id`` header.

    Authentication happens upstream; this service trusts the header.
    Raises ValidationError when it is missing (and required) or not an int.
    """
    raw = (request.headers.get("X-User-Id") or "").strip()
    if not raw:
        if required:
            raise ValidationError("X-User-Id header is required", details={"X-User-Id": "required"})
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("X-User-Id header must be an integer", details={"X-User-Id": "invalid"})


def json_body():
    """Request JSON object, or {} for an empty / non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
