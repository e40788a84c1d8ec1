"""JSON error bodies for the automation API.

Every error response has the shape ``{"error": <message>, "code": <E.*>}``
plus an optional ``details`` object, e.g.::

    return api_error(E.CONFLICT_CYCLE, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # missing parameter
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # malformed parameter
    VALIDATION_RULE = "ERR_VALIDATION_RULE"           # rejected by a service rule

    NOT_FOUND = "ERR_NOT_FOUND"

    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_CYCLE = "ERR_CONFLICT_CYCLE"             # dependency edge would close a cycle

    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_CYCLE: 409,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a view; status defaults from HTTP_STATUS, then 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
