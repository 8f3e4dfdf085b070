"""API Gateway responses for the visitors API.

Every body is JSON. Errors share one envelope::

    {"error": true, "error_code": "...", "message": "...", "details": {...}}
"""

import json
import os
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel as PydanticBaseModel

from congrega.utils.exceptions import CongregaError

# Origin of the church admin UI
CORS_HEADERS = {
    "Access-Control-Allow-Origin": os.environ.get("CORS_ALLOWED_ORIGIN", "https://dev.congrega.app"),
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
    "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    "Content-Type": "application/json",
}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, PydanticBaseModel):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _response(status_code: int, body: Any) -> dict:
    return {
        "statusCode": status_code,
        "headers": CORS_HEADERS,
        "body": json.dumps(body, default=_json_default),
    }


def success(data: Any, status_code: int = 200) -> dict:
    """Respond with a visitor, visit, stats object or plain dict.

    Pydantic models are dumped in JSON mode, so datetimes come out as
    ISO-8601 strings.
    """
    if isinstance(data, PydanticBaseModel):
        data = data.model_dump(mode="json")
    return _response(status_code, data)


def created(data: Any) -> dict:
    """Create a 201 Created response."""
    return success(data, status_code=201)


def no_content() -> dict:
    """Create a 204 No Content response."""
    return {"statusCode": 204, "headers": CORS_HEADERS, "body": ""}


def error(
    message: str,
    status_code: int = 500,
    error_code: str | None = None,
    details: dict | None = None,
) -> dict:
    """Create an error response in the shared envelope."""
    body: dict[str, Any] = {"error": True, "message": message}
    if error_code:
        body["error_code"] = error_code
    if details:
        body["details"] = details
    return _response(status_code, body)


def error_from(exc: CongregaError) -> dict:
    """Create the error response a service error maps to."""
    return error(exc.message, exc.status_code, error_code=exc.error_code, details=exc.details)


def paginated(items: list[Any], limit: int, has_more: bool, next_cursor: str | None = None) -> dict:
    """Create a cursor-paginated visitor listing.

    Args:
        items: Visitors on the current page.
        limit: Requested page size.
        has_more: Whether another page exists.
        next_cursor: Cursor for the next page.
    """
    return success({
        "items": items,
        "pagination": {
            "limit": limit,
            "has_more": has_more,
            "next_cursor": next_cursor,
        },
    })
