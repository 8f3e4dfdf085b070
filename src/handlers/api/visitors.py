"""Visitors API handler."""

import json
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from congrega.config import StoreConfig
from congrega.models.visit_record import RecordVisitRequest
from congrega.models.visitor import (
    ConvertVisitorRequest,
    CreateContactAttemptRequest,
    CreateVisitorRequest,
    UpdateVisitorRequest,
    VisitorFilters,
)
from congrega.repositories.visitor import VisitorRepository
from congrega.services import visitor_lifecycle
from congrega.utils.auth import AuthContext, get_auth_context, require_admin
from congrega.utils.exceptions import CongregaError, NotEligibleError, ValidationError
from congrega.utils.responses import created, error, error_from, no_content, paginated, success

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100


def handler(event: dict[str, Any], context: Any) -> dict:
    """Handle visitors API requests.

    Routes:
        GET    /visitors
        POST   /visitors
        GET    /visitors/stats
        GET    /visitors/{visitor_id}
        PUT    /visitors/{visitor_id}
        DELETE /visitors/{visitor_id}
        POST   /visitors/{visitor_id}/contact-attempts
        GET    /visitors/{visitor_id}/visits
        POST   /visitors/{visitor_id}/visits
        POST   /visitors/{visitor_id}/convert
    """
    try:
        http_method = event.get("httpMethod", "").upper()
        path_params = event.get("pathParameters", {}) or {}
        resource = event.get("resource", "") or event.get("path", "")
        visitor_id = path_params.get("visitor_id")

        auth = get_auth_context(event)
        repo = VisitorRepository(StoreConfig.from_env())

        if resource.endswith("/stats"):
            if http_method == "GET":
                return success(repo.get_visitor_stats())
            return error("Method not allowed", 405)

        if resource.endswith("/contact-attempts"):
            if http_method == "POST":
                return add_contact_attempt(repo, visitor_id, auth, event)
            return error("Method not allowed", 405)

        if resource.endswith("/visits"):
            if http_method == "GET":
                return get_visit_history(repo, visitor_id)
            elif http_method == "POST":
                return record_visit(repo, visitor_id, auth, event)
            return error("Method not allowed", 405)

        if resource.endswith("/convert"):
            if http_method == "POST":
                return convert_to_member(repo, visitor_id, event)
            return error("Method not allowed", 405)

        # Standard CRUD routes
        if http_method == "GET" and visitor_id:
            return get_visitor(repo, visitor_id)
        elif http_method == "GET":
            return list_visitors(repo, event)
        elif http_method == "POST":
            return create_visitor(repo, auth, event)
        elif http_method == "PUT" and visitor_id:
            return update_visitor(repo, visitor_id, event)
        elif http_method == "DELETE" and visitor_id:
            require_admin(auth, "delete")
            repo.delete_visitor(visitor_id)
            return no_content()
        else:
            return error("Method not allowed", 405)

    except PydanticValidationError as e:
        return error_from(ValidationError.from_pydantic(e))
    except CongregaError as e:
        return error_from(e)
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)
    except ValueError as e:
        return error(str(e), 400)
    except Exception as e:
        logger.exception("Visitors handler error", error=str(e))
        return error("Internal server error", 500)


def _parse_body(event: dict) -> dict:
    """Parse the JSON body into a dict."""
    body = json.loads(event.get("body") or "{}")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


# =============================================================================
# Standard CRUD
# =============================================================================


def list_visitors(repo: VisitorRepository, event: dict) -> dict:
    """List visitors, newest first.

    Query params:
        status, follow_up_status, assigned_to: equality filters
        start, end: first visit date range (both required together)
        search: name/email/phone substring
        limit: Page size (default 20, max 100)
        cursor: Pagination cursor
    """
    query_params = event.get("queryStringParameters", {}) or {}

    limit = min(int(query_params.get("limit", 20)), MAX_PAGE_SIZE)
    start = query_params.get("start")
    end = query_params.get("end")
    if bool(start) != bool(end):
        raise ValueError("Both start and end are required for a date range")

    filters = VisitorFilters.model_validate({
        "status": query_params.get("status"),
        "follow_up_status": query_params.get("follow_up_status"),
        "assigned_to": query_params.get("assigned_to"),
        "date_range": {"start": start, "end": end} if start else None,
        "search": query_params.get("search"),
    })

    page = repo.get_visitors(filters, page_size=limit, cursor=query_params.get("cursor"))

    return paginated(
        [v.model_dump(mode="json") for v in page.visitors],
        limit=limit,
        has_more=page.has_more,
        next_cursor=page.cursor,
    )


def get_visitor(repo: VisitorRepository, visitor_id: str) -> dict:
    """Get a visitor with its follow-up indicators."""
    visitor = repo.get_or_raise(visitor_id)
    data = visitor.model_dump(mode="json")
    data["insights"] = visitor_lifecycle.summarize(visitor)
    return success(data)


def create_visitor(repo: VisitorRepository, auth: AuthContext, event: dict) -> dict:
    """Register a new visitor."""
    body = _parse_body(event)
    body["created_by"] = auth.user_id
    request = CreateVisitorRequest.model_validate(body)

    visitor_id = repo.create_visitor(request)
    return created({"id": visitor_id})


def update_visitor(repo: VisitorRepository, visitor_id: str, event: dict) -> dict:
    """Apply a partial update to a visitor."""
    request = UpdateVisitorRequest.model_validate(_parse_body(event))
    repo.update_visitor(visitor_id, request)

    visitor = repo.get_or_raise(visitor_id)
    return success(visitor)


# =============================================================================
# Follow-up
# =============================================================================


def add_contact_attempt(
    repo: VisitorRepository,
    visitor_id: str,
    auth: AuthContext,
    event: dict,
) -> dict:
    """Log a contact attempt made by the current user."""
    body = _parse_body(event)
    body["contacted_by"] = auth.user_id
    request = CreateContactAttemptRequest.model_validate(body)

    attempt = repo.add_contact_attempt(visitor_id, request)
    return created(attempt)


def record_visit(
    repo: VisitorRepository,
    visitor_id: str,
    auth: AuthContext,
    event: dict,
) -> dict:
    """Record an attendance event registered by the current user."""
    body = _parse_body(event)
    body["visitor_id"] = visitor_id
    body["registered_by"] = auth.user_id
    request = RecordVisitRequest.model_validate(body)

    visit_id = repo.record_visit(request)
    return created({"id": visit_id})


def get_visit_history(repo: VisitorRepository, visitor_id: str) -> dict:
    """Get a visitor's visits, newest first."""
    repo.get_or_raise(visitor_id)
    visits = repo.get_visit_history(visitor_id)
    return success({"items": [v.model_dump(mode="json") for v in visits]})


def convert_to_member(repo: VisitorRepository, visitor_id: str, event: dict) -> dict:
    """Convert a visitor to a member.

    Refused with 409 and the blocking reasons when the visitor is not
    eligible, unless forced.
    """
    request = ConvertVisitorRequest.model_validate(_parse_body(event))

    visitor = repo.get_or_raise(visitor_id)
    blockers = visitor_lifecycle.conversion_blockers(visitor)
    if blockers and not request.force:
        raise NotEligibleError(visitor_id, blockers)
    if blockers:
        logger.info("Forced conversion", visitor_id=visitor_id, blockers=blockers)

    repo.convert_to_member(visitor_id, request.member_id)
    return success(repo.get_or_raise(visitor_id))
