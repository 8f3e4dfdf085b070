"""Errors raised by the visitor service.

Each error carries the HTTP status and machine-readable code the API
answers with, plus structured details for the admin UI.
"""


class CongregaError(Exception):
    """Base exception for all Congrega errors."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(CongregaError):
    """A visitor (or other record) does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationError(CongregaError):
    """Input did not validate.

    ``errors`` lists one ``{"field", "message"}`` entry per problem.
    """

    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed", errors: list[dict] | None = None):
        self.errors = errors or []
        super().__init__(message, details={"errors": self.errors})

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Flatten a pydantic ValidationError into field errors."""
        return cls(
            errors=[
                {
                    "field": ".".join(str(loc) for loc in error["loc"]),
                    "message": error["msg"],
                    "type": error["type"],
                }
                for error in exc.errors()
            ]
        )


class UnauthorizedError(CongregaError):
    """No staff member could be identified for the request."""

    status_code = 401
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(CongregaError):
    """The staff member may not perform the action."""

    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, action: str, user_id: str):
        super().__init__(
            f"Only administrators can {action} visitors",
            details={"action": action, "user_id": user_id},
        )


class ConflictError(CongregaError):
    """The visitor's current state does not allow the change."""

    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, visitor_id: str, message: str, reasons: list[str] | None = None):
        self.visitor_id = visitor_id
        self.reasons = reasons or []
        details = {"visitor_id": visitor_id}
        if self.reasons:
            details["reasons"] = self.reasons
        super().__init__(message, details=details)


class ConvertedVisitorError(ConflictError):
    """A change would leave a converted visitor without membership or completed follow-up."""

    error_code = "CONVERTED_VISITOR"

    def __init__(self, visitor_id: str):
        super().__init__(
            visitor_id,
            "Converted visitors must stay members with completed follow-up",
            reasons=["status is converted"],
        )


class NotEligibleError(ConflictError):
    """The visitor does not meet the rules for conversion to member."""

    error_code = "NOT_ELIGIBLE"

    def __init__(self, visitor_id: str, reasons: list[str]):
        super().__init__(visitor_id, "Visitor is not eligible for conversion", reasons=reasons)
