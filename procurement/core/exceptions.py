"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Usage:
    from procurement.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalRequest", resource_id=42)
    raise ValidationError("Score out of range", details={"min": 1, "max": 5, "provided": 7})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts.
    A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "RFP", "ApprovalWorkflow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed body, caught in blueprint): the data
    was well-formed but violated a rule (score outside the criterion scale,
    non-positive SLA hours, duplicate stage order).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Structured breakdown so the caller can self-correct,
                 e.g. ``{"min": 1, "max": 5, "provided": 6}``.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a state invariant.

    Examples: a second in-progress process for the same RFP, a decision on
    a request that is no longer pending, deactivating a workflow that is
    still referenced by a running process.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, resource: str | None = None, details: dict | None = None) -> None:
        self.message = message
        self.resource = resource
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(Exception):
    """Raised when a request carries no resolvable tenant/user identity. Maps to 401."""

    def __init__(self, message: str = "Authentication required") -> None:
        self.message = message
        super().__init__(message)
