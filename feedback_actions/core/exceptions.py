"""
Engine-wide exception hierarchy.

Services raise only these types. Every class carries an HTTP ``status_code``
hint and a machine-readable ``code``; blueprints register one handler per
type and render the error verbatim.

Usage:
    from feedback_actions.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Action", resource_id=42, tenant_id=1)
    raise ValidationError("Invalid action payload", details={"priority": "must be one of ..."})
"""


class ActionEngineError(Exception):
    """Base class. Subclasses override ``status_code`` and ``code``."""

    status_code = 500
    code = "ERR_INTERNAL"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class ValidationError(ActionEngineError):
    """Raised when a payload violates the schema or a field-level business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names; values are error descriptions.
    """

    status_code = 400
    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(ActionEngineError):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts.
    A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Entity name (e.g. "Action", "User").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: The scope that was enforced. For debug logging only.
    """

    status_code = 404
    code = "ERR_NOT_FOUND"

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

    def to_dict(self) -> dict:
        return {"error": f"{self.resource} not found", "code": self.code}


class ForbiddenError(ActionEngineError):
    """Raised when an authenticated caller lacks the role or survey scope for an operation."""

    status_code = 403
    code = "ERR_FORBIDDEN"

    def __init__(self, message: str = "You do not have permission to perform this action") -> None:
        super().__init__(message)


class ConflictError(ActionEngineError):
    """Raised on duplicates or stale state transitions (e.g. re-resolving a resolved action)."""

    status_code = 409
    code = "ERR_CONFLICT_STATE"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConcurrentModificationError(ConflictError):
    """Raised when an optimistic version check fails on write."""

    code = "ERR_CONCURRENT_MODIFICATION"

    def __init__(self, resource: str, resource_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} id={resource_id} was modified concurrently; reload and retry")


class DependencyFailure(ActionEngineError):
    """Raised when the LLM, a transport, or another downstream adapter fails."""

    status_code = 502
    code = "ERR_DEPENDENCY"

    def __init__(self, dependency: str, message: str = "") -> None:
        self.dependency = dependency
        super().__init__(f"{dependency} failed: {message}" if message else f"{dependency} failed")
