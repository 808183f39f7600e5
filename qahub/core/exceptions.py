"""
Platform-wide exception hierarchy.

Every lifecycle service raises one of these types; the lifecycle blueprint
registers a handler per type once and maps it to a stable HTTP status.

    NotFoundError           404  unknown entity
    ValidationError         400  well-formed request violating an input rule
    AuthenticationError     401  missing / invalid bearer credential
    AuthorizationError      403  Action Guard deny
    InvalidTransitionError  409  current status is not a valid source
    ConflictError           409  stale expected_version / lost update
    DispatchFailure         --   never surfaced; logged after commit

Usage:
    from qahub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Defect", resource_id=42)
    raise ValidationError("resolution_notes is required",
                          details={"resolution_notes": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Defect", "TestCycle").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails a business-rule validation.

    No state has been changed when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write would clobber a newer version of a record.

    Args:
        resource: Model name.
        field: The field whose value conflicted (usually ``lock_version``).
        value: The value the caller expected.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None,
                 current: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.current = current
        msg = f"{resource} {field} mismatch: expected {value!r}"
        if current is not None:
            msg += f", found {current!r}"
        super().__init__(msg)


class AuthenticationError(Exception):
    """Raised when the request carries no usable identity."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the Action Guard denies a transition.

    Args:
        user_id: Acting user.
        entity_type: e.g. "defect".
        action: Transition name that was denied.
        reason: Why the guard said no.
    """

    def __init__(self, user_id, entity_type: str, action: str, reason: str | None = None) -> None:
        msg = f"User {user_id} may not '{action}' {entity_type}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.user_id = user_id
        self.entity_type = entity_type
        self.action = action
        self.reason = reason


class InvalidTransitionError(Exception):
    """Raised when the entity's current status is not a source of the transition.

    Carries the current status and the illegal target for diagnostics.
    """

    def __init__(
        self,
        entity_type: str,
        action: str,
        current: str,
        target: str | None = None,
        reason: str | None = None,
    ) -> None:
        msg = f"Cannot '{action}' {entity_type} (status={current}"
        if target:
            msg += f", target={target}"
        msg += ")"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity_type = entity_type
        self.action = action
        self.current_status = current
        self.target_status = target
        self.reason = reason


class DispatchFailure(Exception):
    """Raised inside the dispatcher when an emit to a live connection fails.

    Never propagates past the lifecycle service: the transition has already
    committed by the time notifications go out.
    """

    def __init__(self, event: str, target: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to deliver '{event}' to {target}: {cause}")
        self.event = event
        self.target = target
        self.cause = cause
