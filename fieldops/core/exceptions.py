"""
Workflow-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
map them to HTTP status codes (see ``fieldops.blueprints.register_error_handlers``).

None of them is retried automatically:
  - ValidationError / PermissionDeniedError / InvalidTransitionError are
    caller errors and are surfaced as-is.
  - TransportError / StorageError are infrastructure failures; the caller
    decides whether to retry manually.

Usage:
    from fieldops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Intervention", resource_id=42)
    raise ValidationError("invoice_number is required", details={"invoice_number": "missing"})
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Intervention").
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
    """Malformed or missing required input (blank invoice number, bad email...).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """A role-gated action was attempted by an ineligible actor."""

    def __init__(self, actor: str | int | None, action: str, reason: str | None = None) -> None:
        self.actor = actor
        self.action = action
        msg = f"Operator {actor} is not allowed to {action}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTransitionError(Exception):
    """A state-machine guard rejected the requested transition.

    Args:
        entity: Entity name ("Intervention", "RenewalItem").
        entity_id: PK of the entity.
        action: The attempted transition.
        current_state: The state the entity was actually in.
        reason: Optional extra context.
    """

    def __init__(
        self,
        entity: str,
        entity_id: int | None,
        action: str,
        current_state: str | None,
        reason: str | None = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        self.current_state = current_state
        msg = f"Cannot '{action}' {entity} {entity_id} (state={current_state})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class TransportError(Exception):
    """Mail delivery failed; nothing was logged as sent."""

    def __init__(self, recipient: str | None, message: str) -> None:
        self.recipient = recipient
        super().__init__(f"Mail delivery to {recipient or '-'} failed: {message}")


class StorageError(Exception):
    """Persistence failed; the unit of work was rolled back."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Storage failure during {operation}: {message}")
