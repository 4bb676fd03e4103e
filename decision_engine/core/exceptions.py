"""
Errors raised by the decision services.

Each type carries the HTTP status it maps to, so a blueprint needs a single
handler for ``DecisionError``:

    raise NotFoundError(resource="ProcessInstance", resource_id=42)
    raise ValidationError("Proposal validation failed", details={"title": "Title is required"})
"""


class DecisionError(Exception):
    status_code = 500

    def payload(self) -> dict:
        return {"error": str(self)}


class NotFoundError(DecisionError):
    """A process, instance, proposal or template id that does not resolve."""

    status_code = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        where = f" id={resource_id}" if resource_id is not None else ""
        super().__init__(f"{resource}{where} not found")


class ValidationError(DecisionError):
    """Well-formed input that breaks a rule.

    ``details`` maps a field key (or ``phase.field``) to a message written
    for people, using the field's schema title rather than its key.
    """

    status_code = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def payload(self) -> dict:
        return {"error": str(self), "details": self.details}


class UnauthorizedError(DecisionError):
    """The actor's role or ownership does not allow the action."""

    status_code = 403

    def __init__(self, message: str = "Not authorized") -> None:
        super().__init__(message)


class ConflictError(DecisionError):
    """The record is in a state that rules the operation out, e.g. publishing twice."""

    status_code = 409

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} conflicts with current state")
