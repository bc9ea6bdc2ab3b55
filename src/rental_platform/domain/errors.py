"""Domain exceptions for the rental workflow.

Services raise these; the HTTP layer maps each ``kind`` to a status code in
one place (see ``app/main.py``).
"""


class WorkflowError(Exception):
    """Base class for every expected failure of a workflow operation."""

    kind = "workflow_error"

    def __init__(self, message: str, context: dict | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "context": self.context}


class NotFoundError(WorkflowError):
    """Entity missing, or not matching the expected state predicate (e.g. expired token)."""

    kind = "not_found"


class InvalidStateError(WorkflowError):
    """Operation attempted against an entity not in a permitted source state."""

    kind = "invalid_state"


class ForbiddenError(WorkflowError):
    """Actor does not own or match the resource."""

    kind = "forbidden"


class ValidationError(WorkflowError):
    """Input fails a domain constraint."""

    kind = "validation_error"


class InvalidSignatureError(WorkflowError):
    """Inbound callback signature does not match the recomputed one."""

    kind = "invalid_signature"


class ExternalServiceError(WorkflowError):
    """E-signature, payment or payout provider call failed."""

    kind = "external_service_error"


class ConflictError(WorkflowError):
    """A concurrent operation already changed the entity, or a duplicate exists."""

    kind = "conflict"


class InvalidTransitionError(InvalidStateError):
    """Raised when a status transition is not in the transition table."""

    def __init__(self, entity: str, current_status: str, target_status: str):
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid {entity} transition from {current_status} to {target_status}",
            context={"entity": entity, "from": current_status, "to": target_status},
        )
