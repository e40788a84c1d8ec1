"""
Engine-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Two groups:
  Mutation errors surfaced to the caller — NotFoundError, ValidationError,
  ConflictError, CycleError.
  Automation errors contained inside the engine — ConditionEvaluationError,
  ActionExecutionError, ScheduleScanError, CascadeDepthExceeded. These are
  logged and written to the Event Log; they never fail the business
  operation that caused the trigger fire.

Usage:
    from practice_automation.core.exceptions import NotFoundError, CycleError

    raise NotFoundError(resource="WorkflowTask", resource_id=42)
    raise CycleError(task_id=7, depends_on_task_id=3)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-organization access
    attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Assignment").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        organization_id: Optional; the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    The data was well-formed but violated a business rule (invalid state
    transition, unknown trigger type, unmet dependency).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class CycleError(ValidationError):
    """Raised when a dependency edge would close a cycle in the task graph.

    Nothing is persisted when this is raised. Maps to HTTP 409.
    """

    def __init__(self, task_id: int, depends_on_task_id: int) -> None:
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id
        super().__init__(
            f"Task {task_id} depending on task {depends_on_task_id} would create a cycle",
            details={"task_id": task_id, "depends_on_task_id": depends_on_task_id},
        )


class ConditionEvaluationError(Exception):
    """Raised by the condition evaluator on a malformed condition.

    The dispatcher treats it as "trigger does not match".
    """


class ActionExecutionError(Exception):
    """Raised inside an action handler; recorded on the TriggerEvent.

    Args:
        action_type: The action that failed.
        message: What went wrong.
        detail: Partial results worth keeping in the audit row.
    """

    def __init__(self, action_type: str, message: str, detail: dict | None = None) -> None:
        self.action_type = action_type
        self.reason = message
        self.detail = detail or {}
        super().__init__(f"{action_type}: {message}")


class ScheduleScanError(Exception):
    """Raised when enumerating candidates for one scan type fails."""

    def __init__(self, scan: str, cause: Exception) -> None:
        self.scan = scan
        self.cause = cause
        super().__init__(f"Scheduler scan '{scan}' failed: {cause}")


class CascadeDepthExceeded(Exception):
    """Raised when a cascade chain goes deeper than the configured limit."""

    def __init__(self, depth: int, limit: int, chain_id: str | None = None) -> None:
        self.depth = depth
        self.limit = limit
        self.chain_id = chain_id
        super().__init__(
            f"Cascade depth {depth} exceeds limit {limit}; chain {chain_id} aborted"
        )
