"""
Engine-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and get
consistent HTTP status codes everywhere.  The rule engine and the event bus
catch ``EvaluationError`` / ``ActionError`` internally so they never reach an
event publisher.

Usage:
    from wms_workflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowRule", resource_id=42)
    raise ConfigurationError("Invalid condition tree", details={"conditions[0].op": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested rule, workflow, chain or group does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "Workflow", "ApprovalChain").
        resource_id: The key that was looked up. Included in logs and the message.
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
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
                 Keys are field names (or JSON paths); values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ValidationError):
    """Malformed rule configuration: bad condition tree, unknown action type,
    missing action params, over-deep or cyclic tree.

    Raised at rule-save time so it never reaches runtime evaluation.
    ``details`` is keyed by the JSON path of the offending node, e.g.
    ``conditions.conditions[1].op`` or ``actions[0].params.targetStatus``.
    """


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


class StateConflictError(Exception):
    """Business-rule rejection of an approval state transition.

    Double-respond, re-approval of a terminal step, duplicate submission,
    responding to an already-resolved group.  Surfaced synchronously to the
    caller.  Maps to HTTP 409.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class EvaluationError(Exception):
    """Unexpected payload shape while evaluating a rule.

    Caught per rule by the engine; the rule is treated as a non-match.
    """

    def __init__(self, message: str, rule_id: int | None = None) -> None:
        self.rule_id = rule_id
        super().__init__(message)


class ActionError(Exception):
    """An action handler failed in a way it wants to report explicitly.

    Handlers may raise it with a short message; the executor records it in
    the execution log and moves on to the next action.
    """

    def __init__(self, action_type: str, message: str) -> None:
        self.action_type = action_type
        super().__init__(f"{action_type}: {message}")


class AuthorizationError(Exception):
    """The acting user may not decide this approval step or group.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, required_role: str | None = None) -> None:
        self.required_role = required_role
        super().__init__(message)
