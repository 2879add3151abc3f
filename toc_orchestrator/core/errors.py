"""Error taxonomy shared by services and the HTTP layer.

Every error carries a stable ``code`` and an HTTP status so API handlers can
render ``{"error": code, "details": detail}`` without inspecting types.
"""


class OrchestratorError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(OrchestratorError):
    """Malformed input or missing required field. Not retried."""

    code = "validation_error"
    status_code = 400


class MalformedMessageError(ValidationError):
    """Inbound EHR message could not be parsed."""

    code = "malformed_message"


class NotFoundError(OrchestratorError):
    """Unknown episode, task, attempt or patient."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(OrchestratorError):
    """A concurrent writer won the race, or the entity is in the wrong state."""

    code = "state_conflict"
    status_code = 409


class TransientIntegrationError(OrchestratorError):
    """Timeout or temporary failure of an external system. Retryable."""

    code = "transient_integration_failure"
    status_code = 503


class ConfigurationError(OrchestratorError):
    """Protocol or template configuration is unusable."""

    code = "configuration_defect"
    status_code = 500


class NoTemplateError(ConfigurationError):
    """No outreach template matches, not even the system default."""

    def __init__(self, condition_code: str, risk_level: str) -> None:
        super().__init__(
            f"No outreach template for {condition_code}/{risk_level} "
            "and no system default configured"
        )
        self.condition_code = condition_code
        self.risk_level = risk_level
