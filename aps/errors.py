"""Error taxonomy for a pipeline run.

Only ExhaustedRetries aborts a run. TransportFailure, MalformedOutput and
SchemaViolation are recovered inside the StageRunner. Failed checklist rules
and critic escalation are not errors: they become revision requests handled
by the convergence pass and never abort a run.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransportFailure(PipelineError):
    """The generation backend could not be reached, answered non-2xx, or timed out."""


class MalformedOutput(PipelineError):
    """No JSON value could be recovered from generated text."""

    def __init__(self, message: str, snippet: str = "") -> None:
        super().__init__(message)
        self.snippet = snippet


class SchemaViolation(PipelineError):
    """A parsed value does not satisfy the stage schema."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "schema violation")
        self.errors = list(errors)


class ExhaustedRetries(PipelineError):
    """A stage used its whole attempt budget without producing a valid artifact."""

    def __init__(self, stage_type: str, attempts: int, errors: list[str], message: str) -> None:
        super().__init__(message)
        self.stage_type = stage_type
        self.attempts = attempts
        self.errors = list(errors)


class ProjectNotFound(PipelineError):
    """The trigger referenced a project id the store does not know."""
