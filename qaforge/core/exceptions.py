"""
Service-layer exception hierarchy.

Services raise these; blueprints register handlers against them once and
map them to the JSON error envelope:

    ValidationError      → 400
    NotFoundError        → 404
    ArtifactParseError   → 500 (raw model output attached)
    GenerationError      → 502

Usage:
    from qaforge.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Scenario", resource_id=42)
    raise ValidationError("bpIds is required")
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist within the given project.

    Args:
        resource: Human-readable model name (e.g. "Scenario", "TestCase").
        resource_id: The PK that was looked up. Included in logs.
        project_id: Optional project scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails validation in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class GenerationError(Exception):
    """Raised when the external text-generation service fails or times out.

    Treated as transient. ``cause`` carries the provider's message.
    """

    def __init__(self, message: str, cause: str | None = None) -> None:
        self.cause = cause or message
        super().__init__(message)


class ArtifactParseError(Exception):
    """Raised when model output yields no usable artifacts where some are mandatory.

    Args:
        message: Human-readable explanation.
        raw: The unparsed model output, returned to the caller for inspection.
    """

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)
