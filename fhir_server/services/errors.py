"""
Error taxonomy for resource operations.

Services raise these; only the API layer maps them to HTTP status codes
and OperationOutcome bodies.
"""

from __future__ import annotations


class FhirError(Exception):
    """Base class. ``code`` is the FHIR OperationOutcome issue type."""

    code = "processing"

    def __init__(
        self,
        message: str,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        field: str | None = None,
        issues: list[str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.field = field
        self.issues = issues or []

    @property
    def kind(self) -> str:
        return type(self).__name__


class ResourceValidationError(FhirError):
    code = "invalid"


class MissingField(ResourceValidationError):
    code = "required"


class SchemaViolation(ResourceValidationError):
    code = "structure"


class ProfileViolation(ResourceValidationError):
    code = "invariant"


class InvalidState(FhirError):
    code = "business-rule"


class NotFound(FhirError):
    code = "not-found"


class UnknownResourceType(NotFound):
    code = "not-supported"


class Gone(FhirError):
    code = "deleted"


class ConflictVersion(FhirError):
    code = "conflict"


class UnsupportedParameter(FhirError):
    code = "not-supported"
