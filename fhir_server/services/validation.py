"""
Validation engine for candidate resources.

Three stages, each reporting every problem it finds rather than the first:

1. envelope  – ``resourceType`` present and a registered kind  (MissingField)
2. structure – JSON schema of the kind plus calendar date checks (SchemaViolation)
3. profiles  – rules of each active implementation profile       (ProfileViolation)

The candidate is never modified.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import jsonschema

from fhir_server.schemas.profiles import PROFILE_RULES, get_profile_rules
from fhir_server.services.errors import MissingField, ProfileViolation, SchemaViolation
from fhir_server.services.registry import KindRegistry

logger = logging.getLogger(__name__)

# Elements holding FHIR dates that must also be real calendar dates
DATE_ELEMENTS: dict[str, tuple[str, ...]] = {
    "Patient": ("birthDate",),
    "Observation": ("effectiveDateTime",),
}


def collect_schema_errors(validator: jsonschema.Draft7Validator, data: dict[str, Any]) -> list[str]:
    """
    Validate a dict with a compiled JSON schema validator.
    Returns a list of error messages prefixed with the element path (empty list = valid).
    """
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    return [f"{_path(error.absolute_path)}: {error.message}" for error in errors]


def _path(parts) -> str:
    path = ""
    for part in parts:
        path += f"[{part}]" if isinstance(part, int) else f".{part}" if path else str(part)
    return path or "$"


def check_calendar_date(value: str) -> bool:
    """A full YYYY-MM-DD prefix must name a real day; partial dates pass."""
    if len(value) < 10:
        return True
    try:
        date.fromisoformat(value[:10])
    except ValueError:
        return False
    return True


class ValidationEngine:
    def __init__(self, registry: KindRegistry, profiles: list[str] | None = None):
        unknown = [p for p in profiles or [] if p not in PROFILE_RULES]
        if unknown:
            raise ValueError(f"Unknown validation profile(s): {', '.join(unknown)}")
        self.registry = registry
        self.profiles = list(profiles or [])
        self._validators = {}

    def validate(self, candidate: Any) -> None:
        """Raise a ResourceValidationError subclass if the candidate is unacceptable."""
        if not isinstance(candidate, dict):
            raise SchemaViolation("Resource must be a JSON object", issues=["$: not an object"])

        resource_type = candidate.get("resourceType")
        if not resource_type:
            raise MissingField("Resource type is required", field="resourceType")
        if not isinstance(resource_type, str) or resource_type not in self.registry:
            raise MissingField(
                f"Unrecognized resource type '{resource_type}'",
                field="resourceType",
                resource_type=str(resource_type),
            )

        issues = self._schema_issues(resource_type, candidate)
        if issues:
            logger.warning("%s failed schema validation: %s", resource_type, issues)
            raise SchemaViolation(
                f"{resource_type} violates its schema",
                resource_type=resource_type,
                resource_id=candidate.get("id"),
                issues=issues,
            )

        issues = self._profile_issues(resource_type, candidate)
        if issues:
            logger.warning("%s failed profile validation: %s", resource_type, issues)
            raise ProfileViolation(
                f"{resource_type} does not conform to profile(s) {', '.join(self.profiles)}",
                resource_type=resource_type,
                resource_id=candidate.get("id"),
                issues=issues,
            )

    def _schema_issues(self, resource_type: str, candidate: dict[str, Any]) -> list[str]:
        validator = self._validators.get(resource_type)
        if validator is None:
            validator = jsonschema.Draft7Validator(self.registry.get(resource_type).schema)
            self._validators[resource_type] = validator

        issues = collect_schema_errors(validator, candidate)

        for element in DATE_ELEMENTS.get(resource_type, ()):
            value = candidate.get(element)
            if isinstance(value, str) and not check_calendar_date(value):
                issues.append(f"{element}: '{value}' is not a valid calendar date")
        return issues

    def _profile_issues(self, resource_type: str, candidate: dict[str, Any]) -> list[str]:
        issues = []
        for profile in self.profiles:
            rules = get_profile_rules(profile, resource_type)
            for element in rules.get("required", []):
                if element not in candidate:
                    issues.append(f"{element}: required by profile '{profile}'")
            allowed = rules.get("allowed_status")
            if allowed and candidate.get("status") not in allowed:
                issues.append(
                    f"status: '{candidate.get('status')}' not allowed by profile '{profile}'"
                )
        return issues
