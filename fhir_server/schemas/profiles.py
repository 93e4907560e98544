"""
Implementation profiles: named sets of extra constraints on top of the base
schemas. Enabled through ``FHIR_PROFILES``.
"""

PROFILE_RULES: dict[str, dict[str, dict]] = {
    # Minimal exchange profile: patients must be identifiable and
    # observations must point at a subject.
    "core": {
        "Patient": {"required": ["identifier", "name", "gender"]},
        "Observation": {"required": ["subject"]},
    },
    # Laboratory results must be final, amended or corrected before they are shared.
    "lab-results": {
        "Observation": {
            "required": ["subject", "effectiveDateTime"],
            "allowed_status": ["final", "amended", "corrected"],
        },
    },
}


def get_profile_rules(profile: str, resource_type: str) -> dict:
    """Rules a profile defines for one resource type (empty when none)."""
    return PROFILE_RULES.get(profile, {}).get(resource_type, {})
