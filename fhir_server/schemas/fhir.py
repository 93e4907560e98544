"""
JSON schemas for the structural validation of FHIR R4 resources.

Pragmatic subset: real FHIR StructureDefinitions are enormous; these capture
the elements this server stores and searches on. Unknown elements are
rejected rather than silently stored.
"""

# YYYY, YYYY-MM or YYYY-MM-DD
FHIR_DATE_PATTERN = r"^\d{4}(-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01]))?)?$"
# Date, or full dateTime with seconds and timezone
FHIR_DATETIME_PATTERN = (
    r"^\d{4}(-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01])"
    r"(T([01]\d|2[0-3]):[0-5]\d:([0-5]\d|60)(\.\d+)?(Z|[+-]((0\d|1[0-3]):[0-5]\d|14:00)))?)?)?$"
)

ADMINISTRATIVE_GENDER = ["male", "female", "other", "unknown"]
OBSERVATION_STATUS = [
    "registered",
    "preliminary",
    "final",
    "amended",
    "corrected",
    "cancelled",
    "entered-in-error",
    "unknown",
]

_ID = {"type": "string", "pattern": "^[A-Za-z0-9\\-\\.]{1,64}$"}

_META = {
    "type": "object",
    "properties": {
        "versionId": {"type": "string"},
        "lastUpdated": {"type": "string"},
        "profile": {"type": "array", "items": {"type": "string"}},
    },
}

_IDENTIFIER = {
    "type": "object",
    "properties": {
        "use": {"type": "string"},
        "system": {"type": "string"},
        "value": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

_HUMAN_NAME = {
    "type": "object",
    "properties": {
        "use": {
            "type": "string",
            "enum": ["usual", "official", "temp", "nickname", "anonymous", "old", "maiden"],
        },
        "text": {"type": "string"},
        "family": {"type": "string", "minLength": 1},
        "given": {
            "type": "array",
            "minItems": 1,
            "items": {"type": "string", "minLength": 1},
        },
        "prefix": {"type": "array", "items": {"type": "string"}},
        "suffix": {"type": "array", "items": {"type": "string"}},
    },
    "anyOf": [{"required": ["given"]}, {"required": ["family"]}],
    "additionalProperties": False,
}

_CONTACT_POINT = {
    "type": "object",
    "properties": {
        "system": {
            "type": "string",
            "enum": ["phone", "fax", "email", "pager", "url", "sms", "other"],
        },
        "value": {"type": "string"},
        "use": {"type": "string"},
    },
    "additionalProperties": False,
}

_ADDRESS = {
    "type": "object",
    "properties": {
        "use": {"type": "string"},
        "line": {"type": "array", "items": {"type": "string"}},
        "city": {"type": "string"},
        "state": {"type": "string"},
        "postalCode": {"type": "string"},
        "country": {"type": "string"},
    },
    "additionalProperties": False,
}

_CODING = {
    "type": "object",
    "required": ["code"],
    "properties": {
        "system": {"type": "string"},
        "code": {"type": "string", "minLength": 1},
        "display": {"type": "string"},
    },
    "additionalProperties": False,
}

_CODEABLE_CONCEPT = {
    "type": "object",
    "properties": {
        "coding": {"type": "array", "minItems": 1, "items": _CODING},
        "text": {"type": "string"},
    },
    "anyOf": [{"required": ["coding"]}, {"required": ["text"]}],
    "additionalProperties": False,
}

_REFERENCE = {
    "type": "object",
    "required": ["reference"],
    "properties": {
        "reference": {"type": "string", "pattern": "^[A-Za-z]+/[A-Za-z0-9\\-\\.]{1,64}$"},
        "display": {"type": "string"},
    },
    "additionalProperties": False,
}


FHIR_PATIENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR Patient",
    "description": "Subset of the HL7 FHIR R4 Patient resource.",
    "type": "object",
    "required": ["resourceType"],
    "properties": {
        "resourceType": {"type": "string", "const": "Patient"},
        "id": _ID,
        "meta": _META,
        "identifier": {"type": "array", "items": _IDENTIFIER},
        "active": {"type": "boolean"},
        "name": {"type": "array", "items": _HUMAN_NAME},
        "telecom": {"type": "array", "items": _CONTACT_POINT},
        "gender": {
            "type": "string",
            "enum": ADMINISTRATIVE_GENDER,
            "description": "Administrative gender per FHIR value set.",
        },
        "birthDate": {
            "type": "string",
            "pattern": FHIR_DATE_PATTERN,
            "description": "FHIR date (YYYY, YYYY-MM or YYYY-MM-DD).",
        },
        "address": {"type": "array", "items": _ADDRESS},
    },
    "additionalProperties": False,
}


FHIR_OBSERVATION_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR Observation",
    "type": "object",
    "required": ["resourceType", "status", "code"],
    "properties": {
        "resourceType": {"type": "string", "const": "Observation"},
        "id": _ID,
        "meta": _META,
        "status": {"type": "string", "enum": OBSERVATION_STATUS},
        "category": {"type": "array", "items": _CODEABLE_CONCEPT},
        "code": _CODEABLE_CONCEPT,
        "subject": _REFERENCE,
        "effectiveDateTime": {"type": "string", "pattern": FHIR_DATETIME_PATTERN},
        "valueQuantity": {
            "type": "object",
            "properties": {
                "value": {"type": "number"},
                "unit": {"type": "string"},
                "system": {"type": "string"},
                "code": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "valueString": {"type": "string"},
    },
    "not": {"required": ["valueQuantity", "valueString"]},
    "additionalProperties": False,
}
