"""
Registry of supported resource kinds.

Each kind is a row of data (JSON schema plus search-parameter table) rather
than a subclass, so adding a kind means registering a ``ResourceKind``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from fhir_server.schemas.fhir import (
    ADMINISTRATIVE_GENDER,
    FHIR_OBSERVATION_SCHEMA,
    FHIR_PATIENT_SCHEMA,
    OBSERVATION_STATUS,
)
from fhir_server.services.errors import UnknownResourceType


class SearchParamType(str, Enum):
    STRING = "string"
    TOKEN = "token"
    DATE = "date"
    REFERENCE = "reference"


@dataclass(frozen=True)
class SearchParameter:
    """A named search parameter and the element paths it indexes."""

    name: str
    type: SearchParamType
    paths: tuple[str, ...]
    # Closed value set; values outside it are rejected at resolution time
    domain: frozenset[str] | None = None
    # Resource type a reference parameter is restricted to
    target: str | None = None
    documentation: str = ""


@dataclass
class ResourceKind:
    name: str
    schema: dict
    search_params: dict[str, SearchParameter] = field(default_factory=dict)
    profile_url: str = ""

    def __post_init__(self):
        self.search_params.setdefault(
            "_id",
            SearchParameter("_id", SearchParamType.TOKEN, ("id",), documentation="Logical id"),
        )
        if not self.profile_url:
            self.profile_url = f"http://hl7.org/fhir/StructureDefinition/{self.name}"


class KindRegistry:
    """Closed but extensible set of resource kinds."""

    def __init__(self, kinds: list[ResourceKind] | None = None):
        self._kinds: dict[str, ResourceKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: ResourceKind) -> KindRegistry:
        if kind.name in self._kinds:
            raise ValueError(f"Duplicate resource kind: {kind.name}")
        self._kinds[kind.name] = kind
        return self

    def get(self, resource_type: str) -> ResourceKind:
        try:
            return self._kinds[resource_type]
        except KeyError:
            raise UnknownResourceType(
                f"Unsupported resource type '{resource_type}'",
                resource_type=resource_type,
            ) from None

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._kinds

    def __iter__(self):
        return iter(self._kinds.values())

    @property
    def names(self) -> list[str]:
        return sorted(self._kinds)


def _params(*params: SearchParameter) -> dict[str, SearchParameter]:
    return {p.name: p for p in params}


PATIENT = ResourceKind(
    name="Patient",
    schema=FHIR_PATIENT_SCHEMA,
    search_params=_params(
        SearchParameter(
            "name",
            SearchParamType.STRING,
            ("name.family", "name.given", "name.text"),
            documentation="Any part of the name, case-insensitive prefix match",
        ),
        SearchParameter("family", SearchParamType.STRING, ("name.family",)),
        SearchParameter("given", SearchParamType.STRING, ("name.given",)),
        SearchParameter(
            "gender",
            SearchParamType.TOKEN,
            ("gender",),
            domain=frozenset(ADMINISTRATIVE_GENDER),
        ),
        SearchParameter("birthdate", SearchParamType.DATE, ("birthDate",)),
        SearchParameter(
            "identifier",
            SearchParamType.TOKEN,
            ("identifier",),
            documentation="value or system|value",
        ),
    ),
)

OBSERVATION = ResourceKind(
    name="Observation",
    schema=FHIR_OBSERVATION_SCHEMA,
    search_params=_params(
        SearchParameter(
            "status",
            SearchParamType.TOKEN,
            ("status",),
            domain=frozenset(OBSERVATION_STATUS),
        ),
        SearchParameter("code", SearchParamType.TOKEN, ("code.coding",)),
        SearchParameter("subject", SearchParamType.REFERENCE, ("subject",)),
        SearchParameter("patient", SearchParamType.REFERENCE, ("subject",), target="Patient"),
    ),
)


def default_registry() -> KindRegistry:
    return KindRegistry([PATIENT, OBSERVATION])
