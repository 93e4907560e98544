"""Typed shapes of the FHIR resources this server manages (wire JSON)."""

from typing import Literal, NotRequired, TypedDict

AdministrativeGender = Literal["male", "female", "other", "unknown"]


class Meta(TypedDict, total=False):
    versionId: str
    lastUpdated: str


class Identifier(TypedDict, total=False):
    system: str
    value: str


class HumanName(TypedDict, total=False):
    use: str
    text: str
    family: str
    given: list[str]


class Coding(TypedDict, total=False):
    system: str
    code: str
    display: str


class CodeableConcept(TypedDict, total=False):
    coding: list[Coding]
    text: str


class Reference(TypedDict, total=False):
    reference: str
    display: str


class Quantity(TypedDict, total=False):
    value: float
    unit: str
    system: str
    code: str


class Resource(TypedDict):
    resourceType: str
    id: NotRequired[str]
    meta: NotRequired[Meta]


class Patient(Resource, total=False):
    identifier: list[Identifier]
    active: bool
    name: list[HumanName]
    telecom: list[dict]
    gender: AdministrativeGender
    birthDate: str
    address: list[dict]


class Observation(Resource, total=False):
    status: str
    category: list[CodeableConcept]
    code: CodeableConcept
    subject: Reference
    effectiveDateTime: str
    valueQuantity: Quantity
    valueString: str
