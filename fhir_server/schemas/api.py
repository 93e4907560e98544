"""Pydantic models for API response serialization."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# OperationOutcome (error bodies)
# ---------------------------------------------------------------------------

class OperationOutcomeIssue(BaseModel):
    severity: str = Field("error", description="fatal | error | warning | information")
    code: str = Field(..., description="FHIR issue type code")
    diagnostics: str
    expression: list[str] | None = None


class OperationOutcome(BaseModel):
    resourceType: str = "OperationOutcome"
    issue: list[OperationOutcomeIssue] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Bundle (search results and history)
# ---------------------------------------------------------------------------

class BundleLink(BaseModel):
    relation: str
    url: str


class BundleEntryRequest(BaseModel):
    method: str
    url: str


class BundleEntryResponse(BaseModel):
    status: str
    etag: str | None = None
    lastModified: str | None = None


class BundleEntry(BaseModel):
    fullUrl: str | None = None
    resource: dict[str, Any] | None = None
    search: dict[str, str] | None = None
    request: BundleEntryRequest | None = None
    response: BundleEntryResponse | None = None


class Bundle(BaseModel):
    resourceType: str = "Bundle"
    type: str
    total: int | None = None
    link: list[BundleLink] = []
    entry: list[BundleEntry] = []


# ---------------------------------------------------------------------------
# CapabilityStatement
# ---------------------------------------------------------------------------

class CapabilitySearchParam(BaseModel):
    name: str
    type: str
    documentation: str | None = None


class CapabilityResource(BaseModel):
    type: str
    profile: str
    versioning: str = "versioned-update"
    readHistory: bool = True
    updateCreate: bool = False
    conditionalDelete: str = "not-supported"
    interaction: list[dict[str, str]]
    searchParam: list[CapabilitySearchParam]


class CapabilityStatement(BaseModel):
    resourceType: str = "CapabilityStatement"
    status: str = "active"
    date: str
    kind: str = "instance"
    fhirVersion: str = "4.0.1"
    format: list[str] = ["json"]
    software: dict[str, str]
    rest: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
