"""
FHIR RESTful interactions.

    GET    /metadata                          capabilities
    POST   /{type}                            create
    GET    /{type}?params                     search
    GET    /{type}/{id}                       read
    PUT    /{type}/{id}                       update (If-Match: W/"<versionId>")
    DELETE /{type}/{id}                       delete
    GET    /{type}/{id}/_history              history
    GET    /{type}/{id}/_history/{versionId}  vread

The store is taken from ``app.state``; the acting user comes from the
``X-Actor`` header until an authentication layer provides it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from email.utils import format_datetime
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Header, Request, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fhir_server.api.errors import FHIR_JSON, FhirJSONResponse
from fhir_server.models.database import get_db
from fhir_server.schemas.api import (
    Bundle,
    BundleEntry,
    BundleEntryRequest,
    BundleEntryResponse,
    BundleLink,
    CapabilityResource,
    CapabilitySearchParam,
    CapabilityStatement,
    HealthResponse,
)
from fhir_server.services.store import ResourceStore, SearchPage, format_instant

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_store(request: Request) -> ResourceStore:
    return request.app.state.store


def get_session(request: Request):
    yield from get_db(request.app.state.session_factory)


def get_actor(x_actor: str | None = Header(None)) -> str:
    return x_actor or "api_user"


def parse_etag(value: str | None) -> str | None:
    """W/"3" -> "3"; a bare 3 or "3" is accepted too."""
    if value is None:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


def base_url(request: Request) -> str:
    return request.app.state.settings.BASE_URL.rstrip("/") or str(request.base_url).rstrip("/")


def resource_headers(resource: dict[str, Any]) -> dict[str, str]:
    meta = resource.get("meta", {})
    headers = {"ETag": f'W/"{meta.get("versionId")}"'}
    if meta.get("lastUpdated"):
        last_updated = datetime.fromisoformat(meta["lastUpdated"])
        headers["Last-Modified"] = format_datetime(last_updated, usegmt=True)
    return headers


# ---------------------------------------------------------------------------
# Health check and capabilities
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(request: Request, db: Session = Depends(get_session)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=request.app.state.settings.ENVIRONMENT,
        database=db_status,
    )


@router.get("/metadata")
def capability_statement(request: Request, store: ResourceStore = Depends(get_store)):
    """CapabilityStatement generated from the registered resource kinds."""
    resources = [
        CapabilityResource(
            type=kind.name,
            profile=kind.profile_url,
            interaction=[
                {"code": code}
                for code in ("create", "read", "vread", "update", "delete", "history-instance", "search-type")
            ],
            searchParam=[
                CapabilitySearchParam(name=p.name, type=p.type.value, documentation=p.documentation or None)
                for p in kind.search_params.values()
            ],
        )
        for kind in store.registry
    ]
    statement = CapabilityStatement(
        date=date.today().isoformat(),
        software={"name": request.app.title, "version": request.app.version},
        rest=[{"mode": "server", "resource": [r.model_dump(exclude_none=True) for r in resources]}],
    )
    return FhirJSONResponse(content=statement.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Type-level interactions
# ---------------------------------------------------------------------------

@router.get("/{resource_type}")
def search_resources(
    resource_type: str,
    request: Request,
    store: ResourceStore = Depends(get_store),
):
    """Search the current versions; every query parameter is a search parameter."""
    params = request.query_params.multi_items()
    page = store.search(resource_type, params)
    base = base_url(request)

    bundle = Bundle(
        type="searchset",
        total=page.total,
        link=search_links(base, resource_type, params, page),
        entry=[
            BundleEntry(
                fullUrl=f"{base}/{resource_type}/{resource['id']}",
                resource=resource,
                search={"mode": "match"},
            )
            for resource in page.resources
        ],
    )
    return FhirJSONResponse(content=bundle.model_dump(exclude_none=True))


def search_links(
    base: str, resource_type: str, params: list[tuple[str, str]], page: SearchPage
) -> list[BundleLink]:
    criteria = [(k, v) for k, v in params if k not in ("_count", "_offset")]

    def url(offset: int) -> str:
        query = urlencode(criteria + [("_count", str(page.count)), ("_offset", str(offset))])
        return f"{base}/{resource_type}?{query}"

    links = [BundleLink(relation="self", url=url(page.offset))]
    if page.count and page.offset + page.count < page.total:
        links.append(BundleLink(relation="next", url=url(page.offset + page.count)))
    if page.count and page.offset > 0:
        links.append(BundleLink(relation="previous", url=url(max(page.offset - page.count, 0))))
    return links


@router.post("/{resource_type}", status_code=201)
def create_resource(
    resource_type: str,
    request: Request,
    resource: dict[str, Any] = Body(..., media_type=FHIR_JSON),
    store: ResourceStore = Depends(get_store),
    actor: str = Depends(get_actor),
):
    stored = store.create(resource_type, resource, actor=actor)
    headers = resource_headers(stored)
    headers["Location"] = (
        f"{base_url(request)}/{resource_type}/{stored['id']}/_history/{stored['meta']['versionId']}"
    )
    return FhirJSONResponse(status_code=201, content=stored, headers=headers)


# ---------------------------------------------------------------------------
# Instance-level interactions
# ---------------------------------------------------------------------------

@router.get("/{resource_type}/{resource_id}")
def read_resource(
    resource_type: str,
    resource_id: str,
    store: ResourceStore = Depends(get_store),
):
    resource = store.read(resource_type, resource_id)
    return FhirJSONResponse(content=resource, headers=resource_headers(resource))


@router.put("/{resource_type}/{resource_id}")
def update_resource(
    resource_type: str,
    resource_id: str,
    resource: dict[str, Any] = Body(..., media_type=FHIR_JSON),
    if_match: str | None = Header(None),
    store: ResourceStore = Depends(get_store),
    actor: str = Depends(get_actor),
):
    stored = store.update(
        resource_type,
        resource_id,
        resource,
        expected_version=parse_etag(if_match),
        actor=actor,
    )
    return FhirJSONResponse(content=stored, headers=resource_headers(stored))


@router.delete("/{resource_type}/{resource_id}", status_code=204)
def delete_resource(
    resource_type: str,
    resource_id: str,
    store: ResourceStore = Depends(get_store),
    actor: str = Depends(get_actor),
):
    store.delete(resource_type, resource_id, actor=actor)
    return Response(status_code=204)


@router.get("/{resource_type}/{resource_id}/_history")
def resource_history(
    resource_type: str,
    resource_id: str,
    request: Request,
    store: ResourceStore = Depends(get_store),
):
    entries = store.history(resource_type, resource_id)
    base = base_url(request)
    full_url = f"{base}/{resource_type}/{resource_id}"

    bundle_entries = []
    for entry in entries:
        if entry.deleted:
            method, status = "DELETE", "204 No Content"
        elif entry.version_id == 1:
            method, status = "POST", "201 Created"
        else:
            method, status = "PUT", "200 OK"
        bundle_entries.append(
            BundleEntry(
                fullUrl=full_url,
                resource=entry.resource,
                request=BundleEntryRequest(
                    method=method,
                    url=resource_type if method == "POST" else f"{resource_type}/{resource_id}",
                ),
                response=BundleEntryResponse(
                    status=status,
                    etag=f'W/"{entry.version_id}"',
                    lastModified=format_instant(entry.last_updated),
                ),
            )
        )

    bundle = Bundle(
        type="history",
        total=len(bundle_entries),
        link=[BundleLink(relation="self", url=f"{full_url}/_history")],
        entry=bundle_entries,
    )
    return FhirJSONResponse(content=bundle.model_dump(exclude_none=True))


@router.get("/{resource_type}/{resource_id}/_history/{version_id}")
def read_resource_version(
    resource_type: str,
    resource_id: str,
    version_id: str,
    store: ResourceStore = Depends(get_store),
):
    resource = store.read_version(resource_type, resource_id, version_id)
    return FhirJSONResponse(content=resource, headers=resource_headers(resource))
