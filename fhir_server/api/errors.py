"""
FHIR responses and error translation.

Service exceptions carry no HTTP knowledge; this module maps them to status
codes and OperationOutcome bodies.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fhir_server.schemas.api import OperationOutcome, OperationOutcomeIssue
from fhir_server.services.errors import (
    ConflictVersion,
    FhirError,
    Gone,
    InvalidState,
    NotFound,
    ResourceValidationError,
    UnsupportedParameter,
)

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

STATUS_CODES: dict[type[FhirError], int] = {
    ResourceValidationError: 400,
    InvalidState: 400,
    UnsupportedParameter: 400,
    NotFound: 404,
    Gone: 410,
    ConflictVersion: 409,
}


class FhirJSONResponse(JSONResponse):
    media_type = FHIR_JSON


def status_for(exc: FhirError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def operation_outcome(exc: FhirError) -> OperationOutcome:
    issues = [OperationOutcomeIssue(code=exc.code, diagnostics=exc.message)]
    for text in exc.issues:
        path, sep, message = text.partition(": ")
        issues.append(
            OperationOutcomeIssue(
                code=exc.code,
                diagnostics=message if sep else text,
                expression=[path] if sep else None,
            )
        )
    if exc.field and not exc.issues:
        issues[0].expression = [exc.field]
    return OperationOutcome(issue=issues)


def outcome_response(status_code: int, code: str, diagnostics: str) -> FhirJSONResponse:
    outcome = OperationOutcome(issue=[OperationOutcomeIssue(code=code, diagnostics=diagnostics)])
    return FhirJSONResponse(status_code=status_code, content=outcome.model_dump(exclude_none=True))


async def fhir_error_handler(request: Request, exc: FhirError) -> FhirJSONResponse:
    status_code = status_for(exc)
    logger.warning("%s %s -> %d %s: %s", request.method, request.url.path, status_code, exc.kind, exc.message)
    return FhirJSONResponse(
        status_code=status_code,
        content=operation_outcome(exc).model_dump(exclude_none=True),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> FhirJSONResponse:
    messages = "; ".join(error.get("msg", "invalid request") for error in exc.errors())
    return outcome_response(400, "structure", f"Malformed request: {messages}")


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> FhirJSONResponse:
    code = "not-found" if exc.status_code == 404 else "not-supported" if exc.status_code == 405 else "processing"
    response = outcome_response(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def unhandled_error_handler(request: Request, exc: Exception) -> FhirJSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return outcome_response(500, "exception", str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FhirError, fhir_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
