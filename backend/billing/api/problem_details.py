"""RFC 7807 responses for the admin API."""

import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from billing.domain.errors import DomainError

PROBLEM_BASE = "https://example.com/problems/"
PROBLEM_TYPE_DOMAIN = PROBLEM_BASE + "domain-error"
PROBLEM_TYPE_VALIDATION = PROBLEM_BASE + "validation-error"
PROBLEM_TYPE_SERVER = PROBLEM_BASE + "server-error"

_TYPE_BY_STATUS = {
    401: PROBLEM_BASE + "unauthorized",
    404: PROBLEM_BASE + "not-found",
    422: PROBLEM_TYPE_VALIDATION,
    502: PROBLEM_BASE + "payment-provider-error",
}


def problem_type_for(status_code: int) -> str:
    if status_code in _TYPE_BY_STATUS:
        return _TYPE_BY_STATUS[status_code]
    return PROBLEM_TYPE_SERVER if status_code >= 500 else PROBLEM_TYPE_DOMAIN


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    request.state.request_id = request_id or str(uuid.uuid4())
    return request.state.request_id


def problem_response(
    request: Request,
    status_code: int,
    detail: str,
    *,
    title: str | None = None,
    type_: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if title is None:
        try:
            title = HTTPStatus(status_code).phrase
        except ValueError:
            title = "Error"
    request_id = request_id_for(request)
    body = {
        "type": type_ or problem_type_for(status_code),
        "title": title,
        "status": status_code,
        "detail": detail,
        "request_id": request_id,
        "errors": errors or [],
    }
    response = JSONResponse(body, status_code=status_code, headers=headers, media_type="application/problem+json")
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def domain_problem(request: Request, exc: DomainError) -> JSONResponse:
    # Subclasses inherit the generic type URI; only an explicit one overrides the status mapping.
    explicit_type = exc.type if exc.type != PROBLEM_TYPE_DOMAIN else None
    return problem_response(
        request,
        exc.status_code,
        exc.detail,
        title=exc.title,
        type_=explicit_type,
        errors=exc.errors,
    )
