from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class PageMeta(BaseModel):
    # count is the size of this page, not a tenant-wide total.
    offset: int
    limit: int
    count: int


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Return the request id, adopting the caller's header or minting one once."""
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def page_response(
    *,
    request: Request,
    items: Sequence[dict[str, Any]],
    offset: int,
    limit: int,
) -> dict[str, Any]:
    page = PageMeta(offset=offset, limit=limit, count=len(items))
    return success_response(request=request, data={"items": list(items), "page": page.model_dump()})


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
