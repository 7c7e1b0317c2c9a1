"""Starlette HTTP surface over the orchestrator."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from bulk_orchestrator.config import ExecutionSettings
from bulk_orchestrator.errors import (
    InvalidRequestError,
    OperationNotFoundError,
    OrchestratorError,
    RateLimitExceededError,
)
from bulk_orchestrator.models import BulkOptions, OperationRecord, OperationStatus, OperationType
from bulk_orchestrator.ratelimit.gate import RateGate
from bulk_orchestrator.storage.base import OperationFilters
from bulk_orchestrator.utils.masking import redact_sensitive_fields
from bulk_orchestrator.utils.serialization import json_default
from bulk_orchestrator.utils.time import parse_iso

if TYPE_CHECKING:
    from bulk_orchestrator.app import AppContext

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset({"/health"})

_MAX_PAGE_SIZE = 100


def _sanitize_ip(value: str) -> str:
    """Strip control characters from an IP string to prevent log injection."""
    return "".join(c for c in value if 0x20 <= ord(c) < 0x7F)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Get client IP with optional trusted proxy header support."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return _sanitize_ip(forwarded_for.split(",")[0].strip())

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_ip(real_ip.strip())

    if request.client:
        return request.client.host

    return "unknown"


class _JSONResponse(JSONResponse):
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content, default=json_default, ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")


def error_response(exc: OrchestratorError) -> Response:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceededError):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(exc.reset_at)),
        }
    return _JSONResponse({"error": exc.to_dict()}, status_code=exc.status_code, headers=headers)


def render_record(record: OperationRecord) -> dict[str, Any]:
    data = record.to_dict()
    data["change"] = redact_sensitive_fields(data["change"])
    data["metadata"] = redact_sensitive_fields(data["metadata"])
    return data


class GeneralRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client admission on the ``general`` limiter for every API request."""

    EXEMPT_PATHS = _EXEMPT_PATHS

    def __init__(
        self,
        app: Callable,
        gate: RateGate,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self.gate = gate
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        client_ip = get_client_ip(request, trust_forwarded_headers=self._trust_forwarded_headers)
        decision = await self.gate.admit("general", f"ip:{client_ip}")
        if not decision.allowed:
            policy = self.gate.policy("general")
            return error_response(
                RateLimitExceededError(
                    policy.message if policy else "Too many requests, please try again later.",
                    limiter="general",
                    retry_after=decision.retry_after,
                    limit=decision.limit,
                    reset_at=decision.reset_at,
                )
            )

        response = await call_next(request)
        if decision.limit:
            response.headers.setdefault("X-RateLimit-Limit", str(decision.limit))
            response.headers.setdefault("X-RateLimit-Remaining", str(decision.remaining))
            response.headers.setdefault("X-RateLimit-Reset", str(int(decision.reset_at)))
        return response


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _parse_options(raw: Any, base: BulkOptions, limits: ExecutionSettings) -> BulkOptions:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise InvalidRequestError("options must be an object")
    try:
        return BulkOptions.from_dict(raw, base=base).within_limits(limits)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidRequestError(f"Invalid options: {exc}") from exc


def _parse_int(value: str | None, name: str, default: int, *, minimum: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise InvalidRequestError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise InvalidRequestError(f"{name} must be >= {minimum}")
    return parsed


def _parse_filters(request: Request) -> OperationFilters:
    params = request.query_params
    status = None
    if params.get("status"):
        try:
            status = OperationStatus(params["status"])
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown status: {params['status']!r}") from exc
    operation_type = None
    if params.get("operation_type"):
        try:
            operation_type = OperationType(params["operation_type"])
        except ValueError as exc:
            raise InvalidRequestError(
                f"Unknown operation type: {params['operation_type']!r}"
            ) from exc
    limit = min(_parse_int(params.get("limit"), "limit", 20, minimum=1), _MAX_PAGE_SIZE)
    return OperationFilters(
        user_id=params.get("user_id") or None,
        status=status,
        operation_type=operation_type,
        limit=limit,
        offset=_parse_int(params.get("offset"), "offset", 0),
    )


def _parse_datetime_param(request: Request, name: str) -> datetime:
    raw = request.query_params.get(name)
    if not raw:
        raise InvalidRequestError(f"{name} is required")
    try:
        value = parse_iso(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"{name} must be an ISO-8601 datetime") from exc
    if value is None:
        raise InvalidRequestError(f"{name} must be an ISO-8601 datetime")
    return value


def create_http_app(context: "AppContext") -> Starlette:
    """Create the HTTP application around an assembled AppContext."""
    orchestrator = context.orchestrator
    settings = context.settings

    async def submit_handler(request: Request) -> Response:
        try:
            body = await _read_json_object(request)
            options = _parse_options(
                body.get("options"), orchestrator.default_options, settings.execution
            )
            user_id = request.headers.get("x-user-id") or None
            client_ip = get_client_ip(
                request, trust_forwarded_headers=settings.server.trust_forwarded_headers
            )
            metadata = body.get("metadata") or {}
            if not isinstance(metadata, dict):
                raise InvalidRequestError("metadata must be an object")
            metadata = {
                **metadata,
                "ip_address": client_ip,
                "user_agent": request.headers.get("user-agent"),
            }
            change = body.get("change")
            if not isinstance(change, dict):
                raise InvalidRequestError("change must be an object")

            operation_id = await orchestrator.submit(
                body.get("operation_type", ""),
                body.get("targets"),
                change,
                client_key=user_id or f"ip:{client_ip}",
                user_id=user_id,
                metadata=metadata,
                options=options,
            )
        except OrchestratorError as exc:
            return error_response(exc)
        return _JSONResponse({"operation_id": operation_id}, status_code=202)

    async def get_handler(request: Request) -> Response:
        operation_id = request.path_params["operation_id"]
        record = await orchestrator.get_operation(operation_id)
        if record is None:
            return error_response(OperationNotFoundError(f"Operation {operation_id} not found"))
        return _JSONResponse(render_record(record))

    async def list_handler(request: Request) -> Response:
        try:
            filters = _parse_filters(request)
        except OrchestratorError as exc:
            return error_response(exc)
        page = await orchestrator.list_operations(filters)
        return _JSONResponse(
            {
                "operations": [render_record(record) for record in page.records],
                "total": page.total,
                "limit": filters.limit,
                "offset": filters.offset,
            }
        )

    async def cancel_handler(request: Request) -> Response:
        operation_id = request.path_params["operation_id"]
        if await orchestrator.get_operation(operation_id) is None:
            return error_response(OperationNotFoundError(f"Operation {operation_id} not found"))
        cancelled = await orchestrator.cancel(operation_id)
        return _JSONResponse({"operation_id": operation_id, "cancelled": cancelled})

    async def statistics_handler(request: Request) -> Response:
        try:
            start = _parse_datetime_param(request, "start")
            end = _parse_datetime_param(request, "end")
        except OrchestratorError as exc:
            return error_response(exc)
        stats = await orchestrator.get_statistics(
            start, end, user_id=request.query_params.get("user_id") or None
        )
        return _JSONResponse(stats.to_dict())

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/bulk-operations", endpoint=submit_handler, methods=["POST"]),
        Route("/bulk-operations", endpoint=list_handler, methods=["GET"]),
        Route("/bulk-operations/statistics", endpoint=statistics_handler, methods=["GET"]),
        Route("/bulk-operations/{operation_id}", endpoint=get_handler, methods=["GET"]),
        Route(
            "/bulk-operations/{operation_id}/cancel",
            endpoint=cancel_handler,
            methods=["POST"],
        ),
    ]

    middleware = [
        Middleware(
            GeneralRateLimitMiddleware,
            gate=context.gate,
            trust_forwarded_headers=settings.server.trust_forwarded_headers,
        ),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting bulk orchestrator HTTP server...")
        try:
            yield
        finally:
            logger.info("Stopping bulk orchestrator HTTP server...")
            await context.aclose()

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
