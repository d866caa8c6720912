"""Typed service errors and the JSON envelope they render into."""

# purpose: replace message-sniffing error classification with explicit variants
# status: active

from __future__ import annotations

import logging
import os
import traceback
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class DomainError(RuntimeError):
    """Base error for timeline, permission and sharing flows."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Any = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class NotFoundError(DomainError):
    """Raised when a resource is absent or belongs to someone else."""

    status_code = 404
    code = "NOT_FOUND"


class NodeNotFound(NotFoundError):
    code = "NODE_NOT_FOUND"

    def __init__(self, node_id: Any = None, **kwargs):
        super().__init__("Node not found", **kwargs)
        self.node_id = node_id


class SchemaNotFound(NotFoundError):
    code = "SCHEMA_NOT_FOUND"


class ValidationFailed(DomainError):
    """Raised when input is malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidNodeType(ValidationFailed):
    code = "INVALID_NODE_TYPE"


class MissingNodeId(ValidationFailed):
    code = "MISSING_NODE_ID"


class BusinessRuleViolation(DomainError):
    """Raised when well-formed input would produce an illegal state."""

    status_code = 409
    code = "BUSINESS_RULE_VIOLATION"


class CycleDetected(BusinessRuleViolation):
    def __init__(self, cycle_path: list[str] | None = None, reason: str | None = None):
        super().__init__(
            "This move would create a loop in your timeline",
            details={"cyclePath": cycle_path or [], "reason": reason},
        )
        self.cycle_path = cycle_path or []


class DepthExceeded(BusinessRuleViolation):
    pass


class HierarchyRuleViolation(BusinessRuleViolation):
    pass


class ConcurrentModification(BusinessRuleViolation):
    pass


class AuthenticationRequired(DomainError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class AccessDenied(DomainError):
    status_code = 403
    code = "ACCESS_DENIED"

    def __init__(self, message: str = "Access denied", **kwargs):
        super().__init__(message, **kwargs)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success(data: Any = None) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""

    return {
        "success": True,
        "data": jsonable_encoder(data),
        "meta": {"timestamp": _timestamp()},
    }


def failure(code: str, message: str, details: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = jsonable_encoder(details)
    return {"success": False, "error": error, "meta": {"timestamp": _timestamp()}}


def is_development() -> bool:
    return os.getenv("APP_ENV", "production").lower() == "development"


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Unhandled domain failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=failure(exc.code, exc.message, exc.details),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=failure("VALIDATION_ERROR", "Invalid request", exc.errors()),
    )


async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning("Concurrent modification on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=409,
        content=failure(
            ConcurrentModification.code,
            "The node was changed by another request; reload and try again",
        ),
    )


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = None
    if is_development():
        details = {"stack": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    return JSONResponse(
        status_code=500,
        content=failure("INTERNAL_ERROR", str(exc) or "Internal server error", details),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StaleDataError, stale_data_handler)
    app.add_exception_handler(Exception, internal_error_handler)


def parse_node_id(raw: str | None) -> UUID:
    """Parse a node id taken from a path or query string."""

    if raw is None or not raw.strip():
        raise MissingNodeId("Node ID is required")
    try:
        return UUID(raw.strip())
    except ValueError as exc:
        raise ValidationFailed("Invalid node ID", details={"nodeId": raw}) from exc
