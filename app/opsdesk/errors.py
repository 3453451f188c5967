"""
Service-layer exception hierarchy.

Services raise these; blueprints translate them to JSON responses once via
errorhandler registrations (see register_error_handlers).

Usage:
    from app.opsdesk.errors import NotFoundError, ValidationError

    raise NotFoundError(resource="System", resource_id=42)
    raise ValidationError("title is required", details={"title": "required"})
"""

from __future__ import annotations

import logging

from flask import Blueprint, Flask, g, jsonify
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500

    def to_body(self) -> dict:
        return {"error": str(self)}


class NotFoundError(ServiceError):
    """Missing or soft-deleted record. resource_id goes to logs, not to the response."""

    status_code = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ValidationError(ServiceError):
    """Input rejected before any write."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_body(self) -> dict:
        body = {"error": str(self)}
        if self.details:
            body["details"] = self.details
        return body


class ConflictError(ServiceError):
    """Write lost against concurrent state (stale version, duplicate assignment)."""

    status_code = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_body(self) -> dict:
        body = {"error": str(self)}
        if self.details:
            body["details"] = self.details
        return body


class PermissionDeniedError(ServiceError):
    status_code = 403


def _rollback_request_session() -> None:
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()


def register_error_handlers(bp: Blueprint | Flask) -> None:
    @bp.errorhandler(ServiceError)
    def _handle_service_error(error: ServiceError):
        _rollback_request_session()
        if isinstance(error, NotFoundError):
            logger.info("%s id=%s not found (request_id=%s)", error.resource, error.resource_id, getattr(g, "request_id", None))
        return jsonify(error.to_body()), error.status_code

    @bp.errorhandler(SQLAlchemyError)
    def _handle_store_failure(error: SQLAlchemyError):
        _rollback_request_session()
        logger.exception("Database error (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Database error"}), 500
