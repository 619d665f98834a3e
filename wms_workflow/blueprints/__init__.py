"""
Blueprint registry and shared request helpers.
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from wms_workflow.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def current_user():
    """Best-effort acting user id (no auth enforcement)."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or None
    )


def register_error_handlers(bp):
    """Map engine exceptions to JSON responses for every route on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": str(error)}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(AuthorizationError)
    def _handle_forbidden(error: AuthorizationError):
        return jsonify({"error": str(error), "required_role": error.required_role}), 403

    @bp.errorhandler(StateConflictError)
    def _handle_state_conflict(error: StateConflictError):
        return jsonify({"error": str(error), "current_status": error.current_status}), 409

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return jsonify({"error": str(error)}), 409

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return jsonify({"error": "Internal server error"}), 500

    return bp
