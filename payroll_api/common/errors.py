# payroll_api/common/errors.py
import logging

from flask import Blueprint, current_app
from werkzeug.exceptions import HTTPException
from sqlalchemy.exc import IntegrityError

from payroll_api.extensions import db
from payroll_api.common.http import fail

log = logging.getLogger(__name__)

bp_errors = Blueprint("errors", __name__)


class APIError(Exception):
    """Base API error; rendered through the common fail() envelope."""
    code = "API_ERROR"
    status_code = 400

    def __init__(self, code=None, message="", status_code=None, payload=None):
        super().__init__(message)
        self.code = code or self.code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload


class ValidationError(APIError):
    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message, payload=None):
        super().__init__(message=message, payload=payload)


class NotFoundError(APIError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, message, payload=None):
        super().__init__(message=message, payload=payload)


class StateError(APIError):
    """Action not allowed in the entity's current state. Nothing was mutated."""
    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, message, current_state=None, payload=None):
        payload = dict(payload or {})
        if current_state is not None:
            payload["current_state"] = current_state
        super().__init__(message=message, payload=payload or None)
        self.current_state = current_state


class ForbiddenError(APIError):
    code = "SEGREGATION_OF_DUTIES"
    status_code = 403

    def __init__(self, message, payload=None):
        super().__init__(message=message, payload=payload)


class ConfigurationError(APIError):
    """No usable tax/allowance configuration for the run. Fatal for the run, never retried."""
    code = "CONFIGURATION_ERROR"
    status_code = 422

    def __init__(self, message, payload=None):
        super().__init__(message=message, payload=payload)


class InvariantViolation(APIError):
    code = "INVARIANT_VIOLATION"
    status_code = 500

    def __init__(self, message, payload=None):
        super().__init__(message=message, payload=payload)
        log.error("payroll invariant violated: %s %s", message, payload or "")


class PublishBlocked(APIError):
    """Hard publish-gate failure. payload['violations'] maps check -> employee ids."""
    code = "PUBLISH_BLOCKED"
    status_code = 409

    def __init__(self, violations, message="Run cannot be published"):
        super().__init__(message=message, payload={"violations": violations})
        self.violations = violations


class ConfirmationRequired(APIError):
    """Soft publish-gate warnings the caller must acknowledge with override flags."""
    code = "CONFIRMATION_REQUIRED"
    status_code = 409

    def __init__(self, warnings, message="Publishing requires confirmation"):
        super().__init__(message=message, payload={"warnings": warnings})
        self.warnings = warnings


@bp_errors.app_errorhandler(APIError)
def _api_error(e: APIError):
    db.session.rollback()
    return fail(message=e.message, status=e.status_code, code=e.code, detail=e.payload)


@bp_errors.app_errorhandler(HTTPException)
def _http(e: HTTPException):
    return fail(message=e.description or "HTTP error", status=e.code or 400)


@bp_errors.app_errorhandler(IntegrityError)
def _integrity(e: IntegrityError):
    db.session.rollback()
    # 409 for unique/FK violations
    return fail(message="Conflict / integrity error", status=409, code="CONSTRAINT_ERROR",
                detail=str(e.orig) if getattr(e, "orig", None) else str(e))


@bp_errors.app_errorhandler(Exception)
def _unhandled(e: Exception):
    db.session.rollback()
    current_app.logger.exception(e)
    return fail(message="Internal Server Error", status=500)
