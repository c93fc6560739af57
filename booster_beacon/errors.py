"""Domain error taxonomy and its mapping to the JSON error envelope."""

from datetime import datetime, timezone
from typing import Any


class BeaconError(Exception):
    """Base error carrying a machine-readable code and an HTTP status."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_envelope(self) -> dict:
        """Render as ``{"error": {code, message, details?, timestamp}}``."""
        body: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        body["timestamp"] = utc_timestamp()
        return {"error": body}


class ValidationError(BeaconError):
    """Malformed or out-of-range caller input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(BeaconError):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, identifier: str):
        super().__init__(
            f"{entity} '{identifier}' not found",
            code=f"{entity.upper()}_NOT_FOUND",
        )
        self.entity = entity
        self.identifier = identifier


class AuthenticationRequired(BeaconError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"

    def __init__(self, message: str = "Authentication is required"):
        super().__init__(message)


class ServiceUnavailable(BeaconError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class DatabaseError(BeaconError):
    """Any underlying store failure, with the driver error kept as ``cause``."""

    status_code = 500
    code = "DATABASE_ERROR"

    def __init__(self, message: str = "Database operation failed", cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class CircuitOpenError(BeaconError):
    """Raised by a circuit breaker that rejects a call without running it."""

    status_code = 503
    code = "CIRCUIT_OPEN"

    def __init__(self, message: str = "Circuit breaker is OPEN"):
        super().__init__(message)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()
