"""
Application errors for the delivery scheduler.

Exception Hierarchy:
    DeliveryAppError (base)
    ├── ValidationError         - malformed or missing input (400)
    ├── DanglingReferenceError  - foreign key points at nothing (400)
    ├── AuthenticationError     - no valid token (401)
    ├── AuthorizationError      - role or ownership violation (403)
    ├── NotFoundError           - record does not exist (404)
    └── PersistenceError        - unexpected storage failure (500)

The HTTP layer maps each class to its status_code and returns
{"error": message, "details": {...}}. Anything outside this hierarchy is
treated as an unexpected 500.
"""

from typing import Any, Dict, Optional


class DeliveryAppError(Exception):
    """Base exception for all delivery scheduler errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(DeliveryAppError):
    """Input is missing a required field or carries an invalid value."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(message, error_details)
        self.field = field


class DanglingReferenceError(DeliveryAppError):
    """
    A referenced record (customer, driver, product) does not exist.

    Raised when the store rejects a write with a foreign-key violation.
    Named this way so it does not shadow Python's builtin ReferenceError.
    """

    status_code = 400


class AuthenticationError(DeliveryAppError):
    """No token, an invalid token, or a deactivated account."""

    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(DeliveryAppError):
    """The actor's role or assignment does not permit the operation."""

    status_code = 403


class NotFoundError(DeliveryAppError):
    """The requested record does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: Any = None):
        message = f"{entity} not found"
        details = {"id": entity_id} if entity_id is not None else None
        super().__init__(message, details)
        self.entity = entity
        self.entity_id = entity_id


class PersistenceError(DeliveryAppError):
    """
    The store failed for a reason the caller cannot correct.

    Logged with full context; production responses only carry the
    generic message.
    """

    status_code = 500
