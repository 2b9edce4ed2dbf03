"""Domain errors raised by the matching, bidding, ride and settlement services.

Each error carries a stable ``code`` so the HTTP layer (and any other caller) can
tell "already used" apart from "not your ride" without parsing messages.
"""


class DomainError(Exception):
    """Base class for expected, caller-facing failures."""
    code = "domain_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Raised when required input is missing or malformed."""
    code = "validation_error"
    status_code = 422


class StateConflictError(DomainError):
    """Raised when an operation is not valid for the entity's current state."""
    code = "state_conflict"
    status_code = 409


class AuthorizationError(DomainError):
    """Raised when the caller is not the entity's driver, passenger or owner."""
    code = "not_authorized"
    status_code = 403


class NotFoundError(DomainError):
    """Raised when a referenced entity does not exist."""
    code = "not_found"
    status_code = 404


class UpstreamError(DomainError):
    """Raised when the payment provider declines or cannot be reached."""
    code = "upstream_failure"
    status_code = 502
