"""Service-level error taxonomy.

Services raise these exceptions; `main.py` renders them as
`{"message": ..., "code": ...}` JSON bodies with the matching status.
"""


class ServiceError(Exception):
    """Base class for errors surfaced to API clients."""
    status_code = 500
    default_code = 'INTERNAL_ERROR'

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class NotFoundError(ServiceError):
    """A referenced topic, question, session or user does not exist."""
    status_code = 404
    default_code = 'NOT_FOUND'


class InvalidInputError(ServiceError, ValueError):
    """Input is well-formed but violates a domain rule."""
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class ConflictError(ServiceError):
    """The request collides with existing data (e.g. duplicate email)."""
    status_code = 400
    default_code = 'CONFLICT'


class SessionStateError(ServiceError):
    """The quiz session is not in a state that allows the operation."""
    status_code = 409
    default_code = 'SESSION_STATE'


class InternalError(ServiceError):
    """Store failure or unexpected error; details are logged, not returned."""
    status_code = 500
    default_code = 'INTERNAL_ERROR'
