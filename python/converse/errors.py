"""Error definitions.

Every failure the core surfaces to callers is a ConverseError carrying a
stable code. The HTTP layer maps codes to status codes; library callers
catch the subclasses directly.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes.

    Format: E_CATEGORY_NAME
    """

    # Validation errors (400)
    E_INVALID_INPUT = "E_INVALID_INPUT"
    E_INVALID_REQUEST = "E_INVALID_REQUEST"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CONVERSATION_NOT_FOUND = "E_CONVERSATION_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"

    # Conflict errors (409)
    E_INVALID_STATE = "E_INVALID_STATE"
    E_CONSTRAINT_VIOLATION = "E_CONSTRAINT_VIOLATION"

    # Server errors (500)
    E_INTERNAL = "E_INTERNAL"


ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    ErrorCode.E_INVALID_INPUT: 400,
    ErrorCode.E_INVALID_REQUEST: 400,
    ErrorCode.E_NOT_FOUND: 404,
    ErrorCode.E_CONVERSATION_NOT_FOUND: 404,
    ErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ErrorCode.E_INVALID_STATE: 409,
    ErrorCode.E_CONSTRAINT_VIOLATION: 409,
    ErrorCode.E_INTERNAL: 500,
}


class ConverseError(Exception):
    """Base exception for all surfaced errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class InvalidInputError(ConverseError):
    """Input has an unrecognized shape or an unknown tag."""

    def __init__(self, message: str = "Invalid input", code: ErrorCode = ErrorCode.E_INVALID_INPUT):
        super().__init__(code, message)


class InvalidStateError(ConverseError):
    """Operation is not allowed in the message's current state."""

    def __init__(self, message: str = "Invalid state"):
        super().__init__(ErrorCode.E_INVALID_STATE, message)


class ConstraintViolationError(ConverseError):
    """A storage uniqueness constraint rejected the write."""

    def __init__(self, message: str = "Constraint violation"):
        super().__init__(ErrorCode.E_CONSTRAINT_VIOLATION, message)


class NotFoundError(ConverseError):
    """Resource does not exist or is not visible."""

    def __init__(self, code: ErrorCode = ErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)
