"""Errors raised by the attempt, scoring and progress services.

Each error carries the HTTP status it is rendered with; main.py turns them into
``{"success": false, "message": ...}`` responses.
"""


class ApiError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(ApiError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized request"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class Conflict(ApiError):
    status_code = 400
    default_message = "Quiz attempt already submitted"


class AttemptLimitExceeded(ApiError):
    status_code = 400
    default_message = "Maximum attempts reached for this quiz"


class TimeLimitExceeded(ApiError):
    status_code = 400
    default_message = "Time limit exceeded"
