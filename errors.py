"""Domain errors raised by the services and mapped to HTTP responses in main.py"""


class GoalTrackerError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(GoalTrackerError):
    status_code = 404


class PermissionDeniedError(GoalTrackerError):
    status_code = 403


class ValidationError(GoalTrackerError):
    status_code = 400


class UnauthenticatedError(GoalTrackerError):
    status_code = 401


class TransportError(GoalTrackerError):
    """Email could not be handed to the SMTP server"""
    status_code = 502
