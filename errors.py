"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``main.py`` turns them into
``{"success": false, "error": "..."}`` responses with the matching status code.
"""

from typing import Optional


class PortalError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PortalError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(PortalError):
    status_code = 401
    default_message = "Not authorized to access this route"


class Forbidden(PortalError):
    status_code = 403
    default_message = "Not authorized to perform this action"


class NotFound(PortalError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(PortalError):
    status_code = 409
    default_message = "Resource already exists"


class DependencyFailure(PortalError):
    status_code = 502
    default_message = "An external service failed"


# Identity & session

class DuplicateIdentity(Conflict):
    default_message = "Email already registered"


class InvalidCredentials(Unauthorized):
    default_message = "Incorrect email or password"


class InvalidToken(Unauthorized):
    default_message = "Could not validate credentials"


class PendingApproval(Forbidden):
    default_message = "Your account is pending approval. Please wait for admin approval."


# Engagement

class AlreadyExists(Conflict):
    default_message = "Already liked"


class SelfReport(ValidationError):
    default_message = "You cannot report your own comment"


class DuplicateReport(Conflict):
    default_message = "You have already reported this comment"
