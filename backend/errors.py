# errors.py
"""Error taxonomy shared by every service module.

Services raise these; ``main.py`` turns them into JSON responses with the
matching status code. ``message`` is always safe to show to the caller.
"""


class ServiceError(Exception):
    status_code = 500
    kind = "service_error"

    def __init__(self, message: str, kind: str = None):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind


class ValidationError(ServiceError):
    status_code = 400
    kind = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    kind = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    kind = "conflict"


class AuthorizationError(ServiceError):
    status_code = 403
    kind = "forbidden"


class UpstreamError(ServiceError):
    status_code = 502
    kind = "upstream_unavailable"


class IntegrityError(ServiceError):
    status_code = 400
    kind = "integrity_error"


class AuthenticationError(ServiceError):
    status_code = 401
    kind = "unauthenticated"
