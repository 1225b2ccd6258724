"""Domain errors raised by the service layer.

Each error carries the HTTP status it maps to so the API layer can render it
without knowing which service raised it.
"""


class CoordenaError(Exception):
    """Base class for errors whose message is safe to show to the caller."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(CoordenaError):
    """Missing or malformed input."""

    status_code = 400


class AuthenticationError(CoordenaError):
    """Bad credentials or an unusable token."""

    status_code = 401


class AuthorizationError(CoordenaError):
    """Insufficient role or an account that is not approved."""

    status_code = 403


class NotFoundError(CoordenaError):
    status_code = 404


class ConflictError(CoordenaError):
    status_code = 409
