"""
Shared access error types.

Placed in a separate module so the policy, index, recorder and HTTP layers
raise and catch the same classes.
"""


class AccessError(Exception):
    """Base class for access-control failures."""

    code = "access_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(AccessError):
    """Referenced entity (or actor) is absent."""

    code = "not_found"
    status_code = 404


class PermissionDenied(AccessError):
    """A policy rule evaluated false."""

    code = "permission_denied"
    status_code = 403


class ConstraintViolation(AccessError):
    """Uniqueness or referential invariant broken by a create/update."""

    code = "constraint_violation"
    status_code = 409


class StoreUnavailable(AccessError):
    """Audit or relationship data could not be read or written."""

    code = "store_unavailable"
    status_code = 503
