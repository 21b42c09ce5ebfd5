"""
Error taxonomy shared by the storage layer, the workflow and the API.
"""


class ClinicError(Exception):
    """Base class for every recoverable clinic workflow error."""


class ValidationError(ClinicError, ValueError):
    """A required field is missing or a value is out of range. Nothing was written."""


class ConflictError(ValidationError):
    """An entity id or username is already taken."""


class NotFoundError(ClinicError, LookupError):
    """A looked-up patient, visit or user does not exist."""


class BackendUnavailableError(ClinicError):
    """The storage backend could not be reached."""


class AuthFailure(ClinicError):
    """Username/password pair did not match any known identity."""


class AccessDenied(ClinicError):
    """The signed-in role may not perform the requested action."""
