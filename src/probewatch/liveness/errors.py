"""Errors raised by the liveness core."""


class LivenessError(Exception):
    """Base class; ``status_code`` is the HTTP status the API responds with."""

    status_code = 500


class NotFoundError(LivenessError):
    status_code = 404


class InvalidStateError(LivenessError):
    """Requested target state is not Up or Down."""

    status_code = 400


class ConflictError(LivenessError):
    """An optimistic update lost a race with another writer."""

    status_code = 409


class StorageError(LivenessError):
    """The store could not complete the operation (unreachable, locked, timed out)."""

    status_code = 503
