class RestoreError(Exception):
    """Base class for restore errors."""


class RestoreConfigurationError(RestoreError):
    """Conflicting or out-of-range options, detected before anything is changed."""


class RestorePreconditionError(RestoreError):
    """Missing backup files, unreachable directories or a database in the wrong state."""


class RestoreExecutionError(RestoreError):
    """A native restore failed part way through a plan.

    ``results`` holds one entry per step attempted, the failed one last.
    Steps before it have been applied and the database is left restoring.
    """

    def __init__(self, message, results=None):
        super().__init__(message)
        self.results = list(results or [])
