class ExperimentError(Exception):
    """Base exception for experiment engine operations."""


class ValidationError(ExperimentError):
    """Malformed experiment definition (no control, bad traffic split, no variants)."""


class NotFoundError(ExperimentError):
    """Experiment, variant or assigned user does not exist."""


class InvalidStateError(ExperimentError):
    """Operation not allowed from the experiment's current status."""


class ConcurrencyConflictError(ExperimentError):
    """The stored document changed since it was loaded; the save was rejected."""
