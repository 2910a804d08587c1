"""Exception hierarchy for megparcel.

Every failure that aborts a subject run derives from ``MegParcelError`` so the
command-line entry points can report it uniformly:

- ConfigurationError: missing/mismatched inputs, coordinate systems, channels
- NumericalError: ill-conditioned covariance, empty kappa, degenerate leadfield
- ResourceExhaustion: time/memory budget exceeded (reported to the scheduler)
- ArtifactIOError: artifact read/write failure
"""


class MegParcelError(Exception):
    """Base class for all pipeline errors."""

    pass


class ConfigurationError(MegParcelError):
    """Raised when configuration or inputs are invalid or inconsistent."""

    pass


class NumericalError(MegParcelError):
    """Raised when a numerical stage cannot produce a valid result."""

    pass


class ResourceExhaustion(MegParcelError):
    """Raised when a job exceeds its time or memory budget."""

    pass


class ArtifactIOError(MegParcelError, OSError):
    """Raised when an input or output artifact cannot be read or written."""

    pass
