"""Error kinds surfaced by the QC engine.

None of these are recovered inside the engine; a run-acceptance decision has
no safe fallback, so callers must block result release on any of them.
"""
from typing import Optional


class QCError(Exception):
    """Base class for QC engine failures."""

    kind = "QCError"


class InvalidConfiguration(QCError, ValueError):
    """Raised when target values cannot be used (e.g. ``target_sd <= 0``)."""

    kind = "InvalidConfiguration"


class InvalidMeasurement(QCError, ValueError):
    """Raised when a control value is not a finite number (NaN or infinity)."""

    kind = "InvalidMeasurement"


class InsufficientData(QCError, ValueError):
    """Raised when too few observations exist to compute a statistic.

    ``n`` and, when it could be computed, ``mean`` are attached so callers can
    still show the partial result.
    """

    kind = "InsufficientData"

    def __init__(self, message: str, n: int = 0, mean: Optional[float] = None):
        super().__init__(message)
        self.n = n
        self.mean = mean


class HistoryUnavailable(QCError):
    """Raised when the history lookup failed, timed out or was cancelled."""

    kind = "HistoryUnavailable"


class ConfigurationNotFound(QCError, LookupError):
    """Raised when a QC test/level has no registered target mean and SD."""

    kind = "ConfigurationNotFound"


__all__ = [
    "ConfigurationNotFound",
    "HistoryUnavailable",
    "InsufficientData",
    "InvalidConfiguration",
    "InvalidMeasurement",
    "QCError",
]
