"""Exceptions raised by the noisepipe components.

Row-level validation errors are counted and skipped by the row processor,
while the remaining exceptions surface as failures of the unit of work
they belong to (a file, a scheduled job, or the configuration).
"""

from __future__ import annotations


class RowValidationError(ValueError):
    """A measurement row cannot be normalized and must be skipped."""


class MissingField(RowValidationError):
    """A required field (system time or a value column) is absent."""


class OutOfRangeValue(RowValidationError):
    """The measured value is not numeric or outside the plausible bounds."""


class MalformedTimestamp(RowValidationError):
    """The system time or the date of a row cannot be parsed."""


class TransientStorageBusy(RuntimeError):
    """The store is temporarily locked by another writer."""


class FileProcessingError(RuntimeError):
    """A source file could not be processed after all the attempts.

    Attributes:
        station: the station owning the file
        file_name: the base name of the file
        attempts: how many attempts we made
    """

    def __init__(self, message: str, *, station: str, file_name: str, attempts: int):
        super().__init__(message)
        self.station = station
        self.file_name = file_name
        self.attempts = attempts


class SchedulerJobError(RuntimeError):
    """A scheduled job invocation failed."""


class SchedulerJobTimeout(SchedulerJobError):
    """A scheduled job invocation did not complete within its timeout."""


class ConfigError(ValueError):
    """The configuration is missing, malformed or inconsistent."""
