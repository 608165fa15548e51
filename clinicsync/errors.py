from __future__ import annotations


class ClinicSyncError(Exception):
    """Base class for every error raised by clinicsync."""


class RemoteFetchError(ClinicSyncError):
    """The remote calendar was unreachable or returned malformed data."""


class WriteConflictError(ClinicSyncError):
    """A single event write lost a race or hit a transient lock."""


class ValidationError(ClinicSyncError):
    """An item is missing identity fields or carries an invalid value."""


class ConflictError(ClinicSyncError):
    """A sync is already running and its lock is still fresh."""

    def __init__(self, message: str, running_log_id: int | None = None) -> None:
        super().__init__(message)
        self.running_log_id = running_log_id


class ClientTimeout(ClinicSyncError):
    """The polling client gave up; the server job keeps running."""

    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(f"job {job_id} still running after {attempts} polls")
        self.job_id = job_id
        self.attempts = attempts


class SystemicError(ClinicSyncError):
    """The event store is unusable; the whole run must stop."""


class JobNotFoundError(ClinicSyncError):
    pass


class EventNotFoundError(ClinicSyncError):
    pass
