"""Status definitions and exceptions for MoneyTracker.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., MutationFailedException) for error handling in the sync engine

Exceptions belonging to the cache layer are absorbed where they are raised and are only logged.
All other exceptions also emit :attr:`MoneyTracker.signals.Signals.error`.
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Remote store status
    RemoteNotConfigured = enum.auto()
    WorksheetNotFound = enum.auto()
    ServiceUnavailable = enum.auto()

    # Local storage and cache status
    StorageUnavailable = enum.auto()
    CacheInvalid = enum.auto()
    CacheCorrupt = enum.auto()

    # Mutation status
    MutationFailed = enum.auto()
    VersionConflict = enum.auto()
    RecordNotFound = enum.auto()
    RecordPending = enum.auto()

    # Session status
    SessionInactive = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.RemoteNotConfigured: 'The remote store is not configured. Have you set up a spreadsheet id in the settings?',
    Status.WorksheetNotFound: 'Could not find the worksheet. Have you set up valid worksheet names in the settings?',
    Status.ServiceUnavailable: 'The remote store is unavailable. Please check your connection.',

    Status.StorageUnavailable: 'The local storage could not be accessed.',
    Status.CacheInvalid: 'The cache is invalid. Try fetching the data from the source again.',
    Status.CacheCorrupt: 'The cache could not be read. It will be rebuilt from the remote store.',

    Status.MutationFailed: 'The change was saved locally but could not be sent. It will be retried.',
    Status.VersionConflict: 'The item was changed in the meantime. Reload it and try again.',
    Status.RecordNotFound: 'The item could not be found.',
    Status.RecordPending: 'The item is still being synchronized. Try again in a moment.',

    Status.SessionInactive: 'No user session is active.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in MoneyTracker.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.
        notify (bool): Whether the error is emitted on the application error signal.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus
    notify = True

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        if not self.notify:
            logging.warning(exception_message)
            return

        logging.error(exception_message)

        from ..signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings are invalid or malformed."""
    status = Status.SettingsInvalid


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when the remote spreadsheet is not configured in settings."""
    status = Status.RemoteNotConfigured


class WorksheetNotFoundException(BaseStatusException):
    """Exception raised when the worksheet of an entity family cannot be accessed."""
    status = Status.WorksheetNotFound


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when the remote store cannot be reached.

    Background reconciliation swallows these, and mutations surface them wrapped in
    :class:`MutationFailedException`, so they are not emitted on their own.
    """
    status = Status.ServiceUnavailable
    notify = False


class StorageUnavailableException(BaseStatusException):
    """Exception raised when the encrypted storage cannot be read or written."""
    status = Status.StorageUnavailable
    notify = False


class CacheInvalidException(BaseStatusException):
    """Exception raised when cached data cannot be used for the requested operation."""
    status = Status.CacheInvalid
    notify = False


class CacheCorruptException(BaseStatusException):
    """Exception raised when a cache envelope or its metadata fails to decode."""
    status = Status.CacheCorrupt
    notify = False


class MutationFailedException(BaseStatusException):
    """Exception raised when a mutation was applied locally but not committed remotely.

    Attributes:
        mutation: The failed :class:`MoneyTracker.core.mutation.Mutation`.
    """
    status = Status.MutationFailed

    def __init__(self, message: str = None, mutation=None):
        self.mutation = mutation
        super().__init__(message)


class VersionConflictException(BaseStatusException):
    """Exception raised when a record changed between reading and updating it."""
    status = Status.VersionConflict


class RecordNotFoundException(BaseStatusException):
    """Exception raised when a record id is not present in the collection."""
    status = Status.RecordNotFound


class RecordPendingException(BaseStatusException):
    """Exception raised when a record still carries its temporary id after its create was committed."""
    status = Status.RecordPending


class SessionInactiveException(BaseStatusException):
    """Exception raised when an operation needs an active user session."""
    status = Status.SessionInactive
