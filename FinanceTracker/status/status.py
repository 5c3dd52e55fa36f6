"""Status definitions and exceptions for FinanceTracker.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - ValidationError: local store rejections tagged with a ValidationKind
    - RemoteError subclasses: remote store failures, split into transient and persistent errors
    - Migration exceptions raised while upgrading the local store
"""
import enum
import logging
from typing import Any, Dict, Optional


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()

    # Credentials
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()

    # Spreadsheet backend
    SpreadsheetIdNotConfigured = enum.auto()
    SpreadsheetWorksheetNotConfigured = enum.auto()

    # Local store
    StoreInvalid = enum.auto()
    RecordNotFound = enum.auto()
    ValidationFailed = enum.auto()

    # Migration
    UnknownStoreVersion = enum.auto()
    MappingModelNotFound = enum.auto()
    MigrationFailed = enum.auto()
    BackupFailed = enum.auto()

    # Remote store
    NetworkUnavailable = enum.auto()
    RateLimited = enum.auto()
    RemoteTimeout = enum.auto()
    QuotaExceeded = enum.auto()
    DataCorruption = enum.auto()
    RemoteConflict = enum.auto()
    RemoteRecordNotFound = enum.auto()
    ConflictResolutionFailed = enum.auto()
    RemoteUnknown = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the settings file.',
    Status.ConfigInvalid: 'The settings file seems to be incomplete, or contains invalid values.',

    Status.CredsNotFound: 'Could not find the service account credentials. Have you set a valid path in the settings?',
    Status.CredsInvalid: 'Could not load the service account credentials.',

    Status.SpreadsheetIdNotConfigured: 'Could not find a valid spreadsheet id. Have you set up a valid spreadsheet id in the settings?',
    Status.SpreadsheetWorksheetNotConfigured: 'Worksheet name could not be found. Have you set a worksheet name in the settings?',

    Status.StoreInvalid: 'The local store could not be opened.',
    Status.RecordNotFound: 'The record does not exist in the local store.',
    Status.ValidationFailed: 'The record failed validation.',

    Status.UnknownStoreVersion: 'The local store was written by an unknown schema version.',
    Status.MappingModelNotFound: 'No migration is available for the local store schema version.',
    Status.MigrationFailed: 'The local store could not be migrated. The original store was left untouched.',
    Status.BackupFailed: 'Could not create or restore a backup of the local store.',

    Status.NetworkUnavailable: 'The network is unavailable. Changes will sync when the connection is restored.',
    Status.RateLimited: 'The sync service is rate limiting requests. Changes will sync shortly.',
    Status.RemoteTimeout: 'The sync service did not respond in time.',
    Status.QuotaExceeded: 'The cloud storage quota has been exceeded.',
    Status.DataCorruption: 'A record could not be read or written consistently.',
    Status.RemoteConflict: 'The record was changed on another device.',
    Status.RemoteRecordNotFound: 'The record does not exist on the sync service.',
    Status.ConflictResolutionFailed: 'A conflicting change could not be resolved.',
    Status.RemoteUnknown: 'The sync service returned an unexpected error.',
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
    """Base exception for status-based errors in FinanceTracker.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.
        log_level (int): Level used to log the error when it is raised.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus
    log_level = logging.ERROR

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.log(self.log_level, exception_message)


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.ConfigInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when the service account file cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when the service account file cannot be parsed."""
    status = Status.CredsInvalid


class SpreadsheetIdNotConfiguredException(BaseStatusException):
    """Exception raised when the spreadsheet ID is not configured in settings."""
    status = Status.SpreadsheetIdNotConfigured


class SpreadsheetWorksheetNotConfiguredException(BaseStatusException):
    """Exception raised when the worksheet name is not configured in settings."""
    status = Status.SpreadsheetWorksheetNotConfigured


class StoreInvalidException(BaseStatusException):
    """Exception raised when the local store cannot be opened or has the wrong schema."""
    status = Status.StoreInvalid


class RecordNotFoundException(BaseStatusException):
    """Exception raised when an update or delete targets a record the local store does not hold."""
    status = Status.RecordNotFound
    log_level = logging.WARNING


class ValidationKind(enum.StrEnum):
    """The constraint a rejected record violated."""
    InvalidAmount = 'invalid_amount'
    InvalidType = 'invalid_type'
    InvalidDate = 'invalid_date'
    InvalidName = 'invalid_name'
    InvalidColor = 'invalid_color'
    InvalidIcon = 'invalid_icon'
    InvalidCurrency = 'invalid_currency'
    InvalidNotes = 'invalid_notes'
    InvalidPeriod = 'invalid_period'
    MissingCategory = 'missing_category'
    MissingUser = 'missing_user'


class ValidationError(BaseStatusException):
    """Raised by the local store when a record violates a field or reference constraint.

    Attributes:
        kind (ValidationKind): The violated constraint.
        message (str): Human-readable description of the violation.
    """
    status = Status.ValidationFailed
    log_level = logging.WARNING

    def __init__(self, kind: ValidationKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f'[{kind.value}] {message}')


class MigrationException(BaseStatusException):
    """Base class of errors that make the local store unusable until it is restored or recreated."""
    status = Status.MigrationFailed


class UnknownStoreVersionError(MigrationException):
    """The store's recorded schema version is not part of the version chain."""
    status = Status.UnknownStoreVersion


class MappingModelNotFoundError(MigrationException):
    """No mapping exists from a known schema version to its successor."""
    status = Status.MappingModelNotFound


class MigrationFailedError(MigrationException):
    """A migration step failed. The original store is left untouched."""
    status = Status.MigrationFailed


class BackupFailedError(MigrationException):
    """A backup could not be written or restored."""
    status = Status.BackupFailed


class RemoteError(BaseStatusException):
    """Base class of remote store errors.

    Attributes:
        transient (bool): True when the operation may succeed if retried later.
    """
    status = Status.RemoteUnknown
    transient = False


class NetworkUnavailableError(RemoteError):
    """The remote store could not be reached."""
    status = Status.NetworkUnavailable
    transient = True
    log_level = logging.WARNING


class RateLimitedError(RemoteError):
    """The remote store asked the client to slow down."""
    status = Status.RateLimited
    transient = True
    log_level = logging.WARNING


class RemoteTimeoutError(RemoteError):
    """A remote call did not complete within its time budget."""
    status = Status.RemoteTimeout
    transient = True
    log_level = logging.WARNING


class QuotaExceededError(RemoteError):
    """The remote account has no storage quota left."""
    status = Status.QuotaExceeded


class DataCorruptionError(RemoteError):
    """A record could not be encoded, decoded or applied consistently."""
    status = Status.DataCorruption


class UnknownRemoteError(RemoteError):
    """Any other persistent remote error."""
    status = Status.RemoteUnknown


class ConflictResolutionFailedError(RemoteError):
    """A record kept conflicting after the maximum number of resolution attempts."""
    status = Status.ConflictResolutionFailed


class ConflictError(RemoteError):
    """The server copy of a record changed since the client last saw it.

    Attributes:
        server_record: The current server revision of the record.
    """
    status = Status.RemoteConflict
    log_level = logging.DEBUG

    def __init__(self, server_record: Any, message: Optional[str] = None):
        self.server_record = server_record
        super().__init__(message)


class RecordNotFoundError(RemoteError):
    """An update or delete targeted a record the server does not have."""
    status = Status.RemoteRecordNotFound
    log_level = logging.DEBUG
