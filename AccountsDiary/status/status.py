"""Status definitions and exceptions for AccountsDiary.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., NoActiveUserException) for error handling in the store, sync and services
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ClientConfigNotFound = enum.auto()
    ClientConfigInvalid = enum.auto()

    # Session and store status
    NoActiveUser = enum.auto()
    StoreNotInitialized = enum.auto()
    StoreInvalid = enum.auto()
    EntryOwnership = enum.auto()
    InvalidTransition = enum.auto()
    OperationCancelled = enum.auto()

    # Identifier status
    IdGenerationFailed = enum.auto()

    # Authentication status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote status
    ServiceUnavailable = enum.auto()
    RemoteRejected = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ClientConfigNotFound: 'Could not find the client config.',
    Status.ClientConfigInvalid: 'The client config seems to be incomplete, or contains invalid values.',

    Status.NoActiveUser: 'No user is logged in. Please sign in first.',
    Status.StoreNotInitialized: 'The local store is not initialized. Please sign in again.',
    Status.StoreInvalid: 'The local store could not be opened or upgraded.',
    Status.EntryOwnership: 'The entry belongs to a different user.',
    Status.InvalidTransition: 'The entry cannot be changed in its current sync state.',
    Status.OperationCancelled: 'Operation cancelled.',

    Status.IdGenerationFailed: 'Could not generate a unique identifier.',

    Status.CredsNotFound: 'Could not find saved credentials. Please sign in.',
    Status.CredsInvalid: 'Could not verify the saved credentials. Please sign in again.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again.',

    Status.ServiceUnavailable: 'The sync service is unavailable. Please check your connection.',
    Status.RemoteRejected: 'The sync service rejected the request.',
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
    """Base exception for status-based errors in AccountsDiary.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.message = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..actions import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class ClientConfigNotFoundException(BaseStatusException):
    """Exception raised when the client configuration file cannot be found."""
    status = Status.ClientConfigNotFound


class ClientConfigInvalidException(BaseStatusException):
    """Exception raised when the client configuration is invalid or malformed."""
    status = Status.ClientConfigInvalid


class NoActiveUserException(BaseStatusException):
    """Exception raised when a store operation runs without an active owner."""
    status = Status.NoActiveUser


class StoreNotInitializedException(BaseStatusException):
    """Exception raised when a store operation runs before the owner store is open."""
    status = Status.StoreNotInitialized


class StoreInvalidException(BaseStatusException):
    """Exception raised when the local store cannot be opened, upgraded or removed."""
    status = Status.StoreInvalid


class EntryOwnershipException(BaseStatusException):
    """Exception raised when a write targets an entry id owned by another user."""
    status = Status.EntryOwnership


class InvalidTransitionException(BaseStatusException):
    """Exception raised when a sync-state transition is not defined."""
    status = Status.InvalidTransition


class OperationCancelledException(BaseStatusException):
    """Exception raised when the user declines a confirmation."""
    status = Status.OperationCancelled


class IdGenerationException(BaseStatusException):
    """Exception raised when no unique identifier could be generated."""
    status = Status.IdGenerationFailed


class CredsNotFoundException(BaseStatusException):
    """Exception raised when no saved session token can be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when the saved session token is corrupt."""
    status = Status.CredsInvalid


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when the remote service refuses the bearer token."""
    status = Status.NotAuthenticated


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when the remote service cannot be reached."""
    status = Status.ServiceUnavailable


class RemoteRejectedException(BaseStatusException):
    """Exception raised when the remote service answers without success."""
    status = Status.RemoteRejected
