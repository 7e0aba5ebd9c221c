"""Exception hierarchy for ssh-client.

Every failure the core can signal is a subclass of :class:`SshClientError`,
so the foreground loop can catch one type and turn it into a notice.
"""

from __future__ import annotations


class SshClientError(Exception):
    """Base class for all ssh-client errors."""


class ValidationError(SshClientError, ValueError):
    """Raised when user-supplied input is rejected."""


class MissingFieldError(ValidationError):
    """Raised when a required profile or password field is empty."""


class MasterMismatchError(SshClientError):
    """Raised when a master password does not unlock the verifier blob."""


class CryptoError(SshClientError):
    """Raised when an encrypted blob cannot be decoded or authenticated."""


class StoreIOError(SshClientError):
    """Raised when the profile store cannot be read, parsed or written."""


class DialError(SshClientError):
    """Raised when resolving, connecting to or authenticating with a host fails."""


class SFTPError(SshClientError):
    """Raised when a remote SFTP operation fails."""


class ShellError(SshClientError):
    """Raised when an interactive shell channel cannot be opened or used."""


class LocalIOError(SshClientError):
    """Raised when a local filesystem operation fails during a transfer or walk."""


class TransferCancelledError(SshClientError):
    """Raised inside a transfer worker once the cancel signal is observed."""

    def __init__(self, message: str = "Transfer cancelled") -> None:
        super().__init__(message)


class InvalidStateError(SshClientError):
    """Raised when a command is issued in a step where it is undefined."""


class NotConnectedError(InvalidStateError):
    """Raised when an operation needs an open connection for the selected profile."""

    def __init__(self, message: str = "Selected connection is not connected") -> None:
        super().__init__(message)
