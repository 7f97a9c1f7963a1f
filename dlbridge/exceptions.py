"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

class DlBridgeError(Exception):
    """Base class for all errors raised by the download engine."""
    pass

class MissingIdentifierError(DlBridgeError):
    """Raised when a command is about to be sent without a usable job identifier."""

    def __init__(self, command_type: str, value=None):
        self.command_type = command_type
        self.value = value
        super().__init__(f"Refusing to send {command_type} command with missing job id (got {value!r})")

class ChannelFailureError(DlBridgeError):
    """Raised when a command could not be delivered or was rejected by the worker."""
    pass

class DuplicateJobError(DlBridgeError):
    """Raised when a freshly generated job id is already tracked."""
    pass
