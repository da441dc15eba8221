"""
Error taxonomy shared by the alert and notification services.
"""


class CryptAlertError(Exception):
    """Base class for all service errors."""

    pass


class InvalidAlert(CryptAlertError):
    """Raised when alert data fails validation."""

    pass


class InvalidTransition(InvalidAlert):
    """Raised when an alert status change is not allowed."""

    pass


class NotFound(CryptAlertError):
    """Raised when a referenced alert, coin or notification does not exist."""

    pass


class LimitExceeded(CryptAlertError):
    """Raised when a user would exceed the alert quota."""

    pass


class NetworkError(CryptAlertError):
    """
    Raised when a remote collaborator cannot be reached.

    Args:
        message: Human readable reason
        temporary: Whether retrying later may succeed
    """

    def __init__(self, message: str, temporary: bool = True):
        super().__init__(message)
        self.temporary = temporary


class PermissionDenied(CryptAlertError):
    """Raised when a delivery channel lacks the user's permission."""

    pass


class InvalidNotification(CryptAlertError):
    """Raised when notification data or preferences fail validation."""

    pass
