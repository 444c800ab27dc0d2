"""Custom exceptions for the connection manager."""


class ConnectionManagerError(Exception):
    """Base exception for all connection manager errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class StorageError(ConnectionManagerError):
    """Exception raised when the connection registry cannot be read or written."""

    pass


class NotFoundError(ConnectionManagerError):
    """Exception raised when a connection or session id does not exist."""

    pass


class CliError(ConnectionManagerError):
    """Exception raised when an invocation of the external CLI fails.

    The command line carried here is always masked; it is safe to print.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        command: str = "",
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command
        super().__init__(message, details)


class CliNotFoundError(CliError):
    """Exception raised when the CLI binary is not installed or not in PATH."""

    pass


class AuthenticationError(ConnectionManagerError):
    """Exception raised when credentials are rejected or a login flow is abandoned."""

    pass


class ValidationError(ConnectionManagerError):
    """Exception raised for invalid input at the core boundary."""

    pass


class ConfigurationError(ConnectionManagerError):
    """Exception raised for configuration errors."""

    pass
