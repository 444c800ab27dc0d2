"""Gateway to the external ``argocd`` command-line tool.

This is the only module that spawns the CLI. It turns exit codes, stderr and
the text/JSON output of the tool into typed results, and masks credentials in
every command line it logs or reports.
"""

import json
import re
import shlex
import subprocess
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from connection_manager.exceptions import CliError, CliNotFoundError
from connection_manager.logging_config import get_logger
from connection_manager.models.session import UserInfo

logger = get_logger(__name__)

REDACTED = "[REDACTED]"
SECRET_FLAGS = ("--password", "--auth-token", "--authToken", "-authToken")

_LOGGED_IN_PATTERN = re.compile(r"Logged In:\s*(true|false)", re.IGNORECASE)


def mask_secrets(argv: list[str]) -> str:
    """Render a command line with the values of secret flags replaced.

    Handles both ``--password value`` and ``--password=value`` forms.
    """
    masked: list[str] = []
    hide_next = False
    for arg in argv:
        if hide_next:
            masked.append(REDACTED)
            hide_next = False
            continue
        flag, sep, _ = arg.partition("=")
        if flag in SECRET_FLAGS:
            if sep:
                masked.append(f"{flag}={REDACTED}")
            else:
                masked.append(arg)
                hide_next = True
            continue
        masked.append(arg)
    return " ".join(masked)


def _secret_values(argv: list[str]) -> list[str]:
    values = []
    for index, arg in enumerate(argv):
        flag, sep, value = arg.partition("=")
        if flag not in SECRET_FLAGS:
            continue
        if sep and value:
            values.append(value)
        elif not sep and index + 1 < len(argv):
            values.append(argv[index + 1])
    return values


def _redact(text: str, secret_values: list[str]) -> str:
    for value in secret_values:
        if value:
            text = text.replace(value, REDACTED)
    return text


def _tls_flags(skip_tls_verify: bool) -> list[str]:
    return ["--insecure"] if skip_tls_verify else []


def _split(command: str | list[str]) -> list[str]:
    return shlex.split(command) if isinstance(command, str) else list(command)


class AuthGateway(Protocol):
    """Operations the lifecycle manager and session provider need from the CLI."""

    verify_command: str

    def check_cli(self) -> bool: ...

    def login(self, server_address: str, username: str, password: str, skip_tls_verify: bool = False) -> bool: ...

    def login_sso(self, server_address: str, skip_tls_verify: bool = False) -> bool: ...

    def execute_with_token(
        self, command: str | list[str], server_address: str, token: str, skip_tls_verify: bool = False
    ) -> str: ...

    def is_authenticated(self) -> bool: ...

    def is_authenticated_with_token(self, server_address: str, token: str, skip_tls_verify: bool = False) -> bool: ...

    def get_identity(self) -> UserInfo | None: ...

    def get_identity_with_token(
        self, server_address: str, token: str, skip_tls_verify: bool = False
    ) -> UserInfo | None: ...

    def logout(self, server_address: str | None = None) -> None: ...


class ArgocdCli:
    """Runs the ``argocd`` binary for login, logout and identity queries."""

    def __init__(
        self,
        binary: str = "argocd",
        verify_command: str = "cluster list",
        timeout: float | None = None,
    ):
        """Initialize the gateway.

        Args:
            binary: Name or path of the CLI executable
            verify_command: Cheap authenticated command used to verify credentials
            timeout: Seconds before a command is abandoned; None waits for the
                command to finish, which SSO logins in a browser need
        """
        self.binary = binary
        self.verify_command = verify_command
        self.timeout = timeout

    def run(self, args: list[str]) -> str:
        """Run the CLI with the given arguments and return its stdout.

        Raises:
            CliNotFoundError: If the binary is not installed
            CliError: If the command fails or times out
        """
        argv = [self.binary, *args]
        command = mask_secrets(argv)
        secret_values = _secret_values(argv)
        logger.debug(f"Executing command: {command}")

        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.error(f"{self.binary} binary not found in PATH")
            raise CliNotFoundError(
                f"{self.binary} is not installed or not in PATH",
                "Install the Argo CD CLI from https://argo-cd.readthedocs.io/en/stable/cli_installation/\n"
                f"Or point ARGOCD_CLI at the '{self.binary}' executable",
                command=command,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {self.timeout} seconds: {command}")
            raise CliError(
                f"{self.binary} command timed out",
                f"'{command}' did not finish within {self.timeout} seconds",
                command=command,
            )
        except OSError as e:
            logger.error(f"Failed to execute {self.binary}: {e}")
            raise CliError(
                f"Failed to execute {self.binary}: {e.strerror or e}",
                f"Check that '{self.binary}' is an executable Argo CD CLI binary",
                command=command,
            )

        stderr = _redact(result.stderr or "", secret_values).strip()
        if result.returncode != 0:
            logger.error(f"Command failed with return code {result.returncode}: {command}: {stderr}")
            raise CliError(
                f"{self.binary} command failed with exit code {result.returncode}",
                stderr or None,
                exit_code=result.returncode,
                stderr=stderr,
                command=command,
            )

        if stderr:
            logger.warning(f"Command stderr: {stderr}")
        stdout = result.stdout or ""
        logger.debug(f"Command executed successfully, output length: {len(stdout)} characters")
        return stdout

    def check_cli(self) -> bool:
        """Check that the CLI is installed and answers a version query."""
        try:
            output = self.run(["version", "--client"])
        except CliError as e:
            logger.warning(f"CLI check failed: {e.message}")
            return False
        available = "argocd" in output.lower()
        if available:
            logger.info(f"CLI found - {output.strip().splitlines()[0]}")
        else:
            logger.warning("CLI version output does not look like argocd")
        return available

    def client_version(self) -> str | None:
        """Return the CLI client version, or None if it cannot be determined."""
        try:
            output = self.run(["version", "--client", "-o", "json"])
            client = json.loads(output)["client"]
            return client.get("Version") or client.get("version")
        except CliError:
            return None
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.debug("Could not parse version output")
            return None

    def login(
        self, server_address: str, username: str, password: str, skip_tls_verify: bool = False
    ) -> bool:
        """Log in with username and password.

        Returns:
            True if the CLI accepted the credentials, False otherwise

        Raises:
            CliNotFoundError: If the binary is not installed
        """
        logger.info(f"Attempting login to {server_address} as user: {username}")
        args = [
            "login",
            server_address,
            "--username",
            username,
            "--password",
            password,
            *_tls_flags(skip_tls_verify),
        ]
        try:
            self.run(args)
        except CliNotFoundError:
            raise
        except CliError as e:
            logger.error(f"Login failed: {e.message}")
            return False
        logger.info("Login successful")
        return True

    def login_sso(self, server_address: str, skip_tls_verify: bool = False) -> bool:
        """Log in through the browser-based SSO flow.

        Blocks until the CLI reports the browser step finished, then confirms the
        login took effect with the verify command, since the exit code of the
        login command alone does not prove it.

        Raises:
            CliNotFoundError: If the binary is not installed
        """
        logger.info(f"Attempting SSO login to {server_address}")
        try:
            self.run(["login", server_address, "--sso", *_tls_flags(skip_tls_verify)])
        except CliNotFoundError:
            raise
        except CliError as e:
            logger.error(f"SSO login failed: {e.message}")
            return False

        logger.debug("Verifying SSO login")
        try:
            self.run(_split(self.verify_command))
        except CliError as e:
            logger.error(f"SSO login verification failed: {e.message}")
            return False
        logger.info("SSO login successful")
        return True

    def execute_with_token(
        self,
        command: str | list[str],
        server_address: str,
        token: str,
        skip_tls_verify: bool = False,
    ) -> str:
        """Run a command with explicit credentials instead of the logged-in context.

        Nothing is written to the CLI's own configuration, so this can validate a
        token without changing who is logged in.

        Raises:
            CliError: If the command fails
        """
        args = [
            *_split(command),
            "--server",
            server_address,
            "--auth-token",
            token,
            *_tls_flags(skip_tls_verify),
        ]
        return self.run(args)

    def is_authenticated(self) -> bool:
        """Check whether the CLI's current context is logged in."""
        logger.debug("Checking authentication status")
        try:
            output = self.run(["account", "get-user-info"])
        except CliError:
            logger.warning("Authentication check failed - not authenticated")
            return False
        return self._parse_logged_in(output)

    def is_authenticated_with_token(
        self, server_address: str, token: str, skip_tls_verify: bool = False
    ) -> bool:
        """Check whether a token is accepted by the server."""
        logger.debug(f"Checking token authentication against {server_address}")
        try:
            output = self.execute_with_token(
                ["account", "get-user-info"], server_address, token, skip_tls_verify
            )
        except CliError:
            logger.warning("Token authentication check failed - not authenticated")
            return False
        return self._parse_logged_in(output)

    def get_identity(self) -> UserInfo | None:
        """Identity of the logged-in user, or None if it cannot be resolved."""
        logger.debug("Getting user information")
        try:
            output = self.run(["account", "get-user-info", "-o", "json"])
        except CliError:
            logger.warning("Failed to get user info - not authenticated or error occurred")
            return None
        return self._parse_user_info(output)

    def get_identity_with_token(
        self, server_address: str, token: str, skip_tls_verify: bool = False
    ) -> UserInfo | None:
        """Identity behind a token, or None if it cannot be resolved."""
        logger.debug("Getting user information with auth token")
        try:
            output = self.execute_with_token(
                ["account", "get-user-info", "-o", "json"], server_address, token, skip_tls_verify
            )
        except CliError:
            logger.warning("Failed to get user info with auth token")
            return None
        return self._parse_user_info(output)

    def check_connection(self) -> bool:
        """Run the verify command with the current context."""
        try:
            self.run(_split(self.verify_command))
        except CliError:
            logger.warning("Connection check failed")
            return False
        logger.info("Connection check successful")
        return True

    def logout(self, server_address: str | None = None) -> None:
        """Log out of a server, or of the current context.

        Never raises: logging out when already logged out is not an error.
        """
        logger.info(f"Logging out from {server_address or 'current context'}")
        args = ["logout"]
        if server_address:
            args.append(server_address)
        try:
            self.run(args)
        except CliError as e:
            logger.warning(f"Logout command failed (may not have been logged in): {e.message}")
            return
        logger.info("Logout successful")

    @staticmethod
    def _parse_logged_in(output: str) -> bool:
        match = _LOGGED_IN_PATTERN.search(output)
        if match:
            logged_in = match.group(1).lower() == "true"
            logger.info(f"Authentication status: {'Authenticated' if logged_in else 'Not authenticated'}")
            return logged_in
        # The command needs a valid session to succeed at all
        logger.info("Authentication status: Authenticated (assumed from successful command)")
        return True

    @staticmethod
    def _parse_user_info(output: str) -> UserInfo | None:
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse user info JSON: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning("User info output is not a JSON object")
            return None
        try:
            user_info = UserInfo.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Unexpected user info format: {e}")
            return None
        logger.info(f"Retrieved user info for {user_info.username or 'unknown user'}")
        return user_info
