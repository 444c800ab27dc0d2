"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from connection_manager.config import ManagerConfig
from connection_manager.exceptions import CliError, CliNotFoundError
from connection_manager.lifecycle import ConnectionLifecycleManager
from connection_manager.models.connection import AuthMethod, ConnectionInput
from connection_manager.models.session import UserInfo
from connection_manager.service import ConnectionService
from connection_manager.store import ConnectionStore

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


class FakeGateway:
    """In-memory stand-in for the argocd CLI.

    Keeps a single logged-in context like the real CLI does, and records every
    call in ``calls``.
    """

    verify_command = "cluster list"

    def __init__(self):
        self.cli_available = True
        self.valid_passwords = {"admin": "secret"}
        self.valid_tokens = {"tok-123"}
        self.sso_succeeds = True
        self.logged_in = False
        self.logged_in_server = None
        self.identity = None
        self.token_identity = None
        self.calls = []

    def _require_cli(self):
        if not self.cli_available:
            raise CliNotFoundError("argocd is not installed or not in PATH")

    def check_cli(self):
        self.calls.append(("check_cli",))
        return self.cli_available

    def login(self, server_address, username, password, skip_tls_verify=False):
        self.calls.append(("login", server_address, username))
        self._require_cli()
        if self.valid_passwords.get(username) != password:
            return False
        self.logged_in = True
        self.logged_in_server = server_address
        return True

    def login_sso(self, server_address, skip_tls_verify=False):
        self.calls.append(("login_sso", server_address))
        self._require_cli()
        if not self.sso_succeeds:
            return False
        self.logged_in = True
        self.logged_in_server = server_address
        return True

    def execute_with_token(self, command, server_address, token, skip_tls_verify=False):
        self.calls.append(("execute_with_token", command, server_address))
        self._require_cli()
        if token not in self.valid_tokens:
            raise CliError(
                "argocd command failed with exit code 1",
                stderr="rpc error: code = Unauthenticated",
                exit_code=1,
            )
        return ""

    def is_authenticated(self):
        self.calls.append(("is_authenticated",))
        return self.cli_available and self.logged_in

    def is_authenticated_with_token(self, server_address, token, skip_tls_verify=False):
        self.calls.append(("is_authenticated_with_token", server_address))
        return self.cli_available and token in self.valid_tokens

    def get_identity(self):
        self.calls.append(("get_identity",))
        return self.identity if self.logged_in else None

    def get_identity_with_token(self, server_address, token, skip_tls_verify=False):
        self.calls.append(("get_identity_with_token", server_address))
        return self.token_identity if token in self.valid_tokens else None

    def logout(self, server_address=None):
        self.calls.append(("logout", server_address))
        self.logged_in = False
        self.logged_in_server = None

    def call_names(self):
        return [call[0] for call in self.calls]


class ScriptedPrompter:
    """Prompter that answers from preset values and records the questions asked.

    ``None`` answers behave like a cancelled prompt.
    """

    def __init__(self, connection=None, password=None, pick=None, name=None, confirm=True):
        self.connection = connection
        self.password = password
        self.pick = pick
        self.name = name
        self.confirm_answer = confirm
        self.asked = []

    def collect_connection(self):
        self.asked.append("connection")
        return self.connection

    def ask_password(self, profile):
        self.asked.append("password")
        return self.password

    def pick_connection(self, profiles, purpose, active_id):
        self.asked.append(f"pick:{purpose}")
        if self.pick is None:
            return None
        return next((p for p in profiles if p.id == self.pick or p.name == self.pick), None)

    def ask_name(self, profile):
        self.asked.append("name")
        return self.name

    def confirm(self, message):
        self.asked.append("confirm")
        return self.confirm_answer


def username_input(name="Production", server="https://argocd.example.com", username="admin"):
    return ConnectionInput(
        name=name, server_address=server, auth_method=AuthMethod.USERNAME, username=username
    )


def token_input(name="CI", server="argocd.ci.example.com", token="tok-123"):
    return ConnectionInput(
        name=name, server_address=server, auth_method=AuthMethod.TOKEN, api_token=token
    )


def sso_input(name="Corp", server="argocd.corp.example.com"):
    return ConnectionInput(name=name, server_address=server, auth_method=AuthMethod.SSO)


@pytest.fixture
def registry_path(tmp_path):
    """Path of a connections file that does not exist yet."""
    return tmp_path / "argocd" / "connections.yml"


@pytest.fixture
def store(registry_path):
    return ConnectionStore(registry_path)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def prompter():
    return ScriptedPrompter()


@pytest.fixture
def lifecycle(store, gateway, prompter):
    return ConnectionLifecycleManager(store, gateway, prompter)


@pytest.fixture
def service(registry_path, store, gateway, prompter):
    config = ManagerConfig(connections_file=registry_path)
    return ConnectionService(config, prompter, store=store, gateway=gateway)


@pytest.fixture
def admin_identity():
    return UserInfo(
        logged_in=True,
        username="admin",
        iss="argocd",
        groups=["platform-team"],
    )


@pytest.fixture
def sample_registry_data():
    """Registry file content as written by an earlier version of the tool."""
    return {
        "activeConnectionId": "conn_1700000000000_b2c3d4e",
        "connections": [
            {
                "id": "conn_1700000000000_a1b2c3d",
                "name": "Staging",
                "serverAddress": "argocd.staging.example.com",
                "authMethod": "username",
                "username": "admin",
                "skipTlsVerify": True,
                "createdAt": "2023-11-14T22:13:20Z",
            },
            {
                "id": "conn_1700000000000_b2c3d4e",
                "name": "CI",
                "serverAddress": "argocd.ci.example.com",
                "authMethod": "token",
                "apiToken": "tok-123",
                "createdAt": "2023-11-14T22:13:20Z",
                "lastUsed": "2023-11-15T08:00:00Z",
            },
        ],
    }
