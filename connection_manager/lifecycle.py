"""Connection lifecycle: add, switch, edit, delete and logout.

Each intent mutates the connection store and drives the CLI gateway to log in
or out, then tells subscribers what changed. Interactive input (connection
details, passwords, pick lists, confirmations) comes from a ``Prompter``
supplied by the front end; a cancelled prompt ends the intent before the store
is touched.
"""

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from connection_manager.exceptions import (
    CliError,
    CliNotFoundError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from connection_manager.gateway import AuthGateway
from connection_manager.logging_config import get_logger
from connection_manager.models.connection import AuthMethod, ConnectionInput, ConnectionProfile
from connection_manager.models.session import session_id_for
from connection_manager.store import ConnectionStore

logger = get_logger(__name__)


class LifecycleState(str, Enum):
    """Where the registry and the external login stand."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED_INACTIVE = "configured-inactive"
    ACTIVE_UNAUTHENTICATED = "active-unauthenticated"
    ACTIVE_AUTHENTICATED = "active-authenticated"


class Step(str, Enum):
    """The step of an intent that failed."""

    STORE = "store"
    AUTHENTICATE = "authenticate"
    CLI = "cli"


@dataclass(frozen=True)
class LifecycleTransition:
    """A committed change to the connections, sent to subscribers."""

    kind: str  # added, switched, edited, deleted, logged_out
    connection_id: str
    authenticated: bool | None = None


@dataclass(frozen=True)
class OperationOutcome:
    """Result of a lifecycle intent, worded for the user."""

    action: str
    ok: bool
    message: str
    connection: ConnectionProfile | None = None
    authenticated: bool | None = None
    step: Step | None = None
    cancelled: bool = False

    @classmethod
    def cancel(cls, action: str, message: str = "Operation cancelled") -> "OperationOutcome":
        return cls(action=action, ok=False, message=message, cancelled=True)


TransitionListener = Callable[[LifecycleTransition], None]


@runtime_checkable
class Prompter(Protocol):
    """Interactive input supplied by the front end. Each method returns None
    (or False) when the user cancels."""

    def collect_connection(self) -> ConnectionInput | None:
        """Ask for the details of a new connection."""

    def ask_password(self, profile: ConnectionInput) -> str | None:
        """Ask for the password of a username/password connection."""

    def pick_connection(
        self, profiles: Sequence[ConnectionProfile], purpose: str, active_id: str | None
    ) -> ConnectionProfile | None:
        """Let the user choose a connection for the given purpose."""

    def ask_name(self, profile: ConnectionProfile) -> str | None:
        """Ask for a new name for a connection."""

    def confirm(self, message: str) -> bool:
        """Ask the user to confirm a destructive action."""


class ConnectionLifecycleManager:
    """Drives connection intents against the store and the CLI gateway."""

    def __init__(
        self,
        store: ConnectionStore,
        gateway: AuthGateway,
        prompter: Prompter | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.prompter = prompter
        self._listeners: list[TransitionListener] = []
        # One intent at a time: a switch must log out, activate and log in
        # without another intent running in between
        self._intent_lock = threading.RLock()

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """Subscribe to committed transitions; returns an unsubscribe handle.

        Listeners are called in subscription order.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def add_connection(
        self, connection_input: ConnectionInput | dict | None = None, password: str | None = None
    ) -> OperationOutcome:
        """Store a new connection and log in with it.

        The connection is stored even when authentication fails so the user can
        fix the credentials later. After a successful login the new connection
        becomes the active one.

        Args:
            connection_input: Connection details; asked from the prompter when None
            password: Password for username connections; asked when None

        Raises:
            ValidationError: If the details are invalid or input is needed and
                there is no prompter
        """
        with self._intent_lock:
            if connection_input is None:
                connection_input = self._require_prompter("connection details").collect_connection()
                if connection_input is None:
                    logger.debug("User cancelled configuration")
                    return OperationOutcome.cancel("add_connection")
            connection_input = self._validate_input(connection_input)

            if connection_input.auth_method is AuthMethod.USERNAME and password is None:
                password = self._require_prompter("a password").ask_password(connection_input)
                if password is None:
                    logger.debug("User cancelled password prompt")
                    return OperationOutcome.cancel("add_connection")

            authenticated, step, failure = self._authenticate(connection_input, password)

            try:
                profile = self.store.add(connection_input)
            except StorageError as e:
                return self._store_failure("add_connection", e, authenticated)

            if authenticated and self.store.active_connection_id != profile.id:
                try:
                    profile = self.store.set_active(profile.id)
                except StorageError as e:
                    self._notify(LifecycleTransition("added", profile.id, authenticated))
                    return self._store_failure("add_connection", e, authenticated, profile)

            self._notify(LifecycleTransition("added", profile.id, authenticated))

            if authenticated:
                message = f'Connection "{profile.name}" added and authenticated'
            else:
                message = (
                    f'Connection "{profile.name}" saved, but authentication failed: {failure}'
                )
            return OperationOutcome(
                action="add_connection",
                ok=authenticated,
                message=message,
                connection=profile,
                authenticated=authenticated,
                step=step,
            )

    def switch_connection(
        self, target_id: str | None = None, password: str | None = None
    ) -> OperationOutcome:
        """Make another connection active and log in with it.

        Logs out of the current server first, then activates the target, then
        authenticates. If authentication fails the target stays active, so the
        user can fix its credentials; the previous connection is not restored.
        A failed write of the active pointer is reported as the store step.

        Raises:
            NotFoundError: If no connection has the given id
        """
        with self._intent_lock:
            profiles = self.store.get_all()
            if not profiles:
                return OperationOutcome(
                    action="switch_connection",
                    ok=False,
                    message="No connections available. Please add a connection first.",
                )

            previous = self.store.get_active()
            if target_id is None:
                target = self._require_prompter("a connection choice").pick_connection(
                    profiles, "switch", previous.id if previous else None
                )
                if target is None:
                    return OperationOutcome.cancel("switch_connection")
            else:
                target = self._get_or_raise(target_id)

            if target.auth_method is AuthMethod.USERNAME and password is None:
                password = self._require_prompter("a password").ask_password(target)
                if password is None:
                    return OperationOutcome.cancel("switch_connection")

            if previous is not None:
                self._logout_quietly(previous.server_address)

            try:
                target = self.store.set_active(target.id)
            except StorageError as e:
                return self._store_failure("switch_connection", e, connection=target)
            authenticated, step, failure = self._authenticate(target, password)

            self._notify(LifecycleTransition("switched", target.id, authenticated))

            if authenticated:
                message = f"Switched to connection: {target.name}"
            else:
                message = f'Switched to "{target.name}", but authentication failed: {failure}'
            return OperationOutcome(
                action="switch_connection",
                ok=authenticated,
                message=message,
                connection=target,
                authenticated=authenticated,
                step=step,
            )

    def edit_connection(
        self, connection_id: str | None = None, new_name: str | None = None
    ) -> OperationOutcome:
        """Rename a connection. Authentication state is untouched.

        Raises:
            NotFoundError: If no connection has the given id
            ValidationError: If the new name is blank
        """
        with self._intent_lock:
            profile = self._resolve_target(connection_id, "edit")
            if profile is None:
                return self._no_target_outcome("edit_connection")

            if new_name is None:
                new_name = self._require_prompter("a new name").ask_name(profile)
                if new_name is None:
                    return OperationOutcome.cancel("edit_connection")

            if new_name.strip() == profile.name:
                return OperationOutcome(
                    action="edit_connection",
                    ok=True,
                    message=f'Connection name unchanged: "{profile.name}"',
                    connection=profile,
                )

            try:
                updated = self.store.update(profile.id, name=new_name)
            except StorageError as e:
                return self._store_failure("edit_connection", e, connection=profile)
            self._notify(LifecycleTransition("edited", updated.id))
            return OperationOutcome(
                action="edit_connection",
                ok=True,
                message=f"Connection renamed to: {updated.name}",
                connection=updated,
            )

    def delete_connection(
        self, connection_id: str | None = None, confirmed: bool = False
    ) -> OperationOutcome:
        """Delete a connection after confirmation. Does not log out of the CLI.

        Raises:
            NotFoundError: If no connection has the given id
            ValidationError: If confirmation is needed and there is no prompter
        """
        with self._intent_lock:
            profile = self._resolve_target(connection_id, "delete")
            if profile is None:
                return self._no_target_outcome("delete_connection")

            if not confirmed:
                confirmed = self._require_prompter("confirmation").confirm(
                    f'Are you sure you want to delete connection "{profile.name}"?'
                )
                if not confirmed:
                    return OperationOutcome.cancel("delete_connection")

            try:
                self.store.delete(profile.id)
            except StorageError as e:
                return self._store_failure("delete_connection", e, connection=profile)
            self._notify(LifecycleTransition("deleted", profile.id))
            return OperationOutcome(
                action="delete_connection",
                ok=True,
                message=f"Connection deleted: {profile.name}",
                connection=profile,
            )

    def logout(self, session_id: str | None = None) -> OperationOutcome:
        """Log out of the active connection and clear the active pointer.

        The CLI logout is best effort; the active connection is cleared even
        when it fails.

        Args:
            session_id: Session to end; must belong to the active connection

        Raises:
            NotFoundError: If session_id does not belong to the active connection
        """
        with self._intent_lock:
            active = self.store.get_active()
            if active is None:
                if session_id is not None:
                    raise NotFoundError(f"Session {session_id} not found")
                return OperationOutcome(
                    action="logout", ok=False, message="No active Argo CD session to logout from"
                )
            if session_id is not None and session_id != session_id_for(active):
                raise NotFoundError(
                    f"Session {session_id} not found",
                    f"The active session is {session_id_for(active)}",
                )

            self._logout_quietly(active.server_address)
            try:
                self.store.clear_active()
            except StorageError as e:
                return self._store_failure("logout", e, connection=active)
            self._notify(LifecycleTransition("logged_out", active.id, False))
            return OperationOutcome(
                action="logout",
                ok=True,
                message=f"Signed out from {active.server_address}",
                connection=active,
                authenticated=False,
            )

    def is_authenticated(self, profile: ConnectionProfile | None = None) -> bool:
        """Ask the CLI whether a profile (default: the active one) is logged in.

        Token profiles are checked with their own token; the others with the
        CLI's logged-in context.
        """
        if profile is None:
            profile = self.store.get_active()
            if profile is None:
                return False
        if profile.auth_method is AuthMethod.TOKEN:
            return self.gateway.is_authenticated_with_token(
                profile.server_address, profile.api_token, profile.skip_tls_verify
            )
        return self.gateway.is_authenticated()

    def current_state(self) -> LifecycleState:
        """Compute the lifecycle state from the store and a fresh CLI check."""
        if not self.store.has_connections():
            return LifecycleState.UNCONFIGURED
        active = self.store.get_active()
        if active is None:
            return LifecycleState.CONFIGURED_INACTIVE
        if self.is_authenticated(active):
            return LifecycleState.ACTIVE_AUTHENTICATED
        return LifecycleState.ACTIVE_UNAUTHENTICATED

    def _authenticate(
        self, profile: ConnectionInput | ConnectionProfile, password: str | None
    ) -> tuple[bool, Step | None, str]:
        """Log in with a profile's auth method.

        Returns:
            (authenticated, failed step, failure message)
        """
        try:
            if profile.auth_method is AuthMethod.USERNAME:
                ok = self.gateway.login(
                    profile.server_address, profile.username, password or "", profile.skip_tls_verify
                )
                failure = "Failed to authenticate. Please check your credentials."
            elif profile.auth_method is AuthMethod.TOKEN:
                ok, failure = self._verify_token(profile)
            else:
                ok = self.gateway.login_sso(profile.server_address, profile.skip_tls_verify)
                failure = "SSO authentication was not completed successfully. Please try again."
        except CliNotFoundError as e:
            logger.error(f"Cannot authenticate: {e.message}")
            return False, Step.CLI, e.message

        if ok:
            logger.info(f"Authenticated to {profile.server_address}")
            return True, None, ""
        logger.warning(f"Authentication to {profile.server_address} failed")
        return False, Step.AUTHENTICATE, failure

    def _verify_token(self, profile: ConnectionInput | ConnectionProfile) -> tuple[bool, str]:
        try:
            self.gateway.execute_with_token(
                self.gateway.verify_command,
                profile.server_address,
                profile.api_token,
                profile.skip_tls_verify,
            )
        except CliNotFoundError:
            raise
        except CliError as e:
            logger.warning(f"Token verification failed: {e.message}")
            return False, f"Failed to connect with API token: {e.stderr or e.message}"
        return True, ""

    def _resolve_target(self, connection_id: str | None, purpose: str) -> ConnectionProfile | None:
        if connection_id is not None:
            return self._get_or_raise(connection_id)
        profiles = self.store.get_all()
        if not profiles:
            return None
        return self._require_prompter("a connection choice").pick_connection(
            profiles, purpose, self.store.active_connection_id
        )

    def _logout_quietly(self, server_address: str) -> None:
        try:
            self.gateway.logout(server_address)
        except CliError as e:
            logger.warning(f"Logout from {server_address} failed: {e.message}")

    @staticmethod
    def _store_failure(
        action: str,
        error: StorageError,
        authenticated: bool | None = None,
        connection: ConnectionProfile | None = None,
    ) -> OperationOutcome:
        logger.error(f"{action} failed at the store step: {error.message}")
        return OperationOutcome(
            action=action,
            ok=False,
            message=error.message,
            connection=connection,
            authenticated=authenticated,
            step=Step.STORE,
        )

    def _no_target_outcome(self, action: str) -> OperationOutcome:
        if not self.store.has_connections():
            return OperationOutcome(action=action, ok=False, message="No connections available.")
        return OperationOutcome.cancel(action)

    def _get_or_raise(self, connection_id: str) -> ConnectionProfile:
        profile = self.store.get(connection_id)
        if profile is None:
            raise NotFoundError(f"Connection with id {connection_id} not found")
        return profile

    def _require_prompter(self, what: str) -> Prompter:
        if self.prompter is None:
            raise ValidationError(
                f"This operation needs {what}, but no interactive prompter is configured",
                "Pass the value explicitly",
            )
        return self.prompter

    @staticmethod
    def _validate_input(connection_input: ConnectionInput | dict) -> ConnectionInput:
        if isinstance(connection_input, ConnectionInput):
            return connection_input
        try:
            return ConnectionInput.model_validate(connection_input)
        except PydanticValidationError as e:
            raise ValidationError("Invalid connection details", str(e))

    def _notify(self, transition: LifecycleTransition) -> None:
        logger.debug(f"Lifecycle transition: {transition.kind} ({transition.connection_id})")
        for listener in tuple(self._listeners):
            listener(transition)
