"""Composition root and the API the presentation layer talks to."""

from collections.abc import Callable, Sequence

from connection_manager.config import ManagerConfig
from connection_manager.exceptions import ConnectionManagerError
from connection_manager.gateway import ArgocdCli, AuthGateway
from connection_manager.lifecycle import ConnectionLifecycleManager, OperationOutcome, Prompter
from connection_manager.logging_config import get_logger
from connection_manager.models.connection import ConnectionInput, ConnectionProfile
from connection_manager.models.session import Session
from connection_manager.messages import (
    AddConnectionRequest,
    DeleteConnectionRequest,
    EditConnectionRequest,
    GetSessionsRequest,
    ListConnectionsRequest,
    LogoutRequest,
    RefreshSessionsRequest,
    Response,
    SwitchConnectionRequest,
    parse_request,
)
from connection_manager.sessions import SessionProvider, SessionsListener
from connection_manager.store import ConnectionStore
from connection_manager.ui_state import UIState, UIStatePropagator

logger = get_logger(__name__)


class ConnectionService:
    """Builds the store, gateway, lifecycle manager, session provider and UI
    state for one process, and exposes them as one API."""

    def __init__(
        self,
        config: ManagerConfig | None = None,
        prompter: Prompter | None = None,
        *,
        store: ConnectionStore | None = None,
        gateway: AuthGateway | None = None,
    ):
        self.config = config or ManagerConfig()
        self.store = store or ConnectionStore(self.config.connections_file)
        self.gateway = gateway or ArgocdCli(
            binary=self.config.cli_binary,
            verify_command=self.config.verify_command,
            timeout=self.config.cli_timeout,
        )
        self.lifecycle = ConnectionLifecycleManager(self.store, self.gateway, prompter)
        # Order matters: the UI state reads the sessions the provider refreshed
        self.sessions = SessionProvider(self.store, self.gateway, self.lifecycle)
        self.ui = UIStatePropagator(self.gateway, self.sessions, self.lifecycle)

    def start(self) -> UIState:
        """Check the CLI and compute the initial session and UI flags."""
        logger.debug("Starting connection service")
        return self.ui.initialize()

    def get_active_connection(self) -> ConnectionProfile | None:
        return self.store.get_active()

    def get_all_connections(self) -> list[ConnectionProfile]:
        return self.store.get_all()

    def is_configured(self) -> bool:
        """True if a connection is active."""
        return self.store.has_active_connection()

    @property
    def is_authenticated(self) -> bool:
        return self.ui.state.is_authenticated

    @property
    def is_cli_available(self) -> bool:
        return self.ui.state.is_cli_available

    def add_connection(
        self, connection: ConnectionInput | dict | None = None, password: str | None = None
    ) -> OperationOutcome:
        return self.lifecycle.add_connection(connection, password)

    def switch_connection(
        self, connection_id: str | None = None, password: str | None = None
    ) -> OperationOutcome:
        return self.lifecycle.switch_connection(connection_id, password)

    def edit_connection(
        self, connection_id: str | None = None, name: str | None = None
    ) -> OperationOutcome:
        return self.lifecycle.edit_connection(connection_id, name)

    def delete_connection(
        self, connection_id: str | None = None, confirmed: bool = False
    ) -> OperationOutcome:
        return self.lifecycle.delete_connection(connection_id, confirmed)

    def logout(self, session_id: str | None = None) -> OperationOutcome:
        return self.lifecycle.logout(session_id)

    def get_sessions(
        self, scopes: Sequence[str] | None = None, account_id: str | None = None
    ) -> list[Session]:
        return self.sessions.get_sessions(scopes, account_id)

    def on_sessions_changed(self, listener: SessionsListener) -> Callable[[], None]:
        return self.sessions.on_sessions_changed(listener)

    def dispatch(self, payload) -> Response:
        """Validate and run a request from the presentation layer.

        Errors from the core are turned into a failed ``Response``; invalid
        payloads are reported the same way.
        """
        try:
            request = parse_request(payload)
            return self._dispatch(request)
        except ConnectionManagerError as e:
            action = getattr(payload, "action", None) or (
                payload.get("action") if isinstance(payload, dict) else None
            )
            logger.warning(f"Request {action or 'unknown'} failed: {e.message}")
            return Response(action=str(action or "unknown"), ok=False, message=e.format_message())

    def _dispatch(self, request) -> Response:
        if isinstance(request, AddConnectionRequest):
            return self._from_outcome(self.add_connection(request.connection, request.password))
        if isinstance(request, SwitchConnectionRequest):
            return self._from_outcome(
                self.switch_connection(request.connection_id, request.password)
            )
        if isinstance(request, EditConnectionRequest):
            return self._from_outcome(self.edit_connection(request.connection_id, request.name))
        if isinstance(request, DeleteConnectionRequest):
            return self._from_outcome(
                self.delete_connection(request.connection_id, request.confirmed)
            )
        if isinstance(request, LogoutRequest):
            return self._from_outcome(self.logout(request.session_id))
        if isinstance(request, GetSessionsRequest):
            sessions = self.get_sessions(request.scopes, request.account_id)
            return Response(
                action=request.action,
                ok=True,
                data=[s.model_dump(mode="json", exclude={"access_token"}) for s in sessions],
            )
        if isinstance(request, RefreshSessionsRequest):
            event = self.sessions.refresh_sessions()
            return Response(
                action=request.action,
                ok=True,
                message="Sessions changed" if event else "Sessions unchanged",
            )
        if isinstance(request, ListConnectionsRequest):
            active_id = self.store.active_connection_id
            return Response(
                action=request.action,
                ok=True,
                data=[
                    {**c.model_dump(mode="json", exclude={"api_token"}), "active": c.id == active_id}
                    for c in self.get_all_connections()
                ],
            )
        raise AssertionError(f"Unhandled request type: {type(request).__name__}")

    @staticmethod
    def _from_outcome(outcome: OperationOutcome) -> Response:
        data = None
        if outcome.connection is not None:
            data = outcome.connection.model_dump(mode="json", exclude={"api_token"})
        return Response(
            action=outcome.action,
            ok=outcome.ok,
            message=outcome.message,
            step=outcome.step.value if outcome.step else None,
            cancelled=outcome.cancelled,
            data=data,
        )
