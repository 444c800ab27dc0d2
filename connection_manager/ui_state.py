"""Flags the presentation layer uses to show or hide views."""

from collections.abc import Callable
from dataclasses import dataclass, replace

from connection_manager.gateway import AuthGateway
from connection_manager.lifecycle import ConnectionLifecycleManager, LifecycleTransition
from connection_manager.logging_config import get_logger
from connection_manager.models.session import SessionChangeEvent
from connection_manager.sessions import SessionProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class UIState:
    is_authenticated: bool = False
    is_cli_available: bool = False


UIStateListener = Callable[[UIState], None]


class UIStatePropagator:
    """Keeps ``UIState`` in step with lifecycle transitions and session changes.

    Must be created after the ``SessionProvider`` so that its lifecycle
    listener runs after the provider has refreshed the sessions.
    """

    def __init__(
        self,
        gateway: AuthGateway,
        sessions: SessionProvider,
        lifecycle: ConnectionLifecycleManager,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self._state = UIState()
        self._listeners: list[UIStateListener] = []
        lifecycle.subscribe(self._on_transition)
        sessions.on_sessions_changed(self._on_sessions_changed)

    @property
    def state(self) -> UIState:
        return self._state

    def subscribe(self, listener: UIStateListener) -> Callable[[], None]:
        """Subscribe to flag changes; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def initialize(self) -> UIState:
        """Compute both flags from scratch (at start-up)."""
        cli_available = self.gateway.check_cli()
        authenticated = bool(self.sessions.get_sessions())
        self._update(is_cli_available=cli_available, is_authenticated=authenticated)
        return self._state

    def _on_transition(self, transition: LifecycleTransition) -> None:
        self._update(
            is_cli_available=self.gateway.check_cli(),
            is_authenticated=bool(self.sessions.sessions),
        )

    def _on_sessions_changed(self, event: SessionChangeEvent) -> None:
        self._update(is_authenticated=bool(self.sessions.sessions))

    def _update(self, **flags: bool) -> None:
        new_state = replace(self._state, **flags)
        if new_state == self._state:
            return
        logger.info(
            f"UI state: authenticated={new_state.is_authenticated}, "
            f"cli_available={new_state.is_cli_available}"
        )
        self._state = new_state
        for listener in tuple(self._listeners):
            listener(new_state)
