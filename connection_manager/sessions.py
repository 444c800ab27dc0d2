"""Session provider: who, if anyone, is logged in through the active connection.

Sessions are never cached for answering queries. Every query asks the CLI
again, because the login lives in the CLI's own state and can change outside
this process. The last computed sessions are kept only to work out what
changed for subscribers.
"""

import threading
from collections.abc import Callable, Sequence

from connection_manager.exceptions import AuthenticationError, NotFoundError
from connection_manager.gateway import AuthGateway
from connection_manager.lifecycle import ConnectionLifecycleManager, LifecycleTransition
from connection_manager.logging_config import get_logger
from connection_manager.models.connection import AuthMethod, ConnectionProfile
from connection_manager.models.session import AccountInfo, Session, SessionChangeEvent, UserInfo
from connection_manager.store import ConnectionStore

logger = get_logger(__name__)

SessionsListener = Callable[[SessionChangeEvent], None]


class SessionProvider:
    """Derives the session of the active connection and reports changes."""

    def __init__(
        self,
        store: ConnectionStore,
        gateway: AuthGateway,
        lifecycle: ConnectionLifecycleManager,
    ):
        self.store = store
        self.gateway = gateway
        self.lifecycle = lifecycle
        self._sessions: tuple[Session, ...] = ()
        self._listeners: list[SessionsListener] = []
        self._lock = threading.RLock()
        self._unsubscribe_lifecycle = lifecycle.subscribe(self._on_transition)

    @property
    def sessions(self) -> tuple[Session, ...]:
        """Sessions as of the last refresh (for display; not a fresh check)."""
        return self._sessions

    def on_sessions_changed(self, listener: SessionsListener) -> Callable[[], None]:
        """Subscribe to session change events; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def get_sessions(
        self, scopes: Sequence[str] | None = None, account_id: str | None = None
    ) -> list[Session]:
        """Check the CLI and return the current sessions (zero or one).

        Args:
            scopes: Keep sessions holding at least one of these scopes
            account_id: Keep the session of this account; takes precedence
                over scopes
        """
        self.refresh_sessions()
        sessions = list(self._sessions)
        if account_id is not None:
            return [s for s in sessions if s.account_id == account_id]
        if scopes:
            return [s for s in sessions if s.matches_scopes(scopes)]
        return sessions

    def get_active_session(self) -> Session | None:
        sessions = self.get_sessions()
        return sessions[0] if sessions else None

    def create_session(self, scopes: Sequence[str] | None = None) -> Session:
        """Run the interactive add-connection flow and return the new session.

        Raises:
            AuthenticationError: If the user cancels or authentication fails
        """
        logger.info("Creating new session")
        outcome = self.lifecycle.add_connection()
        if outcome.cancelled:
            logger.warning("Session creation cancelled by user")
            raise AuthenticationError("Argo CD configuration was cancelled")
        if not outcome.authenticated:
            raise AuthenticationError("Failed to authenticate with Argo CD", outcome.message)

        session = self.get_active_session()
        if session is None:
            raise AuthenticationError(
                "Failed to authenticate with Argo CD",
                "Login succeeded but the CLI does not report an authenticated session",
            )
        if scopes and not session.matches_scopes(scopes):
            logger.debug(f"New session does not hold requested scopes: {', '.join(scopes)}")
        return session

    def remove_session(self, session_id: str) -> None:
        """Log out of the session's connection and clear the active connection.

        Raises:
            NotFoundError: If session_id is not the current session
        """
        logger.info(f"Removing session {session_id}")
        if not any(s.id == session_id for s in self.get_sessions()):
            logger.warning(f"Session {session_id} not found")
            raise NotFoundError(f"Session {session_id} not found")
        self.lifecycle.logout(session_id)

    def refresh_sessions(self) -> SessionChangeEvent | None:
        """Recompute the sessions and notify subscribers if they changed.

        Returns:
            The change event, or None when nothing changed
        """
        with self._lock:
            previous = self._sessions
            current = self._compute_sessions()
            self._sessions = current
            event = self._diff(previous, current)

        if event is None:
            logger.debug("Sessions unchanged")
            return None

        logger.info(
            f"Sessions updated (added: {len(event.added)}, removed: {len(event.removed)}, "
            f"changed: {len(event.changed)})"
        )
        for listener in tuple(self._listeners):
            listener(event)
        return event

    def get_account_info(self) -> AccountInfo | None:
        """Details of the active connection's account, or None without one."""
        active = self.store.get_active()
        if active is None:
            return None
        user_info = self._resolve_identity(active)
        session = Session.from_profile(active, user_info)
        return AccountInfo(
            server_url=active.server_url,
            auth_method=active.auth_method.value.upper(),
            account_label=session.account_label,
            skip_tls_verify=active.skip_tls_verify,
            user_info=user_info,
        )

    def close(self) -> None:
        """Stop following lifecycle transitions."""
        self._unsubscribe_lifecycle()

    def _on_transition(self, transition: LifecycleTransition) -> None:
        self.refresh_sessions()

    def _compute_sessions(self) -> tuple[Session, ...]:
        active = self.store.get_active()
        if active is None:
            logger.debug("No active connection found")
            return ()
        if not self.lifecycle.is_authenticated(active):
            logger.debug("No authenticated session found")
            return ()
        session = Session.from_profile(active, self._resolve_identity(active))
        logger.debug(f"Loaded session for {session.account_label}")
        return (session,)

    def _resolve_identity(self, profile: ConnectionProfile) -> UserInfo | None:
        if profile.auth_method is AuthMethod.TOKEN:
            return self.gateway.get_identity_with_token(
                profile.server_address, profile.api_token, profile.skip_tls_verify
            )
        return self.gateway.get_identity()

    @staticmethod
    def _diff(
        previous: tuple[Session, ...], current: tuple[Session, ...]
    ) -> SessionChangeEvent | None:
        if previous == current:
            return None
        if (
            len(previous) == len(current) == 1
            and previous[0].id == current[0].id
            and previous[0].account_id == current[0].account_id
        ):
            # Same account, different scopes or token
            return SessionChangeEvent(changed=current)
        return SessionChangeEvent(added=current, removed=previous)
