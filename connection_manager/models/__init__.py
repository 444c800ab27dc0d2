"""Data models for connection profiles and sessions."""

from connection_manager.models.connection import (
    AuthMethod,
    ConnectionInput,
    ConnectionProfile,
    ConnectionRegistry,
    strip_protocol,
)
from connection_manager.models.session import (
    AccountInfo,
    Session,
    SessionChangeEvent,
    UserInfo,
    session_id_for,
)

__all__ = [
    "AccountInfo",
    "AuthMethod",
    "ConnectionInput",
    "ConnectionProfile",
    "ConnectionRegistry",
    "Session",
    "SessionChangeEvent",
    "UserInfo",
    "session_id_for",
    "strip_protocol",
]
