"""Durable registry of connection profiles.

The registry lives in a single YAML file that is rewritten in full after every
mutation, using ruamel.yaml. Writes go through a temporary file and an atomic
rename, and the in-memory registry is only replaced once the write succeeded,
so a failed write leaves both the file and memory in their last good state.
"""

import os
import secrets
import shutil
import string
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from connection_manager.exceptions import NotFoundError, StorageError, ValidationError
from connection_manager.logging_config import get_logger
from connection_manager.models.connection import (
    ConnectionInput,
    ConnectionProfile,
    ConnectionRegistry,
)

logger = get_logger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
_IMMUTABLE_FIELDS = {"id", "created_at"}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class ConnectionStore:
    """File-backed store of connection profiles and the active connection."""

    def __init__(self, path: str | Path):
        """Initialize the store and load the registry file.

        Args:
            path: Path to the registry file; it need not exist yet

        Raises:
            StorageError: If the file exists but cannot be read or parsed
        """
        self.path = Path(path).expanduser()
        self.yaml = YAML()
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=4, offset=2)
        self._lock = threading.RLock()
        self._registry = ConnectionRegistry()
        self.load()

    def load(self) -> None:
        """(Re)load the registry from disk.

        An absent or empty file is an empty registry. An active id that points at
        no profile is dropped.

        Raises:
            StorageError: If the file cannot be read or does not hold a registry
        """
        with self._lock:
            if not self.path.exists():
                logger.debug(f"No connections file at {self.path}, starting fresh")
                self._registry = ConnectionRegistry()
                return

            try:
                with open(self.path) as f:
                    data = self.yaml.load(f)
            except (OSError, YAMLError) as e:
                logger.error(f"Failed to read connections file: {e}")
                raise StorageError(
                    f"Failed to read connections file: {self.path}",
                    f"{e}\n\nThe file may be corrupted. A copy of the previous version "
                    f"may exist at {self._backup_path()}",
                )

            if data is None:
                self._registry = ConnectionRegistry()
                return

            try:
                registry = ConnectionRegistry.model_validate(data)
            except PydanticValidationError as e:
                logger.error(f"Connections file has invalid content: {e}")
                raise StorageError(
                    f"Connections file has invalid content: {self.path}",
                    str(e),
                )

            if registry.active_connection_id and registry.active is None:
                logger.warning(
                    f"Active connection '{registry.active_connection_id}' does not exist, clearing it"
                )
                registry.active_connection_id = None

            self._registry = registry
            logger.debug(f"Loaded {len(registry.connections)} connection(s) from {self.path}")

    def add(self, connection: ConnectionInput) -> ConnectionProfile:
        """Store a new connection.

        The first connection added to an empty registry becomes active.

        Args:
            connection: The connection to store

        Returns:
            The stored profile with its generated id and creation time

        Raises:
            StorageError: If the registry cannot be written
        """
        with self._lock:
            registry = self._registry.model_copy(deep=True)
            profile = ConnectionProfile(
                **connection.model_dump(),
                id=self._generate_id(registry),
                created_at=_now(),
            )
            registry.connections.append(profile)
            if len(registry.connections) == 1:
                registry.active_connection_id = profile.id

            self._commit(registry)
            logger.info(f'Added connection "{profile.name}"')
            return profile.model_copy()

    def update(self, connection_id: str, **fields) -> ConnectionProfile:
        """Merge fields into an existing profile.

        Args:
            connection_id: Id of the profile to update
            **fields: Profile fields to replace, by field name (``id`` and
                ``created_at`` excluded)

        Returns:
            The updated profile

        Raises:
            NotFoundError: If no profile has this id
            ValidationError: If a field is unknown or the merged profile is invalid
            StorageError: If the registry cannot be written
        """
        immutable = _IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ValidationError(f"Cannot change {', '.join(sorted(immutable))} of a connection")
        unknown = set(fields).difference(ConnectionProfile.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown connection field(s): {', '.join(sorted(unknown))}",
                f"Use one of: {', '.join(sorted(set(ConnectionProfile.model_fields) - _IMMUTABLE_FIELDS))}",
            )

        with self._lock:
            registry = self._registry.model_copy(deep=True)
            index = registry.index_of(connection_id)
            if index == -1:
                raise NotFoundError(f"Connection with id {connection_id} not found")

            merged = {**registry.connections[index].model_dump(), **fields}
            try:
                profile = ConnectionProfile.model_validate(merged)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid update for connection {connection_id}", str(e))
            registry.connections[index] = profile

            self._commit(registry)
            logger.info(f'Updated connection "{profile.name}"')
            return profile.model_copy()

    def delete(self, connection_id: str) -> None:
        """Remove a profile.

        If it was active, the first remaining profile becomes active, or no
        profile is active when none remain.

        Raises:
            NotFoundError: If no profile has this id
            StorageError: If the registry cannot be written
        """
        with self._lock:
            registry = self._registry.model_copy(deep=True)
            index = registry.index_of(connection_id)
            if index == -1:
                raise NotFoundError(f"Connection with id {connection_id} not found")

            removed = registry.connections.pop(index)
            if registry.active_connection_id == connection_id:
                registry.active_connection_id = (
                    registry.connections[0].id if registry.connections else None
                )

            self._commit(registry)
            logger.info(f'Deleted connection "{removed.name}"')

    def set_active(self, connection_id: str) -> ConnectionProfile:
        """Make a profile the active one and record when it was last used.

        Raises:
            NotFoundError: If no profile has this id
            StorageError: If the registry cannot be written
        """
        with self._lock:
            registry = self._registry.model_copy(deep=True)
            profile = registry.find(connection_id)
            if profile is None:
                raise NotFoundError(f"Connection with id {connection_id} not found")

            registry.active_connection_id = connection_id
            profile.last_used_at = _now()

            self._commit(registry)
            logger.info(f'Activated connection "{profile.name}"')
            return profile.model_copy()

    def clear_active(self) -> None:
        """Clear the active connection. Safe to call when none is active."""
        with self._lock:
            registry = self._registry.model_copy(deep=True)
            registry.active_connection_id = None
            self._commit(registry)
            logger.info("Cleared active connection")

    def get_active(self) -> ConnectionProfile | None:
        with self._lock:
            active = self._registry.active
            return active.model_copy() if active else None

    def get_all(self) -> list[ConnectionProfile]:
        """Return a snapshot of all profiles in insertion order."""
        with self._lock:
            return [c.model_copy() for c in self._registry.connections]

    def get(self, connection_id: str) -> ConnectionProfile | None:
        with self._lock:
            profile = self._registry.find(connection_id)
            return profile.model_copy() if profile else None

    @property
    def active_connection_id(self) -> str | None:
        with self._lock:
            return self._registry.active_connection_id

    def has_connections(self) -> bool:
        with self._lock:
            return bool(self._registry.connections)

    def has_active_connection(self) -> bool:
        with self._lock:
            return self._registry.active is not None

    def _commit(self, registry: ConnectionRegistry) -> None:
        """Write the registry to disk, then make it the in-memory registry."""
        self._write(registry)
        self._registry = registry

    def _write(self, registry: ConnectionRegistry) -> None:
        logger.debug(f"Writing connections file: {self.path}")
        temp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            if self.path.exists():
                shutil.copy2(self.path, self._backup_path())

            fd, temp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w") as f:
                self.yaml.dump(registry.to_storage_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self.path)
            temp_name = None
            logger.debug(f"Connections saved ({len(registry.connections)} total)")

        except PermissionError as e:
            logger.error(f"Permission denied writing connections file: {e}")
            raise StorageError(
                f"Permission denied writing connections file: {self.path}",
                "Check file permissions or choose another location with ARGOCD_CONNECTIONS_FILE",
            )
        except OSError as e:
            logger.error(f"OS error writing connections file: {e}")
            raise StorageError(
                f"Failed to write connections file: {e}",
                "Check disk space and file system permissions",
            )
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    logger.debug(f"Could not remove temporary file {temp_name}")

    def _backup_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".backup")

    @staticmethod
    def _generate_id(registry: ConnectionRegistry) -> str:
        while True:
            suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
            candidate = f"conn_{int(time.time() * 1000)}_{suffix}"
            if registry.find(candidate) is None:
                return candidate
