"""Data models for stored connection profiles and the registry that holds them."""

from datetime import datetime
from enum import Enum
from urllib.parse import urlsplit

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class AuthMethod(str, Enum):
    """How a connection authenticates against the Argo CD server."""

    TOKEN = "token"
    USERNAME = "username"
    SSO = "sso"


def strip_protocol(address: str) -> str:
    """Strip the scheme and trailing slash from a server URL.

    ``https://argocd.example.com:8443/`` becomes ``argocd.example.com:8443``; a
    non-root path is kept (``https://host/argocd`` becomes ``host/argocd``).
    """
    address = address.strip()
    if "://" not in address:
        return address.rstrip("/")
    parts = urlsplit(address)
    path = "" if parts.path in ("", "/") else parts.path.rstrip("/")
    return f"{parts.netloc}{path}"


class _ConnectionFields(BaseModel):
    """Fields shared by a new connection request and a stored profile."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    server_address: str = Field(
        validation_alias=AliasChoices("server_address", "serverAddress"),
        serialization_alias="serverAddress",
    )
    auth_method: AuthMethod = Field(
        validation_alias=AliasChoices("auth_method", "authMethod"),
        serialization_alias="authMethod",
    )
    username: str | None = None
    api_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("api_token", "apiToken"),
        serialization_alias="apiToken",
        repr=False,
    )
    skip_tls_verify: bool = Field(
        default=False,
        validation_alias=AliasChoices("skip_tls_verify", "skipTlsVerify", "skipTls"),
        serialization_alias="skipTlsVerify",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the connection name is not blank."""
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("server_address")
    @classmethod
    def validate_server_address(cls, v: str) -> str:
        """Validate the server address and strip any protocol prefix."""
        v = strip_protocol(v)
        if not v:
            raise ValueError("server_address cannot be empty")
        if any(c.isspace() for c in v):
            raise ValueError(f"server_address '{v}' cannot contain whitespace")
        return v

    @field_validator("username", "api_token")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        """Treat blank credentials as absent."""
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_credentials(self):
        """Validate the credentials present match the auth method."""
        if self.auth_method is AuthMethod.USERNAME:
            if not self.username:
                raise ValueError("username is required for username authentication")
            if self.api_token:
                raise ValueError("api_token must not be set for username authentication")
        elif self.auth_method is AuthMethod.TOKEN:
            if not self.api_token:
                raise ValueError("api_token is required for token authentication")
            if self.username:
                raise ValueError("username must not be set for token authentication")
        elif self.username or self.api_token:
            raise ValueError("sso authentication takes no username or api_token")
        return self

    @property
    def server_url(self) -> str:
        """Server address with an https:// prefix, for display and browsers."""
        if self.server_address.startswith("http"):
            return self.server_address
        return f"https://{self.server_address}"


class ConnectionInput(_ConnectionFields):
    """A connection as entered by the user, before it is stored."""


class ConnectionProfile(_ConnectionFields):
    """A named, stored connection with its credential configuration."""

    id: str
    created_at: datetime = Field(
        validation_alias=AliasChoices("created_at", "createdAt"),
        serialization_alias="createdAt",
    )
    last_used_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_used_at", "lastUsedAt", "lastUsed"),
        serialization_alias="lastUsedAt",
    )

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate the id is not empty."""
        if not v:
            raise ValueError("id cannot be empty")
        return v

    def to_storage_dict(self) -> dict:
        """Convert to the persisted file format."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ConnectionRegistry(BaseModel):
    """All stored connections plus the id of the active one."""

    model_config = ConfigDict(populate_by_name=True)

    active_connection_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("active_connection_id", "activeConnectionId"),
        serialization_alias="activeConnectionId",
    )
    connections: list[ConnectionProfile] = Field(default_factory=list)

    def find(self, connection_id: str) -> ConnectionProfile | None:
        """Return the profile with the given id, if any."""
        return next((c for c in self.connections if c.id == connection_id), None)

    def index_of(self, connection_id: str) -> int:
        """Return the position of the profile with the given id, or -1."""
        for index, connection in enumerate(self.connections):
            if connection.id == connection_id:
                return index
        return -1

    @property
    def active(self) -> ConnectionProfile | None:
        if self.active_connection_id is None:
            return None
        return self.find(self.active_connection_id)

    def to_storage_dict(self) -> dict:
        """Convert to the persisted file format."""
        data: dict = {}
        if self.active_connection_id is not None:
            data["activeConnectionId"] = self.active_connection_id
        data["connections"] = [c.to_storage_dict() for c in self.connections]
        return data
