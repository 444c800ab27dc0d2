"""Data models for the derived authentication session."""

from dataclasses import dataclass

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from connection_manager.models.connection import AuthMethod, ConnectionProfile

# Fallback account labels when the server does not report a username
FALLBACK_LABELS = {
    AuthMethod.TOKEN: "API Token",
    AuthMethod.SSO: "SSO User",
}


class UserInfo(BaseModel):
    """Identity reported by ``argocd account get-user-info -o json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    logged_in: bool = Field(
        default=False, validation_alias=AliasChoices("logged_in", "loggedIn")
    )
    username: str | None = None
    email: str | None = None
    name: str | None = None
    iss: str | None = None
    groups: list[str] = Field(default_factory=list)

    @field_validator("groups", mode="before")
    @classmethod
    def null_groups(cls, v):
        """The CLI prints ``null`` for users without group claims."""
        return v or []


def session_id_for(profile: ConnectionProfile) -> str:
    """Session id for a profile; stable across reloads of the same profile."""
    return f"argocd-{profile.id}"


class Session(BaseModel):
    """Authenticated state of the active connection, as of the last check."""

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    account_label: str
    scopes: tuple[str, ...] = ()
    access_token: str = Field(default="", repr=False)
    connection_id: str
    server_address: str
    auth_method: AuthMethod

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, user_info: UserInfo | None) -> "Session":
        """Build a session for a profile, preferring the identity the server reports."""
        if user_info is not None and user_info.username:
            label = user_info.username
            account_suffix = user_info.username
        elif profile.auth_method is AuthMethod.USERNAME:
            label = profile.username or "Unknown User"
            account_suffix = label
        else:
            label = FALLBACK_LABELS[profile.auth_method]
            account_suffix = profile.auth_method.value

        scopes = [profile.auth_method.value]
        if user_info is not None:
            scopes.extend(user_info.groups)
            if user_info.iss:
                scopes.append(f"iss:{user_info.iss}")

        return cls(
            id=session_id_for(profile),
            account_id=f"{profile.id}-{account_suffix}",
            account_label=label,
            scopes=tuple(scopes),
            access_token=profile.api_token or "",
            connection_id=profile.id,
            server_address=profile.server_address,
            auth_method=profile.auth_method,
        )

    def matches_scopes(self, scopes) -> bool:
        """True if any of the requested scopes is held by this session."""
        return any(scope in self.scopes for scope in scopes)


@dataclass(frozen=True)
class SessionChangeEvent:
    """Sessions added, removed and changed by a refresh."""

    added: tuple[Session, ...] = ()
    removed: tuple[Session, ...] = ()
    changed: tuple[Session, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


class AccountInfo(BaseModel):
    """Account details shown by ``whoami``."""

    server_url: str
    auth_method: str
    account_label: str
    skip_tls_verify: bool = False
    user_info: UserInfo | None = None
