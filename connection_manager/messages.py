"""Typed requests from the presentation layer to the core.

Each operation has one request model, told apart by its ``action`` field.
Payloads are validated here, before any of the core is touched.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from connection_manager.exceptions import ValidationError
from connection_manager.models.connection import ConnectionInput


class _BaseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AddConnectionRequest(_BaseRequest):
    action: Literal["add_connection"] = "add_connection"
    connection: ConnectionInput | None = None
    password: str | None = Field(default=None, repr=False)


class SwitchConnectionRequest(_BaseRequest):
    action: Literal["switch_connection"] = "switch_connection"
    connection_id: str | None = None
    password: str | None = Field(default=None, repr=False)


class EditConnectionRequest(_BaseRequest):
    action: Literal["edit_connection"] = "edit_connection"
    connection_id: str | None = None
    name: str | None = None


class DeleteConnectionRequest(_BaseRequest):
    action: Literal["delete_connection"] = "delete_connection"
    connection_id: str | None = None
    confirmed: bool = False


class LogoutRequest(_BaseRequest):
    action: Literal["logout"] = "logout"
    session_id: str | None = None


class GetSessionsRequest(_BaseRequest):
    action: Literal["get_sessions"] = "get_sessions"
    scopes: list[str] | None = None
    account_id: str | None = None


class RefreshSessionsRequest(_BaseRequest):
    action: Literal["refresh_sessions"] = "refresh_sessions"


class ListConnectionsRequest(_BaseRequest):
    action: Literal["list_connections"] = "list_connections"


Request = Annotated[
    Union[
        AddConnectionRequest,
        SwitchConnectionRequest,
        EditConnectionRequest,
        DeleteConnectionRequest,
        LogoutRequest,
        GetSessionsRequest,
        RefreshSessionsRequest,
        ListConnectionsRequest,
    ],
    Field(discriminator="action"),
]

_request_adapter = TypeAdapter(Request)


class Response(BaseModel):
    """Result of a request, safe to hand to the presentation layer."""

    action: str
    ok: bool
    message: str = ""
    step: str | None = None
    cancelled: bool = False
    data: Any = None


def parse_request(payload: dict | _BaseRequest) -> Request:
    """Validate a payload into one of the request variants.

    Raises:
        ValidationError: If the payload matches no variant
    """
    if isinstance(payload, _BaseRequest):
        return payload
    try:
        return _request_adapter.validate_python(payload)
    except PydanticValidationError as e:
        action = payload.get("action") if isinstance(payload, dict) else None
        raise ValidationError(f"Invalid request{f' for {action}' if action else ''}", str(e))
