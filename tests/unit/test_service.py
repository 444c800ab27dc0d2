"""Unit tests for the connection service and its request dispatch."""

from unittest.mock import patch

import pytest
from conftest import token_input, username_input

from connection_manager.exceptions import ValidationError
from connection_manager.messages import (
    AddConnectionRequest,
    GetSessionsRequest,
    SwitchConnectionRequest,
    parse_request,
)


def test_parse_request_by_action():
    """Test that payloads are parsed into the variant named by their action."""
    request = parse_request({"action": "switch_connection", "connection_id": "conn_1_abcdefg"})

    assert isinstance(request, SwitchConnectionRequest)
    assert request.connection_id == "conn_1_abcdefg"


def test_parse_request_nested_connection():
    """Test that add requests validate the nested connection details."""
    request = parse_request(
        {
            "action": "add_connection",
            "connection": {"name": "CI", "serverAddress": "https://host", "authMethod": "sso"},
        }
    )

    assert isinstance(request, AddConnectionRequest)
    assert request.connection.server_address == "host"


@pytest.mark.parametrize(
    "payload",
    [
        {"action": "reboot"},
        {"connection_id": "x"},
        {"action": "logout", "unexpected": True},
        {"action": "get_sessions", "scopes": "not-a-list"},
    ],
)
def test_parse_request_rejects_invalid(payload):
    """Test that unknown actions, extra fields and wrong types are rejected."""
    with pytest.raises(ValidationError):
        parse_request(payload)


def test_parse_request_passes_models_through():
    """Test that already built requests are returned as they are."""
    request = GetSessionsRequest(scopes=["token"])

    assert parse_request(request) is request


def test_start_reports_flags(service, store):
    """Test that start computes the initial UI state."""
    store.add(token_input())

    state = service.start()

    assert state.is_authenticated
    assert state.is_cli_available
    assert service.is_authenticated
    assert service.is_configured()


def test_end_to_end_flow(service, prompter):
    """Test add, switch and logout through the service API."""
    first = service.add_connection(username_input(name="a"), password="secret")
    second = service.add_connection(token_input(name="b"))

    assert service.get_active_connection().id == second.connection.id
    assert service.is_authenticated

    service.switch_connection(first.connection.id, password="secret")
    assert service.get_sessions()[0].connection_id == first.connection.id

    service.logout()
    assert service.get_sessions() == []
    assert not service.is_authenticated
    assert not service.is_configured()
    assert len(service.get_all_connections()) == 2


def test_dispatch_add(service):
    """Test that an add request returns the profile without its token."""
    response = service.dispatch(
        {
            "action": "add_connection",
            "connection": {"name": "CI", "serverAddress": "host", "authMethod": "token", "apiToken": "tok-123"},
        }
    )

    assert response.ok
    assert response.data["name"] == "CI"
    assert "api_token" not in response.data


def test_dispatch_failed_login_reports_step(service):
    """Test that authentication failures name the failing step."""
    response = service.dispatch(
        {
            "action": "add_connection",
            "connection": {"name": "CI", "serverAddress": "host", "authMethod": "token", "apiToken": "bad"},
        }
    )

    assert not response.ok
    assert response.step == "authenticate"


def test_dispatch_list_connections(service):
    """Test that listing marks the active connection."""
    active = service.add_connection(token_input(name="a")).connection
    service.add_connection(username_input(name="b"), password="wrong")

    response = service.dispatch({"action": "list_connections"})

    assert [c["name"] for c in response.data] == ["a", "b"]
    assert [c["active"] for c in response.data] == [True, False]
    assert response.data[0]["id"] == active.id
    assert all("api_token" not in c for c in response.data)


def test_dispatch_get_sessions(service):
    """Test that sessions are returned without access tokens."""
    service.add_connection(token_input())

    response = service.dispatch({"action": "get_sessions", "scopes": ["token"]})

    assert response.ok
    assert response.data[0]["account_label"] == "API Token"
    assert "access_token" not in response.data[0]


def test_dispatch_refresh_sessions(service, store):
    """Test that refresh reports whether anything changed."""
    store.add(token_input())

    assert service.dispatch({"action": "refresh_sessions"}).message == "Sessions changed"
    assert service.dispatch({"action": "refresh_sessions"}).message == "Sessions unchanged"


def test_dispatch_cancelled(service):
    """Test that a cancelled prompt is reported as cancelled, not failed."""
    response = service.dispatch({"action": "add_connection"})

    assert response.cancelled
    assert not response.ok


def test_dispatch_errors_become_responses(service):
    """Test that core errors are returned instead of raised."""
    response = service.dispatch({"action": "delete_connection", "connection_id": "conn_0_none"})

    assert not response.ok
    assert response.action == "delete_connection"
    assert "not found" in response.message


def test_dispatch_invalid_payload(service):
    """Test that invalid payloads are returned as failed responses."""
    response = service.dispatch({"action": "logout", "bogus": 1})

    assert not response.ok
    assert response.action == "logout"
    assert "Invalid request" in response.message


def test_dispatch_logout(service):
    """Test the logout request."""
    service.add_connection(token_input())

    response = service.dispatch({"action": "logout"})

    assert response.ok
    assert service.get_active_connection() is None


def test_dispatch_storage_failure_names_store_step(service):
    """Test that a failed registry write is reported as the store step."""
    with patch("connection_manager.store.os.replace", side_effect=OSError("disk full")):
        response = service.dispatch(
            {
                "action": "add_connection",
                "connection": {"name": "CI", "serverAddress": "host", "authMethod": "token", "apiToken": "tok-123"},
            }
        )

    assert not response.ok
    assert response.step == "store"
    assert "disk full" in response.message
    assert service.get_all_connections() == []
