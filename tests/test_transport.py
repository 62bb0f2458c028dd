"""Tests for the pyone-backed OpenNebula client."""

from __future__ import annotations

from collections.abc import Iterator
from unittest import mock
from xmlrpc.client import ProtocolError

import pyone
import pytest
import requests

from onevm.transport import (
    METHOD_INSTANTIATE,
    METHOD_VM_INFO,
    RemoteCallError,
    XmlRpcOneClient,
    error_code,
)

ENDPOINT = "http://one:2633/RPC2"
SESSION = "oneadmin:s3cret"


@pytest.fixture
def server_class() -> Iterator[mock.Mock]:
    """Patched pyone.OneServer factory."""
    with mock.patch("onevm.transport.pyone.OneServer") as server_class:
        yield server_class


@pytest.fixture
def server(server_class: mock.Mock) -> mock.Mock:
    """The server instance the client talks to."""
    return server_class.return_value


class TestXmlRpcOneClient:
    """Tests for XmlRpcOneClient.call()."""

    def test_opens_session(self, server_class: mock.Mock) -> None:
        """Test that the endpoint, session and timeout are handed to pyone."""
        XmlRpcOneClient(ENDPOINT, SESSION, timeout_seconds=5)

        server_class.assert_called_once_with(ENDPOINT, session=SESSION, timeout=5)

    def test_calls_method_without_prefix(self, server: mock.Mock) -> None:
        """Test that pyone gets the method name without its "one." prefix."""
        getattr(server, "vm.info").return_value = "<binding>"
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        assert client.call(METHOD_VM_INFO, 5) == "<binding>"
        getattr(server, "vm.info").assert_called_once_with(5)

    def test_scalar_reply(self, server: mock.Mock) -> None:
        """Test that scalar bodies such as new ids are returned unchanged."""
        getattr(server, "template.instantiate").return_value = 42
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        assert client.call(METHOD_INSTANTIATE, 7, "vm1", False, "", False) == 42

    def test_username(self, server: mock.Mock) -> None:
        """Test that the username is taken from the session."""
        assert XmlRpcOneClient(ENDPOINT, SESSION).username == "oneadmin"

    def test_not_found(self, server: mock.Mock) -> None:
        """Test that pyone's no-exists error keeps its OpenNebula code."""
        getattr(server, "vm.info").side_effect = pyone.OneNoExistsException(
            "[one.vm.info] Error getting virtual machine [9]."
        )
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        with pytest.raises(RemoteCallError) as exc_info:
            client.call(METHOD_VM_INFO, 9)

        assert exc_info.value.code == 0x0400
        assert exc_info.value.method == METHOD_VM_INFO
        assert "Error getting virtual machine" in str(exc_info.value)

    def test_generic_failure(self, server: mock.Mock) -> None:
        """Test that a generic pyone error has no code."""
        getattr(server, "vm.info").side_effect = pyone.OneException("no such method")
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        with pytest.raises(RemoteCallError) as exc_info:
            client.call(METHOD_VM_INFO, 5)

        assert exc_info.value.code is None

    def test_http_error(self, server: mock.Mock) -> None:
        """Test that an HTTP error status becomes RemoteCallError."""
        getattr(server, "vm.info").side_effect = ProtocolError(ENDPOINT, 502, "Bad Gateway", {})
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        with pytest.raises(RemoteCallError, match="HTTP 502"):
            client.call(METHOD_VM_INFO, 5)

    def test_connection_error(self, server: mock.Mock) -> None:
        """Test that network errors become RemoteCallError."""
        getattr(server, "vm.info").side_effect = requests.ConnectionError("refused")
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        with pytest.raises(RemoteCallError, match="refused"):
            client.call(METHOD_VM_INFO, 5)

    def test_repr_masks_password(self, server: mock.Mock) -> None:
        """Test that the password never appears in the repr."""
        client = XmlRpcOneClient(ENDPOINT, SESSION)

        assert "s3cret" not in repr(client)
        assert "oneadmin:***" in repr(client)


class TestErrorCode:
    """Tests for mapping pyone exceptions to OpenNebula error codes."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (pyone.OneAuthenticationException("x"), 0x0100),
            (pyone.OneAuthorizationException("x"), 0x0200),
            (pyone.OneNoExistsException("x"), 0x0400),
            (pyone.OneActionException("x"), 0x0800),
            (pyone.OneApiException("x"), 0x1000),
            (pyone.OneInternalException("x"), 0x2000),
            (pyone.OneException("x"), None),
        ],
    )
    def test_codes(self, error: pyone.OneException, code: int | None) -> None:
        """Test that each pyone exception class maps to its code."""
        assert error_code(error) == code
