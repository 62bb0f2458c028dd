"""Remote call capability for the OpenNebula XML-RPC API.

The lifecycle code only needs one operation: call a named API method with
positional arguments and get the reply body back. pyone does the wire work:
it prepends the session string to every call, unwraps OpenNebula's
[success, body, error_code] reply and parses XML documents into binding
objects (see entity.py).

No call is retried here; every failure surfaces as RemoteCallError.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from xmlrpc.client import ProtocolError

import pyone

from .security import mask_session

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT_SECONDS = 30

# Methods used by the lifecycle controller
METHOD_INSTANTIATE = "one.template.instantiate"
METHOD_VM_INFO = "one.vm.info"
METHOD_VM_POOL_INFO = "one.vmpool.info"
METHOD_VM_CHMOD = "one.vm.chmod"
METHOD_VM_DISK_RESIZE = "one.vm.diskresize"
METHOD_VM_RENAME = "one.vm.rename"
METHOD_VM_ACTION = "one.vm.action"

# pyone raises one exception class per OpenNebula error code
ERROR_CODES: dict[type[pyone.OneException], int] = {
    pyone.OneAuthenticationException: 0x0100,
    pyone.OneAuthorizationException: 0x0200,
    pyone.OneNoExistsException: 0x0400,
    pyone.OneActionException: 0x0800,
    pyone.OneApiException: 0x1000,
    pyone.OneInternalException: 0x2000,
}


class RemoteCallError(Exception):
    """Raised when a remote call fails for any reason."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        self.method = method
        self.message = message
        self.code = code
        detail = f" (code {code})" if code is not None else ""
        super().__init__(f"{method} failed{detail}: {message}")


class OneClient(Protocol):
    """Synchronous remote-call capability consumed by the lifecycle code.

    call() returns what pyone returns: a binding object for XML documents
    (one.vm.info, one.vmpool.info), otherwise the scalar body (usually an id).
    """

    username: str

    def call(self, method: str, *args: Any) -> Any: ...


class XmlRpcOneClient:
    """OpenNebula client on top of pyone.OneServer.

    One instance holds one session; separate VMs may be driven concurrently
    with separate instances.
    """

    def __init__(
        self,
        endpoint: str,
        session: str,
        timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS,
    ) -> None:
        self._endpoint = endpoint
        self._session = session
        self.username = session.split(":", 1)[0]
        self._server = pyone.OneServer(endpoint, session=session, timeout=timeout_seconds)

    def __repr__(self) -> str:
        return f"XmlRpcOneClient(endpoint={self._endpoint!r}, session={mask_session(self._session)!r})"

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def call(self, method: str, *args: Any) -> Any:
        """Invoke an API method and return its reply body.

        Raises:
            RemoteCallError: On transport failure or an unsuccessful reply.
        """
        logger.debug("Remote call", extra={"method": method, "endpoint": self._endpoint})

        # pyone adds the "one." prefix itself
        remote_method = getattr(self._server, method.removeprefix("one."))
        try:
            return remote_method(*args)
        except pyone.OneException as e:
            raise RemoteCallError(method, str(e), error_code(e)) from e
        except ProtocolError as e:
            raise RemoteCallError(method, f"HTTP {e.errcode} {e.errmsg}") from e
        except OSError as e:
            # requests' exceptions are OSErrors too
            raise RemoteCallError(method, str(e)) from e


def error_code(error: pyone.OneException) -> int | None:
    """OpenNebula error code for a pyone exception, None for generic failures."""
    for exc_type, code in ERROR_CODES.items():
        if isinstance(error, exc_type):
            return code
    return None
