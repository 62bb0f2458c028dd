"""OpenNebula API Mock for Integration Testing.

This module provides an in-memory stand-in for the OpenNebula XML-RPC API
that enables lifecycle testing without a real frontend.

Key Features:
- In-memory VM records rendered as real <VM>/<VM_POOL> XML
- Scripted state progressions (PENDING -> PROLOG -> RUNNING, EPILOG -> DONE)
- Error injection per method for testing failure scenarios
- Call log for asserting on the exact remote calls issued

Usage:
    from one_mock import MockOneContext

    with MockOneContext() as ctx:
        result = CliRunner().invoke(cli, ["--spec", "vm.yaml", "create"])

        assert ctx.state.calls_to("one.template.instantiate")
"""

from .client import MockOneClient
from .context import MockOneContext
from .state import MockOneState, MockVm, parse_template

__all__ = [
    "MockOneClient",
    "MockOneContext",
    "MockOneState",
    "MockVm",
    "parse_template",
]
