"""OpenNebula VM CLI (onevm).

Runs one lifecycle operation against the VM described by a desired-state
file and prints the result as JSON.

Usage:
    onevm --spec vm.yaml validate     # Check the desired state offline
    onevm --spec vm.yaml create       # Instantiate and wait for RUNNING
    onevm --spec vm.yaml import 42    # Adopt an existing VM by id
    onevm --spec vm.yaml read         # Refresh the observed attributes
    onevm --spec vm.yaml exists       # Is the VM still there?
    onevm --spec vm.yaml update       # Apply permission/size/name changes
    onevm --spec vm.yaml delete       # Terminate and wait for DONE
    onevm --spec vm.yaml apply        # One reconciliation cycle
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from .config import (
    DEFAULT_STATE_PATH,
    Config,
    ConfigurationError,
    ReconciliationMode,
)
from .entity import EntityDecodeError
from .lifecycle import LifecycleError, VmLifecycleController, VmResource
from .permissions import AttributeValidationError
from .poller import PollTimeoutError
from .reconciler import Reconciler
from .security import CredentialsError, resolve_session
from .spec_loader import SpecLoadError, load_spec
from .state_store import StateStore, StateStoreError
from .states import LifecycleState
from .template import build_instantiate_template
from .transport import OneClient, RemoteCallError, XmlRpcOneClient

# Errors reported as a one-line failure rather than a traceback
HANDLED_ERRORS: tuple[type[Exception], ...] = (
    AttributeValidationError,
    ConfigurationError,
    CredentialsError,
    EntityDecodeError,
    LifecycleError,
    PollTimeoutError,
    RemoteCallError,
    SpecLoadError,
    StateStoreError,
)


def create_client(endpoint: str, timeout_seconds: float) -> OneClient:
    """Open a client for endpoint using the session from the auth file."""
    return XmlRpcOneClient(endpoint, resolve_session(), timeout_seconds)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn operational errors into click failures."""
    try:
        yield
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def emit(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def resource_payload(resource: VmResource) -> dict[str, Any]:
    return {
        "id": resource.id,
        "stage": resource.stage.value,
        "observed": resource.observed.model_dump() if resource.observed else None,
    }


@dataclasses.dataclass
class Session:
    """Per-invocation state shared by the commands."""

    config: Config
    store: StateStore

    def load_resource(self) -> VmResource:
        if self.config.spec_path is None:
            raise click.UsageError("--spec (or ONEVM_SPEC) is required")
        return self.store.load_resource(load_spec(self.config.spec_path))

    def controller(self) -> VmLifecycleController:
        client = create_client(self.config.endpoint, self.config.rpc_timeout_seconds)
        return VmLifecycleController(client, self.config.lifecycle, checkpoint=self.store.save)


pass_session = click.make_pass_decorator(Session)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="onevm")
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="ONEVM_SPEC",
    help="Desired-state YAML file",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="ONEVM_STATE",
    default=DEFAULT_STATE_PATH,
    show_default=True,
    help="Local state file recording the VM id",
)
@click.option("--endpoint", envvar="ONE_XMLRPC", help="OpenNebula XML-RPC endpoint")
@click.option("--verbose", "-v", is_flag=True, help="Log remote calls and state refreshes")
@click.pass_context
def cli(
    ctx: click.Context,
    spec_path: Path | None,
    state_path: Path,
    endpoint: str | None,
    verbose: bool,
) -> None:
    """OpenNebula VM CLI (onevm).

    Manage a single VM from a desired-state file. The session is read from
    $ONE_AUTH or ~/.one/one_auth.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    with handle_errors():
        config = Config.from_env()
        overrides: dict[str, Any] = {"spec_path": spec_path, "state_path": state_path}
        if endpoint:
            overrides["endpoint"] = endpoint
        config = dataclasses.replace(config, **overrides)

    ctx.obj = Session(config=config, store=StateStore(config.state_path))


# =============================================================================
# Offline Commands
# =============================================================================


@cli.command()
@pass_session
def validate(session: Session) -> None:
    """Validate the desired state and show the instantiate template."""
    with handle_errors():
        resource = session.load_resource()
        template = build_instantiate_template(resource.desired)
    emit(
        {
            "valid": True,
            "template_id": resource.desired.template_id,
            "name": resource.desired.name,
            "template": template,
        }
    )


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@pass_session
def create(session: Session) -> None:
    """Instantiate the VM and wait until it is RUNNING."""
    with handle_errors():
        resource = session.load_resource()
        if resource.stage == LifecycleState.DONE:
            # A terminated VM never comes back; start over
            resource.id = ""
            resource.observed = None
        elif resource.id:
            raise click.ClickException(
                f"State file already tracks VM {resource.id}; use 'update' or 'delete'"
            )
        session.controller().create(resource)
        session.store.save(resource)
    emit(resource_payload(resource))


@cli.command("import")
@click.argument("vm_id", type=click.IntRange(min=0))
@pass_session
def import_vm(session: Session, vm_id: int) -> None:
    """Adopt an existing VM by id and record it in the state file."""
    with handle_errors():
        resource = session.load_resource()
        if resource.id and resource.id != str(vm_id) and resource.stage != LifecycleState.DONE:
            raise click.ClickException(
                f"State file already tracks VM {resource.id}; delete it before importing"
            )
        resource.id = str(vm_id)
        resource.observed = None
        session.controller().read(resource)
        # Read falls back to a name match; an import must find this exact VM
        if resource.id != str(vm_id) or resource.stage == LifecycleState.DONE:
            raise click.ClickException(f"VM {vm_id} does not exist")
        session.store.save(resource)
    emit(resource_payload(resource))


@cli.command()
@pass_session
def read(session: Session) -> None:
    """Refresh the observed attributes of the VM."""
    with handle_errors():
        resource = session.load_resource()
        session.controller().read(resource)
        session.store.save(resource)
    emit(resource_payload(resource))


@cli.command()
@pass_session
def exists(session: Session) -> None:
    """Report whether the VM exists (terminated VMs do not)."""
    with handle_errors():
        resource = session.load_resource()
        found = session.controller().exists(resource)
        session.store.save(resource)
    emit({"exists": found, "id": resource.id})


@cli.command()
@pass_session
def update(session: Session) -> None:
    """Apply permission, disk size and name changes in place."""
    with handle_errors():
        resource = session.load_resource()
        try:
            applied = session.controller().update(resource)
        finally:
            session.store.save(resource)
    emit({**resource_payload(resource), "applied": [c.to_dict() for c in applied]})


@cli.command()
@pass_session
def delete(session: Session) -> None:
    """Terminate the VM and wait until it is DONE."""
    with handle_errors():
        resource = session.load_resource()
        session.controller().delete(resource)
        session.store.save(resource)
    emit(resource_payload(resource))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report drift without changing anything")
@click.option(
    "--allow-replace",
    is_flag=True,
    help="Delete and re-create when an immutable attribute drifted",
)
@pass_session
def apply(session: Session, dry_run: bool, allow_replace: bool) -> None:
    """Run one reconciliation cycle in enforce mode."""
    with handle_errors():
        config = dataclasses.replace(
            session.config,
            mode=ReconciliationMode.ENFORCE,
            dry_run=dry_run or session.config.dry_run,
            allow_replace=allow_replace or session.config.allow_replace,
        )
        resource = session.load_resource()
        result = Reconciler(session.controller(), config).reconcile_once(resource)
        session.store.save(resource)

    emit({**result.to_dict(), **resource_payload(resource)})
    if not result.success:
        raise click.ClickException(f"Reconciliation failed: {result.error}")


if __name__ == "__main__":
    cli()
