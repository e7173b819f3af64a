"""Azure App Stack Provisioner CLI (azp).

Usage:
    azp validate                 # Check configuration, no remote calls
    azp graph                    # Show resource apply order
    azp plan                     # Show changes against realized state
    azp apply [--auto-approve]   # Converge infrastructure to configuration
    azp destroy [--auto-approve] # Delete everything recorded in state
    azp output [NAME]            # Show stack outputs
    azp state list|show|pull     # Inspect the state snapshot
    azp force-unlock LOCK_ID     # Remove a lock left by a crashed run
"""

from __future__ import annotations

import asyncio
import functools
import json
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from . import __version__
from .builder import build_graph
from .config import Config, ConfigurationError
from .engine import ApplyResult, Engine
from .errors import ProvisionerError
from .graph import ResourceGraph
from .main import setup_logging
from .models import StackConfig
from .planner import Plan
from .providers import build_providers
from .render import (
    format_output,
    redacted_snapshot,
    render_outputs,
    render_plan,
    render_resource,
    render_result,
    render_state_list,
)
from .security import get_credential, log_security_audit_event
from .stack_loader import load_stack_config, parse_overrides
from .state import StateBackend, create_backend

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_CONFIG_FILE = "azp.yaml"

# Exit code for `plan --detailed-exitcode` when changes are pending
EXIT_CHANGES_PRESENT = 2

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@dataclass
class CliContext:
    """Per-invocation settings shared by all commands."""

    config_file: Path | None
    variables: tuple[str, ...]
    runtime: Config

    def stack_config(self) -> StackConfig:
        return load_stack_config(self.config_file, parse_overrides(self.variables))

    def graph(self) -> ResourceGraph:
        return build_graph(self.stack_config())


def _create_backend(runtime: Config) -> StateBackend:
    return create_backend(runtime)


def _create_engine(runtime: Config) -> Engine:
    """Wire credential, providers and state backend into an engine."""
    subscription_id = runtime.require_subscription()
    credential = get_credential(runtime.client_id, use_managed_identity=runtime.use_managed_identity)
    return Engine(
        backend=create_backend(runtime, credential),
        providers=build_providers(credential, subscription_id),
        config=runtime,
    )


def handle_errors(func: F) -> F:
    """Turn provisioner errors into clean CLI failures."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ProvisionerError, ConfigurationError) as e:
            raise click.ClickException(str(e)) from e

    return wrapper  # type: ignore[return-value]


def _confirm(engine: Engine, prompt: str, auto_approve: bool) -> Callable[[Plan], bool]:
    def confirm(plan: Plan) -> bool:
        click.echo(render_plan(plan))
        click.echo()
        if not auto_approve and not click.confirm(prompt, default=False):
            return False
        _stop_on_signal(engine)
        return True

    return confirm


def _stop_on_signal(engine: Engine) -> None:
    """Make SIGINT/SIGTERM stop scheduling instead of cancelling the run.

    Installed once changes are approved, so Ctrl-C still aborts the prompt.
    The handlers go away with the event loop.
    """
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        click.echo(f"Received {sig.name}, waiting for running operations to finish", err=True)
        engine.shutdown()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, functools.partial(signal_handler, sig))


def _finish(result: ApplyResult) -> None:
    click.echo(render_result(result))
    if result.error is not None:
        raise SystemExit(1)


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="azp")
@click.option(
    "--config-file",
    "-f",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="AZP_CONFIG_FILE",
    help=f"Stack configuration file (default: ./{DEFAULT_CONFIG_FILE} if present)",
)
@click.option(
    "--var",
    "variables",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a configuration value (repeatable)",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None, variables: tuple[str, ...]) -> None:
    """Azure App Stack Provisioner (azp).

    Provisions a containerized web application with its registry, managed
    identity, PostgreSQL database and log workspace on Azure.

    \b
    Quick Start:
        azp validate -f azp.yaml
        azp plan
        azp apply
    """
    try:
        runtime = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(runtime.log_format, runtime.log_level)

    if config_file is None and Path(DEFAULT_CONFIG_FILE).exists():
        config_file = Path(DEFAULT_CONFIG_FILE)

    ctx.obj = CliContext(config_file=config_file, variables=variables, runtime=runtime)


# =============================================================================
# Configuration Commands
# =============================================================================


@cli.command()
@click.pass_obj
@handle_errors
def validate(obj: CliContext) -> None:
    """Validate the configuration without contacting Azure."""
    graph = obj.graph()
    click.secho(f"✓ Configuration is valid ({len(graph)} resources)", fg="green")


@cli.command("graph")
@click.pass_obj
@handle_errors
def show_graph(obj: CliContext) -> None:
    """Show resources in apply order with their dependencies."""
    graph = obj.graph()
    for index, node_id in enumerate(graph.topological_sort(), start=1):
        node = graph.nodes[node_id]
        deps = ", ".join(node.dependencies()) or "-"
        click.echo(f"{index:2d}. {node_id} ({node.type}) <- {deps}")


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@click.option("--refresh/--no-refresh", default=True, help="Read realized resources first")
@click.option("--verbose", "-v", is_flag=True, help="Also list unchanged resources")
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help=f"Exit with {EXIT_CHANGES_PRESENT} when changes are pending",
)
@click.pass_obj
@handle_errors
def plan(obj: CliContext, refresh: bool, verbose: bool, detailed_exitcode: bool) -> None:
    """Show what apply would change. Never modifies anything."""
    graph = obj.graph()
    engine = _create_engine(obj.runtime)
    result = asyncio.run(engine.plan(graph, refresh=refresh))
    click.echo(render_plan(result, verbose=verbose))
    if detailed_exitcode and result.has_changes:
        raise SystemExit(EXIT_CHANGES_PRESENT)


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_obj
@handle_errors
def apply(obj: CliContext, auto_approve: bool) -> None:
    """Create, update or replace resources to match the configuration."""
    graph = obj.graph()
    engine = _create_engine(obj.runtime)
    result = asyncio.run(
        engine.apply(graph, confirm=_confirm(engine, "Apply these changes?", auto_approve))
    )
    if result.plan is not None and not result.plan.has_changes:
        click.echo(render_plan(result.plan))
        return
    _finish(result)


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_obj
@handle_errors
def destroy(obj: CliContext, auto_approve: bool) -> None:
    """Delete every resource recorded in state."""
    engine = _create_engine(obj.runtime)
    result = asyncio.run(
        engine.destroy(confirm=_confirm(engine, "Destroy all of these resources?", auto_approve))
    )
    if result.plan is not None and not result.plan.has_changes:
        click.echo("Nothing to destroy.")
        return
    _finish(result)


# =============================================================================
# Output and State Commands
# =============================================================================


@cli.command()
@click.argument("name", required=False)
@click.option("--show-sensitive", is_flag=True, help="Print sensitive values in plaintext")
@click.option("--json", "as_json", is_flag=True, help="Print outputs as JSON (redacted)")
@click.pass_obj
@handle_errors
def output(obj: CliContext, name: str | None, show_sensitive: bool, as_json: bool) -> None:
    """Show stack outputs from the last apply."""
    snapshot = _create_backend(obj.runtime).read()
    outputs = snapshot.outputs

    if name is not None:
        if name not in outputs:
            raise click.ClickException(f"Output '{name}' not found in state")
        click.echo(format_output(outputs[name], show_sensitive=show_sensitive))
        return

    if not outputs:
        click.echo("No outputs. Run 'azp apply' first.")
        return
    if as_json:
        click.echo(json.dumps(redacted_snapshot(snapshot)["outputs"], indent=2, sort_keys=True))
        return
    for line in render_outputs(outputs, show_sensitive=show_sensitive):
        click.echo(line.strip())


@cli.group()
def state() -> None:
    """Inspect the state snapshot."""
    pass


@state.command("list")
@click.pass_obj
@handle_errors
def state_list(obj: CliContext) -> None:
    """List recorded resources."""
    snapshot = _create_backend(obj.runtime).read()
    if snapshot.is_empty():
        click.echo("State is empty.")
        return
    click.echo(render_state_list(snapshot))


@state.command("show")
@click.argument("node_id")
@click.pass_obj
@handle_errors
def state_show(obj: CliContext, node_id: str) -> None:
    """Show one recorded resource (sensitive values redacted)."""
    snapshot = _create_backend(obj.runtime).read()
    resource = snapshot.get(node_id)
    if resource is None:
        raise click.ClickException(f"Resource '{node_id}' not found in state")
    click.echo(render_resource(resource))


@state.command("pull")
@click.option("--show-sensitive", is_flag=True, help="Include sensitive values in plaintext")
@click.pass_obj
@handle_errors
def state_pull(obj: CliContext, show_sensitive: bool) -> None:
    """Print the state snapshot as JSON."""
    snapshot = _create_backend(obj.runtime).read()
    if show_sensitive:
        click.echo(snapshot.to_json())
        return
    click.echo(json.dumps(redacted_snapshot(snapshot), indent=2, sort_keys=True))


@cli.command("force-unlock")
@click.argument("lock_id")
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
@handle_errors
def force_unlock(obj: CliContext, lock_id: str, force: bool) -> None:
    """Remove a state lock left behind by a crashed run."""
    backend = _create_backend(obj.runtime)
    held = backend.current_lock()
    if held is None:
        raise click.ClickException("State is not locked")

    click.echo(
        f"Lock {held.lock_id} held by {held.owner} "
        f"(operation: {held.operation}, since {held.created_at.isoformat()})"
    )
    if not force:
        click.confirm("Remove this lock? Only do this if that run is no longer active", abort=True)

    backend.force_unlock(lock_id)
    log_security_audit_event(
        "state_lock_forced",
        target_resource=backend.location,
        action="force-unlock",
        result="success",
    )
    click.secho("✓ Lock removed", fg="green")


if __name__ == "__main__":
    cli()
