"""Human-readable rendering of plans, results, state and outputs.

Everything shown to the operator goes through redact() first: sensitive
values are never printed unless explicitly requested for an output.
"""

from __future__ import annotations

import json
from typing import Any

import click

from .engine import ApplyResult
from .errors import StateDriftError
from .planner import Action, Plan, PlannedChange
from .state import ResourceState, StateSnapshot
from .values import REDACTED, UNKNOWN_DISPLAY, is_sensitive, redact, reveal

ACTION_SYMBOLS: dict[Action, tuple[str, str]] = {
    Action.CREATE: ("+", "green"),
    Action.UPDATE: ("~", "yellow"),
    Action.REPLACE: ("-/+", "magenta"),
    Action.DELETE: ("-", "red"),
    Action.NO_OP: (" ", "white"),
}


def format_value(value: Any) -> str:
    """Display form of a single value, with sensitive parts redacted."""
    shown = redact(value)
    if isinstance(shown, str):
        return shown if shown in (REDACTED, UNKNOWN_DISPLAY) else json.dumps(shown)
    return json.dumps(shown, sort_keys=True)


def render_change(change: PlannedChange) -> list[str]:
    symbol, color = ACTION_SYMBOLS[change.action]
    header = f"  {symbol} {change.node_id} ({change.type})"
    if change.reason:
        header += f"  # {change.reason}"
    elif change.requires_reevaluation:
        header += "  # dependency changed, re-evaluated during apply"
    lines = [click.style(header, fg=color, bold=change.action != Action.NO_OP)]

    if change.action == Action.CREATE:
        for name in sorted(change.inputs):
            lines.append(f"      {name} = {format_value(change.inputs[name])}")
    elif change.action in (Action.UPDATE, Action.REPLACE):
        for attr in change.attributes:
            marker = click.style("  # forces replacement", fg="red") if attr.forces_replacement else ""
            lines.append(
                f"      {attr.name}: {format_value(attr.before)} -> "
                f"{format_value(attr.after)}{marker}"
            )
    return lines


def render_drift(drift: list[StateDriftError]) -> list[str]:
    if not drift:
        return []
    lines = [click.style("Drift detected since the last apply:", fg="yellow", bold=True)]
    for entry in drift:
        lines.append(click.style(f"  ! {entry.node_id}: {entry.detail}", fg="yellow"))
    lines.append("")
    return lines


def render_plan(plan: Plan, *, verbose: bool = False) -> str:
    """Render a plan for the terminal."""
    lines = render_drift(plan.drift)

    if not plan.has_changes:
        lines.append(click.style("No changes. Infrastructure matches the configuration.", fg="green"))
        return "\n".join(lines)

    lines.append("Planned changes:")
    for change in plan.changes:
        if change.action == Action.NO_OP and not verbose:
            continue
        lines.extend(render_change(change))

    if plan.outputs:
        lines.append("")
        lines.append("Outputs:")
        for name, value in plan.outputs.items():
            lines.append(f"  {name} = {format_value(value)}")

    lines.append("")
    lines.append(click.style(plan.summary(), bold=True))
    return "\n".join(lines)


def render_result(result: ApplyResult) -> str:
    """Render the outcome of an apply or destroy."""
    lines: list[str] = []
    for op in result.operations:
        symbol, color = ACTION_SYMBOLS[op.action]
        attempts = f" after {op.attempts} attempts" if op.attempts > 1 else ""
        lines.append(click.style(
            f"  {symbol} {op.node_id}: {op.action.value} complete "
            f"({op.duration_seconds:.1f}s{attempts})",
            fg=color,
        ))

    if result.cancelled:
        lines.append(click.style(f"{result.operation.capitalize()} cancelled.", fg="yellow"))
        return "\n".join(lines)

    if result.error is not None:
        lines.append(click.style(f"Error: {result.error}", fg="red", bold=True))
        if result.not_started:
            lines.append(f"Not started: {', '.join(result.not_started)}")
        lines.append("State records every completed operation; re-run to continue.")
        return "\n".join(lines)

    summary = (
        f"{result.operation.capitalize()} complete! "
        f"{result.count(Action.CREATE)} added, {result.count(Action.UPDATE)} changed, "
        f"{result.count(Action.REPLACE)} replaced, {result.count(Action.DELETE)} destroyed."
    )
    lines.append(click.style(summary, fg="green", bold=True))
    if result.outputs:
        lines.append("")
        lines.append("Outputs:")
        lines.extend(render_outputs(result.outputs))
    return "\n".join(lines)


def render_outputs(outputs: dict[str, Any], *, show_sensitive: bool = False) -> list[str]:
    return [
        f"  {name} = {format_output(value, show_sensitive=show_sensitive)}"
        for name, value in outputs.items()
    ]


def format_output(value: Any, *, show_sensitive: bool = False) -> str:
    if show_sensitive and is_sensitive(value):
        revealed = reveal(value)
        return revealed if isinstance(revealed, str) else json.dumps(revealed)
    return format_value(value)


def render_state_list(snapshot: StateSnapshot) -> str:
    return "\n".join(
        f"{node_id}\t{resource.type}" for node_id, resource in snapshot.resources.items()
    )


def render_resource(resource: ResourceState) -> str:
    """Render one recorded node, redacted."""
    lines = [
        f"# {resource.node_id} ({resource.type})",
        f"provider_id = {resource.provider_id or '-'}",
        f"updated_at  = {resource.updated_at.isoformat()}",
        f"depends_on  = {json.dumps(resource.depends_on)}",
        "inputs:",
    ]
    lines.extend(f"  {name} = {format_value(value)}" for name, value in sorted(resource.inputs.items()))
    lines.append("outputs:")
    lines.extend(f"  {name} = {format_value(value)}" for name, value in sorted(resource.outputs.items()))
    return "\n".join(lines)


def redacted_snapshot(snapshot: StateSnapshot) -> dict[str, Any]:
    """Snapshot document with sensitive leaves replaced."""
    data = snapshot.to_dict()
    for node_id, resource in snapshot.resources.items():
        data["resources"][node_id]["inputs"] = redact(resource.inputs)
        data["resources"][node_id]["outputs"] = redact(resource.outputs)
    data["outputs"] = redact(snapshot.outputs)
    return data
