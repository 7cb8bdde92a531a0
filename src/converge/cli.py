"""converge CLI.

Operator tooling around the reconciliation engine. Configuration comes from
the same CONVERGE_* environment variables as the controller; options given
on the command line take precedence.

Usage:
    converge plan                  # Show what the next cycle would do
    converge plan --drift-check    # ...including live drift detection
    converge apply                 # Run one reconciliation cycle now
    converge run -s dev -s prod    # Run sync loops until interrupted
    converge state list            # Show applied state
    converge state rm TYPE.NAME    # Forget a resource (does not delete it)
    converge history               # Show recorded cycles
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .errors import LockContentionError, ReconcileError
from .git_source import LocalGitSource
from .graph import build_graph
from .main import build_provider, build_sync_loop, run_loops, setup_logging
from .models import ResourceId
from .planner import OperationKind, Plan, Planner
from .provider import ResourceProvider
from .security import SecretlessViolationError
from .spec_loader import load_declarations
from .state_store import FileStateStore
from .status import CycleOutcome

ProviderFactory = Callable[[Config], ResourceProvider]

DEFAULT_HISTORY_LIMIT = 20

_PLAN_SYMBOLS = {
    OperationKind.CREATE: "+",
    OperationKind.UPDATE: "~",
    OperationKind.DELETE: "-",
}


def load_config(scope: str | None, **overrides: Any) -> Config:
    """Load configuration from the environment and apply CLI overrides.

    Raises:
        click.ClickException: If the configuration is invalid.
    """
    try:
        config = Config.from_env(scope=scope)
        given = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **given) if given else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _provider(ctx: click.Context, config: Config) -> ResourceProvider:
    factory: ProviderFactory = ctx.obj.get("provider_factory", build_provider)
    try:
        return factory(config)
    except SecretlessViolationError as e:
        click.echo(f"Security violation: {e}", err=True)
        ctx.exit(2)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def scope_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that works on one scope."""
    options = [
        click.option("--scope", "-s", envvar="CONVERGE_SCOPE", required=True, help="Scope"),
        click.option(
            "--state-dir",
            type=click.Path(file_okay=False, path_type=Path),
            help="Applied state directory [env: CONVERGE_STATE_DIR]",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def source_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options selecting the desired-state repository."""
    options = [
        click.option(
            "--repo",
            type=click.Path(exists=True, file_okay=False, path_type=Path),
            help="Git working copy [env: CONVERGE_REPO]",
        ),
        click.option("--ref", help="Git ref to follow [env: CONVERGE_REF]"),
        click.option("--path", "desired_state_path", help="Desired state subdirectory"),
        click.option("--fetch/--no-fetch", default=None, help="Fetch before resolving the ref"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log output format (logs go to stderr)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO instead of WARNING")
@click.pass_context
def cli(ctx: click.Context, log_format: str, verbose: bool) -> None:
    """converge: declarative infrastructure reconciliation.

    \b
    Quick Start:
        converge plan      # Preview the next cycle
        converge apply     # Reconcile once
        converge run       # Reconcile continuously
    """
    ctx.ensure_object(dict)
    setup_logging(log_format, logging.INFO if verbose else logging.WARNING, stream=sys.stderr)


# =============================================================================
# Reconciliation Commands
# =============================================================================


def _print_plan(plan: Plan, scope: str, commit: str) -> None:
    summary = plan.summary()
    click.echo(
        f"Plan for scope '{scope}' at {commit[:12]}: "
        f"{summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete"
    )
    for warning in plan.drift:
        click.echo(f"  ! {warning}")
    for operation in plan:
        suffix = " (waits for outputs)" if operation.deferred else ""
        click.echo(f"  {_PLAN_SYMBOLS[operation.kind]} {operation}{suffix}")
        for key, change in operation.changes.items():
            click.echo(f"      {key}: {change.before!r} -> {change.after!r}")
        if operation.kind is OperationKind.UPDATE:
            for key in operation.pending:
                if key not in operation.changes:
                    click.echo(f"      {key}: (pending output)")


@cli.command()
@scope_options
@source_options
@click.option("--drift-check", is_flag=True, help="Observe live resources to detect drift")
@click.option("--offline", is_flag=True, help="Trust stored state; never call the provider")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def plan(
    ctx: click.Context,
    scope: str,
    state_dir: Path | None,
    repo: Path | None,
    ref: str | None,
    desired_state_path: str | None,
    fetch: bool | None,
    drift_check: bool,
    offline: bool,
    as_json: bool,
) -> None:
    """Compute and show the plan for the ref's latest commit. Changes nothing."""
    if drift_check and offline:
        raise click.UsageError("--drift-check needs the provider; drop --offline")

    config = load_config(
        scope,
        state_dir=state_dir,
        repo_path=repo,
        ref=ref,
        desired_state_path=desired_state_path,
        fetch=fetch,
    )
    provider = None if offline else _provider(ctx, config)
    source = LocalGitSource(
        config.repo_path, fetch=config.fetch, timeout=config.fetch_timeout_seconds
    )
    store = FileStateStore(config.state_dir, config.scope)

    try:
        commit = source.latest_commit(config.ref)
        tree = source.tree(commit, config.desired_state_path)
        graph = build_graph(load_declarations(tree, config.desired_state_path))
        planner = Planner(store, provider, call_timeout_seconds=config.call_timeout_seconds)
        result = asyncio.run(planner.plan(graph, drift_check=drift_check))
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        _echo_json({"scope": config.scope, "commit": commit, **result.to_dict()})
    else:
        _print_plan(result, config.scope, commit)


@cli.command()
@scope_options
@source_options
@click.option(
    "--drift-check/--no-drift-check",
    default=True,
    show_default=True,
    help="Observe live resources to detect drift",
)
@click.pass_context
def apply(
    ctx: click.Context,
    scope: str,
    state_dir: Path | None,
    repo: Path | None,
    ref: str | None,
    desired_state_path: str | None,
    fetch: bool | None,
    drift_check: bool,
) -> None:
    """Run one reconciliation cycle under the scope lease.

    Exits non-zero unless every operation succeeded.
    """
    config = load_config(
        scope,
        state_dir=state_dir,
        repo_path=repo,
        ref=ref,
        desired_state_path=desired_state_path,
        fetch=fetch,
    )
    if not drift_check:
        config = replace(config, drift_check_interval_seconds=0)

    sync_loop = build_sync_loop(config, _provider(ctx, config))
    cycle = asyncio.run(sync_loop.tick())
    if cycle is None:
        raise click.ClickException(
            f"Scope '{config.scope}' is being reconciled elsewhere; nothing was applied"
        )

    _echo_json(cycle.to_dict())
    if cycle.outcome is not CycleOutcome.SUCCEEDED:
        ctx.exit(1)


@cli.command()
@click.option(
    "--scope",
    "-s",
    "scopes",
    multiple=True,
    required=True,
    help="Scope to reconcile (repeatable) [env: CONVERGE_SCOPE, comma separated]",
    envvar="CONVERGE_SCOPE",
)
@click.pass_context
def run(ctx: click.Context, scopes: tuple[str, ...]) -> None:
    """Run sync loops until SIGTERM/SIGINT.

    With several scopes each one reads its own subdirectory of the desired
    state, named after the scope.
    """
    names = [name.strip() for value in scopes for name in value.split(",") if name.strip()]
    configs = [load_config(name) for name in names]
    if len(configs) > 1:
        configs = [
            load_config(
                config.scope,
                desired_state_path=f"{config.desired_state_path}/{config.scope}".lstrip("/"),
            )
            for config in configs
        ]

    loops = [build_sync_loop(config, _provider(ctx, config)) for config in configs]
    asyncio.run(run_loops(loops))


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect or edit applied state."""
    pass


@state.command("list")
@scope_options
@click.option("--json", "as_json", is_flag=True, help="Print full state documents as JSON")
def state_list(scope: str, state_dir: Path | None, as_json: bool) -> None:
    """List stored resources of a scope."""
    config = load_config(scope, state_dir=state_dir)
    states = FileStateStore(config.state_dir, config.scope).list_states()

    if as_json:
        _echo_json([resource.to_dict() for resource in states])
        return

    if not states:
        click.echo(f"No resources recorded for scope '{config.scope}'")
        return
    for resource in states:
        line = f"{resource.identity}  {resource.status.value}  {resource.provider_id or '-'}"
        if resource.error:
            line += f"  ({resource.error})"
        click.echo(line)


@state.command("show")
@scope_options
@click.argument("identity")
def state_show(scope: str, state_dir: Path | None, identity: str) -> None:
    """Show the stored state of one resource."""
    config = load_config(scope, state_dir=state_dir)
    resource_id = _parse_identity(identity)
    resource = FileStateStore(config.state_dir, config.scope).get(resource_id)
    if resource is None:
        raise click.ClickException(f"{identity} is not recorded in scope '{config.scope}'")
    _echo_json(resource.to_dict())


@state.command("rm")
@scope_options
@click.argument("identity")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def state_rm(scope: str, state_dir: Path | None, identity: str, yes: bool) -> None:
    """Forget a resource without deleting it from the provider.

    The next cycle creates it again if it is still declared.
    """
    config = load_config(scope, state_dir=state_dir)
    resource_id = _parse_identity(identity)
    store = FileStateStore(config.state_dir, config.scope)

    if not yes:
        click.confirm(f"Forget {resource_id} in scope '{config.scope}'?", abort=True)

    async def remove() -> bool:
        async with store.lease(timeout=config.lock_timeout_seconds):
            return store.delete(resource_id)

    try:
        removed = asyncio.run(remove())
    except LockContentionError as e:
        raise click.ClickException(str(e)) from e

    if not removed:
        raise click.ClickException(f"{identity} is not recorded in scope '{config.scope}'")
    click.echo(f"Removed {resource_id} from scope '{config.scope}'")


def _parse_identity(identity: str) -> ResourceId:
    try:
        return ResourceId.parse(identity)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="IDENTITY") from e


@cli.command()
@scope_options
@click.option("--limit", "-n", type=click.IntRange(min=1), default=DEFAULT_HISTORY_LIMIT)
def history(scope: str, state_dir: Path | None, limit: int) -> None:
    """Print recorded sync cycles as JSON, oldest first."""
    config = load_config(scope, state_dir=state_dir)
    _echo_json(FileStateStore(config.state_dir, config.scope).history(limit))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
