"""Main CLI entry point."""

import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from stackrecon import __version__
from stackrecon.client import CloudFormationStackClient, RemoteStackClient
from stackrecon.config import DEFAULT_CONFIG_FILE, Config, ConfigValidationError
from stackrecon.orchestrator import ReconcileResult, ReconciliationEngine
from stackrecon.state.models import StackStatus
from stackrecon.utils.aws_client import AWSClientManager
from stackrecon.utils.cancellation import CancellationToken
from stackrecon.utils.errors import ReconcileError
from stackrecon.utils.logging import LogContext, get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    'complete': 'green',
    'in_progress': 'yellow',
    'failed': 'red',
}


@click.group()
@click.version_option(__version__, prog_name='stackrecon')
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, profile, region, log_level):
    """CloudFormation stack reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)


def load_optional_config(ctx) -> Optional[Config]:
    """Load the configuration file if there is one; commands that take a stack name work without it."""
    if not Path(ctx.obj['config_path']).exists():
        return None
    return load_config(ctx.obj['config_path'])


def get_client(ctx, config: Optional[Config] = None) -> RemoteStackClient:
    """Return the client placed in the context, or build one from the AWS session."""
    if ctx.obj.get('client') is not None:
        return ctx.obj['client']

    project = config.project if config else None
    profile = ctx.obj['profile'] or (project.profile if project else None)
    region = ctx.obj['region'] or (project.region if project else None)
    try:
        manager = AWSClientManager(profile=profile, region=region)
        client = CloudFormationStackClient.from_manager(manager)
    except Exception as e:
        console.print(f"[red]Error creating AWS session:[/red] {e}")
        sys.exit(1)

    ctx.obj['client'] = client
    return client


def fail(error: ReconcileError) -> None:
    """Print a reconciliation error and exit."""
    console.print(error.to_user_message(), style="red", markup=False)
    sys.exit(1)


def style_status(status: StackStatus) -> str:
    """Colour a stack status for table output."""
    if status.is_failure:
        style = STATUS_STYLES['failed']
    elif status.in_progress:
        style = STATUS_STYLES['in_progress']
    else:
        style = STATUS_STYLES['complete']
    return f"[{style}]{status.value}[/{style}]"


@contextmanager
def cancel_on_interrupt(cancel: CancellationToken):
    """Turn Ctrl+C into a cancellation of local waits."""
    def handler(signum, frame):
        console.print("\n[yellow]Interrupted; stopping after the current call. "
                      "Submitted operations keep running in CloudFormation.[/yellow]")
        cancel.cancel("interrupted by user")

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not on the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.argument('stacks', nargs=-1)
@click.pass_context
def plan(ctx, stacks):
    """Show the actions needed to reconcile STACKS (all declared stacks by default)."""
    config = load_config(ctx.obj['config_path'])
    engine = ReconciliationEngine(get_client(ctx, config), settings=config.settings)

    try:
        descriptors = config.get_descriptors(list(stacks), region=ctx.obj['region'])
    except ReconcileError as e:
        fail(e)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Stack", style="cyan")
    table.add_column("Status")
    table.add_column("Actions")
    table.add_column("Reason")

    errors: List[ReconcileError] = []
    details: Dict[str, List[str]] = {}
    for desired in descriptors:
        try:
            action_plan = engine.plan(desired)
        except ReconcileError as e:
            errors.append(e)
            table.add_row(desired.name, "-", "[red]error[/red]", e.message)
            continue

        status = action_plan.observed.status if action_plan.observed.exists else None
        table.add_row(
            desired.name,
            style_status(status) if status else "[dim]absent[/dim]",
            ", ".join(a.action_type.value for a in action_plan) or "[green]no changes[/green]",
            action_plan.actions[0].reason if action_plan.actions else ""
        )
        if action_plan.differences:
            details[desired.name] = action_plan.differences

    console.print(table)
    for name, differences in details.items():
        console.print(f"\n[bold]{name}[/bold]")
        for difference in differences:
            console.print(f"  ~ {difference}", markup=False)

    if errors:
        for error in errors:
            console.print(error.to_user_message(), markup=False)
        sys.exit(1)


@cli.command()
@click.argument('stacks', nargs=-1)
@click.option('--parallel', is_flag=True, help='Reconcile stacks in parallel')
@click.option('--max-workers', type=int, help='Maximum stacks reconciled at once')
@click.pass_context
def reconcile(ctx, stacks, parallel, max_workers):
    """Bring STACKS to their declared state (all declared stacks by default)."""
    config = load_config(ctx.obj['config_path'])
    engine = ReconciliationEngine(get_client(ctx, config), settings=config.settings)

    try:
        descriptors = config.get_descriptors(list(stacks), region=ctx.obj['region'])
    except ReconcileError as e:
        fail(e)

    cancel = CancellationToken()
    results: Dict[str, ReconcileResult] = {}

    with cancel_on_interrupt(cancel):
        if parallel:
            results = engine.reconcile_many(descriptors, max_workers=max_workers, cancel=cancel)
        else:
            for desired in descriptors:
                with LogContext(stack=desired.identity):
                    try:
                        results[desired.identity] = engine.reconcile(desired, cancel=cancel)
                    except ReconcileError as e:
                        results[desired.identity] = getattr(e, 'result', None) or ReconcileResult(
                            identity=desired.identity, desired=desired, error=e
                        )
                if cancel.cancelled:
                    break

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Stack", style="cyan")
    table.add_column("Result")
    table.add_column("Actions")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    for desired in descriptors:
        result = results.get(desired.identity)
        if result is None:
            table.add_row(desired.name, "[dim]skipped[/dim]", "", "", "")
            continue
        if result.is_noop():
            outcome = "[green]in sync[/green]"
        elif result.is_success():
            outcome = "[green]reconciled[/green]"
        else:
            outcome = "[red]failed[/red]"
        table.add_row(
            desired.name,
            outcome,
            ", ".join(a.action_type.value for a in result.plan) if result.plan else "",
            style_status(result.observed.status) if result.observed and result.observed.exists else "",
            f"{result.duration:.1f}s"
        )

    console.print(table)

    failures = [r for r in results.values() if r.error is not None]
    for result in failures:
        console.print()
        console.print(result.error.to_user_message(), markup=False)

    if failures or len(results) < len(descriptors):
        sys.exit(1)


@cli.command(name='list')
@click.option('--status', 'statuses', multiple=True, help='Only list stacks in this status (repeatable)')
@click.pass_context
def list_stacks(ctx, statuses):
    """List stacks in the account and region."""
    client = get_client(ctx, load_optional_config(ctx))

    try:
        summaries = client.list_stacks(status_filter=[s.upper() for s in statuses] or None)
    except ReconcileError as e:
        fail(e)

    if not summaries:
        console.print("[yellow]No stacks found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Drift")
    table.add_column("Created")

    for summary in summaries:
        table.add_row(
            summary.name,
            style_status(summary.status),
            summary.drift_status.value,
            summary.created_at.strftime('%Y-%m-%d %H:%M:%S') if summary.created_at else ""
        )

    console.print(table)


@cli.command()
@click.argument('stack')
@click.option('--timeout', type=float, help='Seconds to wait for the drift scan')
@click.pass_context
def drift(ctx, stack, timeout):
    """Run drift detection on STACK and show drifted resources."""
    config = load_optional_config(ctx)
    engine = ReconciliationEngine(get_client(ctx, config), settings=config.settings if config else None)
    if timeout is not None:
        engine.settings = engine.settings.model_copy(update={'drift_timeout': timeout})

    cancel = CancellationToken()
    try:
        with cancel_on_interrupt(cancel), console.status("[cyan]Detecting drift..."):
            status, drifts = engine.detect_drift(stack, cancel=cancel)
    except ReconcileError as e:
        fail(e)

    colour = 'green' if status.stack_drift_status.value == 'IN_SYNC' else 'red'
    console.print(
        f"Stack [cyan]{stack}[/cyan]: [{colour}]{status.stack_drift_status.value}[/{colour}] "
        f"({status.drifted_resource_count} drifted resource(s))"
    )

    drifted = [d for d in drifts if d.drift_status not in ('IN_SYNC', 'NOT_CHECKED')]
    if not drifted:
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Drift")
    table.add_column("Properties")

    for resource in drifted:
        table.add_row(
            resource.logical_resource_id or "",
            resource.resource_type or "",
            resource.drift_status,
            ", ".join(p.get('PropertyPath', '') for p in resource.property_differences)
        )

    console.print(table)


@cli.command()
@click.argument('stack')
@click.option('--limit', default=20, show_default=True, help='Number of events to show')
@click.option('--failed', is_flag=True, help='Only show failed events')
@click.pass_context
def events(ctx, stack, limit, failed):
    """Show recent events of STACK, newest first."""
    client = get_client(ctx, load_optional_config(ctx))

    try:
        stack_events = client.describe_stack_events(stack, limit=limit)
    except ReconcileError as e:
        fail(e)

    if failed:
        stack_events = [event for event in stack_events if event.is_failure]

    if not stack_events:
        console.print("[yellow]No events found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Time")
    table.add_column("Resource", style="cyan")
    table.add_column("Status")
    table.add_column("Reason")

    for event in stack_events:
        status_style = 'red' if event.is_failure else 'white'
        table.add_row(
            event.timestamp.strftime('%Y-%m-%d %H:%M:%S') if event.timestamp else "",
            event.logical_resource_id or "",
            f"[{status_style}]{event.resource_status or ''}[/{status_style}]",
            event.status_reason or ""
        )

    console.print(table)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
