"""Main CLI entry point."""

import json
import sys
from typing import Dict, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from stratus_deploy.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE
from stratus_deploy.orchestrator.dependency_graph import Direction
from stratus_deploy.orchestrator.executor import NodeResult, NodeState, RunSummary
from stratus_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from stratus_deploy.orchestrator.planner import ChangeType, Plan
from stratus_deploy.provisioners.aws import AWSProviderAdapter
from stratus_deploy.provisioners.base import ProviderAdapter
from stratus_deploy.state.manager import FileStateStore, S3StateStore, StateStore
from stratus_deploy.template.parser import TemplateParser
from stratus_deploy.utils.aws_client import AWSClientManager
from stratus_deploy.utils.errors import DeploymentError
from stratus_deploy.utils.logging import get_logger, setup_logging
from stratus_deploy.utils.retry import RetryStrategy

console = Console()
logger = get_logger(__name__)

CHANGE_STYLES = {
    ChangeType.CREATE: ('+', 'green'),
    ChangeType.UPDATE: ('~', 'yellow'),
    ChangeType.DELETE: ('-', 'red'),
    ChangeType.NO_CHANGE: ('=', 'dim'),
}

STATE_STYLES = {
    NodeState.APPLIED: 'green',
    NodeState.NO_OP: 'dim',
    NodeState.FAILED: 'red',
    NodeState.SKIPPED: 'yellow',
}


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--env', help='Environment name')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), help='Log level')
@click.pass_context
def cli(ctx, config_path, env, profile, region, log_level):
    """Stratus infrastructure provisioning engine."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['env'] = env
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level


def load_config(ctx) -> Config:
    """Load and validate configuration file, then set up logging from it."""
    config_path = ctx.obj['config_path']
    try:
        config = Config(config_path).load()
        if ctx.obj['env']:
            config.get_environment(ctx.obj['env'])
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)

    setup_logging(ctx.obj['log_level'] or config.logging.level, config.logging.directory)
    return config


def create_provider(
    config: Config,
    stack_name: str,
    env: Optional[str] = None,
    profile: Optional[str] = None,
    region: Optional[str] = None
) -> Tuple[ProviderAdapter, AWSClientManager]:
    """Create the AWS provider adapter and its client manager."""
    clients = AWSClientManager(
        profile=profile or config.get_profile(env),
        region=region or config.get_region(env)
    )
    retry_strategy = RetryStrategy(
        max_retries=config.retry.max_retries,
        base_delay=config.retry.base_delay,
        max_delay=config.retry.max_delay
    )
    return AWSProviderAdapter(clients, stack_name, retry_strategy=retry_strategy), clients


def create_state_store(config: Config, stack_name: str, clients: AWSClientManager, env: Optional[str] = None) -> StateStore:
    """Create the configured state store for a stack."""
    state_config = config.get_state(env)
    if state_config.backend == 's3':
        return S3StateStore(
            bucket=state_config.bucket,
            prefix=f"{state_config.prefix}/{stack_name}",
            client=clients.get_client('s3')
        )
    return FileStateStore(state_config.directory)


def create_orchestrator(
    ctx,
    config: Config,
    parallel: Optional[bool] = None,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies."""
    env = ctx.obj['env']
    stack_name = config.stack_name(env)

    provider, clients = create_provider(
        config, stack_name, env=env, profile=ctx.obj['profile'], region=ctx.obj['region']
    )
    state_store = create_state_store(config, stack_name, clients, env=env)

    execution = config.execution
    if parallel is not None or max_workers is not None:
        execution = execution.model_copy(update={
            key: value for key, value in {'parallel': parallel, 'max_workers': max_workers}.items()
            if value is not None
        })

    return DeploymentOrchestrator(
        provider=provider,
        state_store=state_store,
        stack_name=stack_name,
        max_workers=execution.workers,
        timeout=timeout if timeout is not None else execution.timeout
    )


def parse_parameters(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse KEY=VALUE pairs given on the command line."""
    parameters = {}
    for value in values:
        key, separator, item = value.partition('=')
        if not separator or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{value}'", param_hint='--param')
        parameters[key] = item
    return parameters


def display_plan(plan: Plan) -> None:
    """Print a plan as a table."""
    waves = plan.get_waves()
    table = Table(title="Plan")
    table.add_column("", width=1)
    table.add_column("Wave", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("Change")
    table.add_column("Reason", style="dim")

    for step in plan.steps:
        symbol, style = CHANGE_STYLES[step.change_type]
        table.add_row(
            f"[{style}]{symbol}[/{style}]",
            str(waves.get(step.node_id, "")),
            step.node_id,
            step.resource_type,
            f"[{style}]{step.change_type.value}[/{style}]",
            step.reason or ""
        )

    console.print(table)
    summary = plan.get_summary()
    console.print(
        f"\n[bold]{summary['create']}[/bold] to create, [bold]{summary['update']}[/bold] to update, "
        f"[bold]{summary['delete']}[/bold] to delete, {summary['no_change']} unchanged"
    )


def display_summary(summary: RunSummary, title: str) -> None:
    """Print per-node results and counts of a run."""
    table = Table(title=title)
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("Change")
    table.add_column("Result")
    table.add_column("Provider ID", style="dim")
    table.add_column("Detail")

    for result in summary.results.values():
        style = STATE_STYLES.get(result.state, 'white')
        detail = result.error.message if result.error else (result.reason or "")
        table.add_row(
            result.node_id,
            result.resource_type,
            result.change_type.value,
            f"[{style}]{result.state.value}[/{style}]",
            result.provider_id or "",
            detail
        )
    console.print(table)

    for error in summary.cleanup_errors:
        console.print(f"[red]Cleanup failed:[/red] {error.message}")

    counts = summary.get_counts()
    border = "green" if summary.is_success() else "red"
    status = "[green]Succeeded[/green]" if summary.is_success() else "[red]Failed[/red]"
    console.print(Panel.fit(
        f"{status}\n\n"
        f"Applied: {counts['applied']}\n"
        f"Unchanged: {counts['no_op']}\n"
        f"Failed: {counts['failed']}\n"
        f"Skipped: {counts['skipped']}\n"
        f"Duration: {summary.duration:.2f}s",
        title=title,
        border_style=border
    ))


def display_outputs(outputs: Dict[str, object], errors: Dict[str, str], output_format: str = 'table') -> None:
    if output_format == 'json':
        click.echo(json.dumps(outputs, indent=2, sort_keys=True, default=str))
        return

    if not outputs and not errors:
        console.print("[dim]No outputs defined[/dim]")
        return

    table = Table(title="Outputs")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for name, value in outputs.items():
        table.add_row(name, str(value))
    for name, message in errors.items():
        table.add_row(name, f"[yellow]unavailable: {message}[/yellow]")
    console.print(table)


def run_with_progress(description: str, total: int, func):
    """Run ``func(progress_callback)`` while showing a progress bar."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task(f"[cyan]{description}", total=total or None)

        def on_result(result: NodeResult):
            mark = "[green]ok[/green]" if result.is_success() else f"[red]{result.state.value}[/red]"
            progress.update(task_id, advance=1, description=f"{mark} {result.node_id}")

        return func(on_result)


@cli.command()
@click.argument('template', required=False, type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def validate(ctx, template):
    """Parse a template and check references and ordering."""
    if template is None:
        template = str(load_config(ctx).template_path())
    else:
        setup_logging(ctx.obj['log_level'] or 'warning', None)

    try:
        graph = TemplateParser().parse_file(template)
        order = graph.to_dependency_graph().order(Direction.FORWARD)
    except DeploymentError as e:
        console.print(f"[red]Invalid template:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)

    table = Table(title=f"Resources ({len(graph)})")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("Depends on", style="dim")
    for index, node_id in enumerate(order, 1):
        node = graph.nodes[node_id]
        table.add_row(str(index), node_id, node.type, ", ".join(graph.dependencies_of(node_id)))
    console.print(table)
    console.print(f"[green]Template is valid:[/green] {len(graph.parameters)} parameters, "
                  f"{len(graph)} resources, {len(graph.outputs)} outputs")


@cli.command()
@click.option('--param', '-p', 'params', multiple=True, help='Parameter value (KEY=VALUE)')
@click.pass_context
def plan(ctx, params):
    """Show what apply would change."""
    cfg = load_config(ctx)
    try:
        orchestrator = create_orchestrator(ctx, cfg)
        graph = orchestrator.load_template(cfg.template_path())
        parameters = {**cfg.get_parameters(ctx.obj['env']), **parse_parameters(params)}
        display_plan(orchestrator.plan(graph, parameters))
    except DeploymentError as e:
        console.print(f"[red]Planning failed:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)


@cli.command()
@click.option('--param', '-p', 'params', multiple=True, help='Parameter value (KEY=VALUE)')
@click.option('--parallel/--sequential', default=None, help='Apply independent branches concurrently')
@click.option('--max-workers', type=click.IntRange(1, 64), help='Maximum concurrent provider calls')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Per-call timeout in seconds')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def apply(ctx, params, parallel, max_workers, timeout, yes):
    """Reconcile infrastructure with the template."""
    cfg = load_config(ctx)
    try:
        orchestrator = create_orchestrator(ctx, cfg, parallel=parallel, max_workers=max_workers, timeout=timeout)
        graph = orchestrator.load_template(cfg.template_path())
        parameters = {**cfg.get_parameters(ctx.obj['env']), **parse_parameters(params)}

        preview = orchestrator.plan(graph, parameters)
        display_plan(preview)
        if not yes and preview.has_changes():
            if not click.confirm("Apply these changes?", default=False):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

        summary = run_with_progress(
            "Applying...",
            len(preview.steps),
            lambda callback: orchestrator.apply(graph, parameters, progress_callback=callback)
        )
    except DeploymentError as e:
        console.print(f"[red]Apply error:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)

    console.print()
    display_summary(summary, "Apply")
    if summary.outputs or summary.output_errors:
        display_outputs(summary.outputs, summary.output_errors)
    if not summary.is_success():
        sys.exit(1)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Delete every resource recorded in state."""
    cfg = load_config(ctx)
    stack_name = cfg.stack_name(ctx.obj['env'])

    if not yes:
        console.print(Panel.fit(
            f"[bold red]This will delete every resource of stack {stack_name}[/bold red]",
            title="Destroy",
            border_style="red"
        ))
        if not click.confirm("Are you sure you want to destroy these resources?", default=False):
            console.print("[yellow]Destruction cancelled[/yellow]")
            return

    try:
        orchestrator = create_orchestrator(ctx, cfg)
        summary = run_with_progress("Destroying...", 0, lambda callback: orchestrator.destroy(callback))
    except DeploymentError as e:
        console.print(f"[red]Destruction error:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)

    if not summary.results:
        console.print("[dim]No resources to destroy[/dim]")
        return

    console.print()
    display_summary(summary, "Destroy")
    if not summary.is_success():
        console.print("\n[red]Resources may need manual cleanup[/red]")
        sys.exit(1)


@cli.command()
@click.option('--param', '-p', 'params', multiple=True, help='Parameter value (KEY=VALUE)')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table')
@click.pass_context
def outputs(ctx, params, output_format):
    """Show stack outputs from recorded state."""
    cfg = load_config(ctx)
    try:
        orchestrator = create_orchestrator(ctx, cfg)
        graph = orchestrator.load_template(cfg.template_path())
        parameters = {**cfg.get_parameters(ctx.obj['env']), **parse_parameters(params)}
        values, errors = orchestrator.outputs(graph, parameters)
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)

    display_outputs(values, errors, output_format)


@cli.command()
@click.pass_context
def refresh(ctx):
    """Update recorded state from the provider."""
    cfg = load_config(ctx)
    try:
        result = create_orchestrator(ctx, cfg).refresh()
    except DeploymentError as e:
        console.print(f"[red]Refresh error:[/red] {e.to_user_message()}", markup=False)
        sys.exit(1)

    for node_id in result.removed:
        console.print(f"  [red]-[/red] {node_id} no longer exists")
    for node_id in result.updated:
        console.print(f"  [yellow]~[/yellow] {node_id} outputs updated")
    console.print(
        f"[green]Refresh complete:[/green] {len(result.unchanged)} unchanged, "
        f"{len(result.updated)} updated, {len(result.removed)} removed"
    )


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
