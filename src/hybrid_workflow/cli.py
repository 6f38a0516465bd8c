"""
Hybrid Workflow Runtime CLI
"""
import asyncio
import json
import sys

import click

from .config import EngineSettings, configure_logging
from .core.engine import WorkflowEngine
from .core.parser import WorkflowParser
from .core.scheduler import DependencyScheduler
from .core.validator import WorkflowValidator
from .exceptions import WorkflowEngineError
from .integrations import EventBus, MockAgentRuntime
from .tools.registry import LocalToolRegistry


def _load(workflow_file):
    try:
        return WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
@click.pass_context
def cli(ctx, log_level):
    """Hybrid Workflow Runtime CLI"""
    settings = EngineSettings.from_env()
    if log_level:
        settings.log_level = log_level
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow file"""
    workflow = _load(workflow_file)
    result = WorkflowValidator().validate(workflow)

    for error in result.errors:
        click.echo(f"ERROR: {error}")
    for warning in result.warnings:
        click.echo(f"WARNING: {warning}")

    if not result.valid:
        sys.exit(1)
    click.echo(f"Workflow '{workflow.name or workflow.id}' is valid")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def order(workflow_file):
    """Print the topological execution order"""
    workflow = _load(workflow_file)
    cycle = WorkflowValidator().find_cycle(workflow)
    if cycle:
        click.echo(f"Error: workflow contains a cycle: {' -> '.join(cycle)}", err=True)
        sys.exit(1)

    for index, node_id in enumerate(DependencyScheduler().topological_order(workflow), 1):
        click.echo(f"{index}. {node_id}")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--input', 'input_json', default=None, help='Run input as a JSON string')
@click.option('--priority', default='normal',
              type=click.Choice(['low', 'normal', 'high', 'critical']))
@click.pass_obj
def run(settings, workflow_file, input_json, priority):
    """Run a workflow against the mock agent runtime"""
    workflow = _load(workflow_file)
    try:
        input_data = json.loads(input_json) if input_json else None
    except json.JSONDecodeError as e:
        click.echo(f"Error: invalid --input JSON: {e}", err=True)
        sys.exit(1)

    async def _run():
        engine = WorkflowEngine(
            settings=settings,
            event_bus=EventBus(),
            agent_runtime=MockAgentRuntime(echo_unknown=True),
            tool_registry=LocalToolRegistry()
        )
        try:
            workflow_id = await engine.create_workflow(workflow)
            run_id = await engine.submit_run(workflow_id, input_data, priority=priority)
            return await engine.run_now(run_id)
        finally:
            await engine.close()

    try:
        execution = asyncio.run(_run())
    except WorkflowEngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps({
        "run_id": execution.id,
        "status": execution.status.value,
        "output": execution.output,
        "error": execution.error_message,
        "summary": execution.summary()
    }, indent=2, default=str, ensure_ascii=False))

    if execution.status.value != "completed":
        sys.exit(1)


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
