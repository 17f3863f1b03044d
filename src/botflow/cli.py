"""
botflow CLI
"""
import asyncio
import json
from typing import Any, Dict, Optional, Tuple

import click
import yaml

from .config import EngineSettings, configure_logging
from .core import WorkflowEngine, WorkflowParser, ExecutionService, topological_order
from .exceptions import WorkflowEngineError
from .integrations import HttpxTransport, LocalActionRegistry, LoggingTracer, register_builtin_actions
from .models.execution import build_runtime_context
from .storage import FileExecutionStore, InMemoryExecutionStore, InMemoryWorkflowRepository


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """解析 KEY=VALUE 形式的变量，值按 YAML 标量解析"""
    variables: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        key, raw = pair.split("=", 1)
        variables[key.strip()] = yaml.safe_load(raw) if raw else ""
    return variables


def _build_service(settings: EngineSettings, workflow_files: Tuple[str, ...], store_path: Optional[str]):
    parser = WorkflowParser()
    repository = InMemoryWorkflowRepository()
    registry = LocalActionRegistry(http_transport=HttpxTransport(timeout=settings.http_timeout))
    register_builtin_actions(registry)
    engine = WorkflowEngine(registry, repository, settings=settings, tracer=LoggingTracer())

    path = store_path or settings.store_path
    store = FileExecutionStore(path) if path else InMemoryExecutionStore()
    service = ExecutionService(engine, store)

    async def _load():
        loaded = []
        for workflow_file in workflow_files:
            workflow = parser.parse_file(workflow_file)
            await repository.save(workflow)
            loaded.append(workflow)
        return loaded

    return service, _load


def _echo_record(record):
    result = record.result
    payload = {
        "execution_id": record.execution_id,
        "status": record.status.value,
    }
    if record.status_text:
        payload["status_text"] = record.status_text
    if result is not None:
        payload["success"] = result.success
        payload["text"] = result.new_text
        payload["error"] = result.error
        payload["variables"] = result.variables
        if result.pending is not None:
            payload["await"] = result.pending.await_config
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to BOTFLOW_LOG_LEVEL)')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='.env file to load')
@click.pass_context
def cli(ctx, log_level, env_file):
    """botflow workflow runtime CLI"""
    settings = EngineSettings.from_env(env_file)
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--include', 'includes', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Additional workflow files available to sub_workflow nodes')
@click.option('--var', 'var_pairs', multiple=True, help='Runtime variable KEY=VALUE')
@click.option('--chat-id', default='0', help='Chat id of the runtime context')
@click.option('--user-id', default=None, help='User id of the runtime context')
@click.option('--store', 'store_path', default=None, help='Directory for suspended executions')
@click.pass_obj
def run(settings, workflow_file, includes, var_pairs, chat_id, user_id, store_path):
    """Run a workflow from file"""
    async def _run():
        service, load = _build_service(settings, (workflow_file,) + includes, store_path)
        workflows = await load()
        runtime = build_runtime_context(
            {"chat_id": chat_id, "user_id": user_id, "variables": _parse_vars(var_pairs)}
        )
        return await service.start(workflows[0], runtime=runtime, preview=settings.preview)

    try:
        record = asyncio.run(_run())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    _echo_record(record)


@cli.command()
@click.argument('workflow_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--chat-id', required=True, help='Chat id of the waiting conversation')
@click.option('--user-id', default=None, help='User id of the waiting conversation')
@click.option('--text', required=True, help='User reply')
@click.option('--store', 'store_path', default=None, help='Directory for suspended executions')
@click.pass_obj
def resume(settings, workflow_files, chat_id, user_id, text, store_path):
    """Deliver a user reply to a suspended execution"""
    if not (store_path or settings.store_path):
        raise click.UsageError("resume needs a persistent store (--store or BOTFLOW_STORE_PATH)")

    async def _resume():
        service, load = _build_service(settings, workflow_files, store_path)
        await load()
        return await service.submit_user_input(chat_id, user_id, text)

    try:
        record = asyncio.run(_resume())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    if record is None:
        raise click.ClickException(f"no execution is waiting for chat {chat_id}")
    _echo_record(record)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow file"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    click.echo(f"Workflow {workflow.id} is valid ({len(workflow.nodes)} nodes, {len(workflow.edges)} edges)")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def order(workflow_file):
    """Print the execution order of a workflow"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
        node_ids = topological_order(workflow)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    for node_id in node_ids:
        click.echo(node_id)


@cli.command()
def actions():
    """List the builtin actions"""
    registry = register_builtin_actions(LocalActionRegistry())
    for definition in registry.list_actions():
        click.echo(f"{definition.action_id}\t{definition.description}")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
