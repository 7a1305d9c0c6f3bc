"""
Click CLI for vpcplan.
"""

import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, Optional

import click
from botocore.exceptions import BotoCoreError

from .config import NetworkConfig, load_config
from .errors import ConfigurationError, CyclicDependencyError
from .events import EventTypes, count_events, emit_event, get_status_from_events
from .executor import ApplyExecutor
from .ids import is_valid_run_id, new_run_id, run_started_at
from .planner import Plan, plan_from_config
from .provider import AwsProvider, Provider, make_ec2_client
from .report import format_plan, format_report, summarize_ids
from .retry import RetryPolicy
from .state import (
    cleanup_run,
    create_run_dir,
    list_runs,
    read_config_json,
    read_report_json,
    run_exists,
    write_config_json,
    write_plan_json,
    write_report_json,
)
from .tags import parse_user_tags

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.pass_context
def main(ctx, verbose, output_json):
    """vpcplan - plan and apply VPC topologies idempotently."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _json_output(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _human_output(message: str) -> None:
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(message: str, code: int, extra: Optional[Dict[str, Any]] = None) -> None:
    if click.get_current_context().obj.get('json', False):
        _json_output({'error': message, **(extra or {})})
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def config_options(fn):
    """Options shared by commands that read a configuration file."""
    fn = click.option('--tag', 'tags', multiple=True, help="Extra tag 'key=value' (repeatable)")(fn)
    fn = click.option('--environment', help='Override the Environment tag')(fn)
    fn = click.option('--region', help='Override the AWS region')(fn)
    fn = click.argument('config_path', type=click.Path(dir_okay=False))(fn)
    return fn


def _load(config_path: str, region: Optional[str], environment: Optional[str], tags) -> NetworkConfig:
    try:
        overrides = {
            'region': region,
            'environment': environment,
            'tags': parse_user_tags(tags),
        }
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return load_config(config_path, overrides)


def _plan_or_exit(config_path, region, environment, tags):
    try:
        config = _load(config_path, region, environment, tags)
        return config, plan_from_config(config)
    except (ConfigurationError, CyclicDependencyError) as e:
        _fail(str(e), EXIT_INVALID, {'error_type': type(e).__name__, 'keys': e.keys})


def _make_provider(config: NetworkConfig, profile: Optional[str], timeout: int) -> Provider:
    return AwsProvider(make_ec2_client(config.region, profile=profile, timeout=timeout))


def _install_interrupt_handler(cancel_event: threading.Event):
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        click.echo("Interrupt received; stopping after the current step "
                   "(press Ctrl+C again to abort immediately)", err=True)
        cancel_event.set()

    return signal.signal(signal.SIGINT, handler)


def _run(command: str, config: NetworkConfig, network_plan: Plan, profile: Optional[str],
         timeout: int, max_attempts: int):
    try:
        provider = _make_provider(config, profile, timeout)
    except BotoCoreError as e:
        _fail(f"Could not create AWS client: {e}", EXIT_FAILED)

    run_id = new_run_id()
    create_run_dir(run_id)
    write_config_json(run_id, config.to_dict(), command)
    write_plan_json(run_id, network_plan.to_dict())
    emit_event(run_id, EventTypes.PLAN_BUILT, {'steps': len(network_plan)})

    cancel_event = threading.Event()
    previous = _install_interrupt_handler(cancel_event)
    try:
        executor = ApplyExecutor(
            provider,
            retry=RetryPolicy(max_attempts=max_attempts),
            cancel_event=cancel_event,
            run_id=run_id,
        )
        if command == 'apply':
            result = executor.apply(network_plan)
        else:
            result = executor.destroy(network_plan)
    finally:
        signal.signal(signal.SIGINT, previous)

    report = result.to_dict()
    write_report_json(run_id, report)
    return result, report


def provider_options(fn):
    fn = click.option('--max-attempts', default=5, show_default=True,
                      help='Attempts per step for transient provider errors')(fn)
    fn = click.option('--timeout', default=30, show_default=True,
                      help='Per-call provider timeout in seconds')(fn)
    fn = click.option('--profile', help='AWS named profile')(fn)
    return fn


@main.command()
@config_options
def plan(config_path, region, environment, tags):
    """Validate a configuration and print the ordered plan."""
    config, network_plan = _plan_or_exit(config_path, region, environment, tags)

    if click.get_current_context().obj.get('json', False):
        _json_output({'vpc': config.name, 'region': config.region, **network_plan.to_dict()})
    else:
        _human_output(f"Plan for VPC {config.name} ({config.cidr}) in {config.region}:")
        _human_output(format_plan(network_plan))


@main.command()
@config_options
@provider_options
def apply(config_path, region, environment, tags, profile, timeout, max_attempts):
    """Create the configured VPC topology, reusing what already exists."""
    config, network_plan = _plan_or_exit(config_path, region, environment, tags)
    _human_output(f"Applying {len(network_plan)} steps for VPC {config.name} in {config.region}")

    result, report = _run('apply', config, network_plan, profile, timeout, max_attempts)

    if click.get_current_context().obj.get('json', False):
        _json_output({**report, 'ids': summarize_ids(result)})
    else:
        _human_output(format_report(report))
        _human_output(f"\nRun: {result.run_id} ({result.created} created, {result.reused} reused)")

    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


@main.command()
@config_options
@provider_options
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
def destroy(config_path, region, environment, tags, profile, timeout, max_attempts, yes):
    """Delete the configured VPC topology in reverse dependency order."""
    config, network_plan = _plan_or_exit(config_path, region, environment, tags)

    if not yes:
        if not click.confirm(f"Destroy VPC {config.name} and its {len(network_plan) - 1} dependent resources?"):
            _human_output("Aborted")
            sys.exit(EXIT_FAILED)

    result, report = _run('destroy', config, network_plan, profile, timeout, max_attempts)

    if click.get_current_context().obj.get('json', False):
        _json_output(report)
    else:
        _human_output(format_report(report))
        _human_output(f"\nRun: {result.run_id}")

    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


@main.command()
def runs():
    """List previous runs."""
    rows = []
    for run_id in list_runs():
        try:
            command = read_config_json(run_id).get('command', '?')
        except FileNotFoundError:
            continue
        counts = count_events(run_id)
        started = run_started_at(run_id)
        rows.append({
            'run_id': run_id,
            'command': command,
            'status': get_status_from_events(run_id),
            'started_at': started.isoformat() if started else None,
            'created': counts.get(EventTypes.RESOURCE_CREATED, 0),
            'reused': counts.get(EventTypes.RESOURCE_REUSED, 0),
            'deleted': counts.get(EventTypes.RESOURCE_DELETED, 0),
            'retries': counts.get(EventTypes.RETRY, 0),
        })

    if click.get_current_context().obj.get('json', False):
        _json_output({'runs': rows})
    elif not rows:
        _human_output("No runs found")
    else:
        for row in rows:
            changes = (f"{row['deleted']} deleted" if row['command'] == 'destroy'
                       else f"{row['created']} created, {row['reused']} reused")
            _human_output(f"{row['run_id']}  {row['command']:<8} {row['status']:<10} "
                          f"{changes}, {row['retries']} retries")


@main.command()
@click.argument('run_id')
def show(run_id):
    """Show the report of a previous run."""
    if not is_valid_run_id(run_id) or not run_exists(run_id):
        _fail(f"Run {run_id} not found", EXIT_INVALID)

    report = read_report_json(run_id)
    if report is None:
        _fail(f"Run {run_id} has no report (status: {get_status_from_events(run_id)})", EXIT_FAILED)

    if click.get_current_context().obj.get('json', False):
        _json_output(report)
    else:
        _human_output(format_report(report))


@main.command()
@click.argument('run_id')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
def forget(run_id, yes):
    """Delete the local record of a run. Cloud resources are not touched."""
    if not is_valid_run_id(run_id) or not run_exists(run_id):
        _fail(f"Run {run_id} not found", EXIT_INVALID)

    if not yes:
        if not click.confirm(f"Delete the local record of run {run_id}?"):
            _human_output("Aborted")
            sys.exit(EXIT_FAILED)

    cleanup_run(run_id)
    logger.debug(f"Removed run directory for {run_id}")

    if click.get_current_context().obj.get('json', False):
        _json_output({'run_id': run_id, 'forgotten': True})
    else:
        _human_output(f"Forgot run {run_id}")


if __name__ == "__main__":
    main()
