"""
Command Line Interface for apphost.
"""
import logging
import os
import signal

import click

from ..MANAGERS.service_orchestrator import (
    EXIT_DEFINITION_ERROR,
    EXIT_TOPOLOGY_ERROR,
    ServiceOrchestrator,
)
from ..MANAGERS.topology_builder import Topology, TopologyBuilder
from ..MODELS.apphost_config import AppHostConfig, OrchestratorSettings
from ..PARSERS.apphost_parser import AppHostParser
from ..errors import DefinitionError, TopologyError

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.option('--file', '-f', default='apphost.yaml', envvar='APPHOST_FILE',
              show_default=True, help='Definition file path')
@click.option('--environment', '-e', default='Production', envvar='APPHOST_ENVIRONMENT',
              show_default=True, help='Active environment label')
@click.option('--log-level', default='INFO', envvar='APPHOST_LOG_LEVEL', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, file, environment, log_level):
    """
    apphost - service composition and startup orchestrator.

    Starts the services declared for an environment in dependency order,
    wiring endpoint addresses into their environment.
    """
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['environment'] = environment


def _load_config(ctx) -> AppHostConfig:
    try:
        return AppHostParser().parse(ctx.obj['file'])
    except DefinitionError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_DEFINITION_ERROR)


def _build(ctx, config: AppHostConfig, settings: OrchestratorSettings) -> Topology:
    try:
        return TopologyBuilder.from_settings(settings).build(config.blocks, ctx.obj['environment'])
    except TopologyError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_TOPOLOGY_ERROR)


@cli.command()
@click.option('--dependency-timeout', type=float, envvar='APPHOST_DEPENDENCY_TIMEOUT',
              help='Seconds to wait for wait-for dependencies')
@click.option('--health-timeout', type=float, envvar='APPHOST_HEALTH_TIMEOUT',
              help='Seconds a service has to become healthy')
@click.option('--stop-on-failure/--keep-going', default=None,
              help='Stop everything when any service fails')
@click.pass_context
def run(ctx, dependency_timeout, health_timeout, stop_on_failure):
    """Start services and run until interrupted."""
    config = _load_config(ctx)
    overrides = {
        'dependency_timeout': dependency_timeout,
        'health_timeout': health_timeout,
        'stop_on_failure': stop_on_failure,
    }
    settings = OrchestratorSettings(**{
        **config.settings.model_dump(),
        **{k: v for k, v in overrides.items() if v is not None},
    })
    topology = _build(ctx, config, settings)

    base_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    orchestrator = ServiceOrchestrator(topology, settings=settings, base_dir=base_dir)
    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.request_shutdown())

    if topology.is_empty:
        click.echo(f"No services defined for environment '{topology.environment}'.")
    else:
        click.echo("Running... Press Ctrl+C to stop.")

    try:
        report = orchestrator.run()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    if report.services:
        click.echo(report.format())
    if report.unsettled:
        click.echo(f"Not healthy or stopped: {', '.join(report.unsettled)}", err=True)
    ctx.exit(report.exit_code)


@cli.command()
@click.pass_context
def validate(ctx):
    """Check the topology for the active environment."""
    config = _load_config(ctx)
    topology = _build(ctx, config, config.settings)
    click.echo(f"Topology for '{topology.environment}' is valid: {len(topology)} service(s).")


@cli.command()
@click.pass_context
def graph(ctx):
    """Show startup order and dependency edges."""
    config = _load_config(ctx)
    topology = _build(ctx, config, config.settings)
    click.echo("Startup order: " + ", ".join(topology.graph.topological_order()))
    for edge in topology.graph.edges():
        click.echo(f"  {edge.source} --{edge.kind.value}--> {edge.target}")


@cli.command()
@click.pass_context
def endpoints(ctx):
    """List resolved endpoint addresses."""
    config = _load_config(ctx)
    topology = _build(ctx, config, config.settings)
    click.echo(f"{'SERVICE':15} {'ENDPOINT':10} {'ADDRESS':32} {'BOUND':6} FLAGS")
    click.echo("-" * 75)
    for (service, name), ep in topology.endpoints.items():
        flags = ",".join(f for f, on in (("external", ep.external), ("proxied", ep.proxied)) if on)
        click.echo(f"{service:15} {name:10} {ep.url:32} {ep.target_port:<6} {flags}".rstrip())


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
