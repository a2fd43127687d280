"""
Main CLI application for Parley.

Provides the command-line interface for serving the plan endpoint,
running negotiations in the terminal and managing configuration.
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

import click
import uvicorn
import yaml
from fastapi import FastAPI

from parley import __version__
from parley.exceptions import ConfigurationError, ProviderError
from parley.lib.config import ConfigurationManager, ParleyConfig
from parley.lib.logging_config import get_audit_logger, setup_logging
from parley.lib.metrics import initialize_metrics
from parley.lib.observability import initialize_telemetry, shutdown_telemetry
from parley.models.agent_response import ACTION_LABELS
from parley.models.planning_session import Party, SessionStatus
from parley.models.session_event import EventType, SessionEvent
from parley.services.completion_provider import OpenRouterProvider, group_models_by_provider
from parley.services.negotiation_engine import NegotiationEngine
from parley.services.plan_client import LocalPlanSource, RemotePlanSource
from parley.services.plan_server import create_app
from parley.services.planning_controller import PlanningController
from parley.services.session_reducer import SessionState


logger = logging.getLogger("parley.cli")
audit_logger = get_audit_logger()


class ParleyApplication:
    """Main Parley application manager."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_manager = ConfigurationManager(config_path)
        self.debug = debug
        self.config: Optional[ParleyConfig] = None
        self.provider: Optional[OpenRouterProvider] = None
        self.app: Optional[FastAPI] = None
        self._shutdown_event = asyncio.Event()

    def initialize(self) -> ParleyConfig:
        """Load configuration and set up logging, telemetry and the provider."""
        try:
            self.config = self.config_manager.load_config()
            if self.debug:
                self.config.debug = True
                self.config.logging.level = "DEBUG"

            setup_logging(self.config.logging.model_dump())
            telemetry_manager = initialize_telemetry(self.config.observability.model_dump())
            initialize_metrics(telemetry_manager.get_meter())

            self.provider = OpenRouterProvider.from_config(self.config.provider)

            audit_logger.log_session_event(
                event_type="system_startup",
                session_id="system",
                action="initialize",
                result="success",
                metadata={"config_path": self.config.config_file_path, "version": __version__}
            )
            logger.info("Parley application initialized")
            return self.config

        except ConfigurationError as e:
            logger.error(f"Failed to initialize Parley application: {e}")
            audit_logger.log_session_event(
                event_type="system_startup",
                session_id="system",
                action="initialize",
                result="failed",
                metadata={"error": str(e)}
            )
            raise

    async def shutdown(self) -> None:
        """Release the provider client and flush telemetry."""
        logger.info("Shutting down Parley application")
        if self.provider:
            await self.provider.aclose()
        shutdown_telemetry()
        audit_logger.log_session_event(
            event_type="system_shutdown",
            session_id="system",
            action="shutdown",
            result="success"
        )

    def engine(self) -> NegotiationEngine:
        """Build a negotiation engine from the loaded configuration."""
        if self.config is None or self.provider is None:
            raise RuntimeError("Application not initialized")
        if not self.config.provider.api_key:
            raise ConfigurationError("OpenRouter API key not configured (set OPENROUTER_API_KEY)")
        return NegotiationEngine.from_config(self.provider, self.config)

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run_server(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the plan server until interrupted."""
        config = self.initialize()
        self.app = create_app(config, provider=self.provider)

        final_host = host or config.server.host
        final_port = port or config.server.port
        logger.info(f"Starting Parley server on {final_host}:{final_port}")

        self.setup_signal_handlers()

        server_config = uvicorn.Config(
            app=self.app,
            host=final_host,
            port=final_port,
            log_config=None,  # Use our custom logging
            access_log=False
        )
        server = uvicorn.Server(server_config)

        try:
            await self._run_with_shutdown(server)
        finally:
            await self.shutdown()

    async def _run_with_shutdown(self, server: uvicorn.Server) -> None:
        """Run server with shutdown event handling."""
        server_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED
        )

        if shutdown_task in done:
            server.should_exit = True
            await server_task
        else:
            shutdown_task.cancel()
            # Re-raise a server failure, if any
            server_task.result()


class EventRenderer:
    """Prints a negotiation's events to the terminal as they arrive."""

    def __init__(self, output_format: str = "text"):
        self.output_format = output_format

    def __call__(self, event: SessionEvent, state: SessionState) -> None:
        if self.output_format == "json":
            click.echo(json.dumps(event.to_dict()))
            return

        data = event.data
        if event.type is EventType.THINKING:
            click.echo()
            click.secho(f"[{data.role.label}]", fg="cyan" if data.role is Party.AGENT_A else "magenta", bold=True)
        elif event.is_round_count:
            click.secho(f"\n--- Round {data.rounds} ---", dim=True)
        elif event.type is EventType.MESSAGE and data.role is Party.HUMAN:
            click.echo()
            click.secho("[Human]", fg="yellow", bold=True)
            click.echo(data.content)
        elif event.type is EventType.MESSAGE:
            click.echo(data.content, nl=False)
        elif event.type is EventType.TOOL:
            click.secho(f"\n  -> {ACTION_LABELS[data.tool]}", fg="green")
        elif event.type is EventType.AGREED:
            click.secho(f"\nAgreement reached after {data.rounds} rounds", fg="green", bold=True)
            click.echo(data.plan)
        elif event.type is EventType.STOPPED:
            click.secho("\nNegotiation stopped", fg="yellow")
        elif event.type is EventType.ERROR:
            click.secho(f"\nError: {data.error}", fg="red", err=True)


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.version_option(__version__, prog_name="parley")
@click.pass_context
def cli(ctx, config, debug):
    """Parley: two agents negotiate a plan."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.pass_context
def serve(ctx, host, port):
    """Start the plan server."""
    try:
        app = ParleyApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
        asyncio.run(app.run_server(host=host, port=port))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error starting server: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the Parley configuration."""
    try:
        config_manager = ConfigurationManager(ctx.obj.get('config_path'))
        config = config_manager.load_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Provider: {config.provider.base_url}")
        click.echo(f"API key configured: {'yes' if config.provider.api_key else 'no'}")
        click.echo(f"Max rounds: {config.negotiation.max_rounds}")
        click.echo(f"Server: {config.server.host}:{config.server.port}")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")
        else:
            click.echo("\nNo warnings found.")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--output', '-o', type=click.Path(), help='Output file path')
@click.pass_context
def export_config(ctx, output):
    """Export the current configuration."""
    try:
        config = ConfigurationManager(ctx.obj.get('config_path')).load_config()
        # The API key stays out of exported files
        config_dict = config.model_dump(mode="json", exclude={"provider": {"api_key"}})

        if output:
            with open(output, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            click.echo(f"Configuration exported to: {output}")
        else:
            click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--provider', '-p', 'provider_filter', help='Only show models from this provider')
@click.option('--output-format', '-f', type=click.Choice(['json', 'yaml', 'text']), default='text', help='Output format')
@click.pass_context
def models(ctx, provider_filter, output_format):
    """List models available for negotiation."""
    try:
        app = ParleyApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
        result = asyncio.run(_list_models_impl(app, provider_filter))

        if output_format == 'json':
            click.echo(json.dumps(result, indent=2))
        elif output_format == 'yaml':
            click.echo(yaml.dump(result, default_flow_style=False, indent=2))
        else:
            for provider_name, entries in result['grouped'].items():
                click.secho(provider_name, bold=True)
                for model in entries:
                    click.echo(f"  {model['id']}  ({model['context_length']} tokens)")

    except (ConfigurationError, ProviderError) as e:
        click.echo(f"Error listing models: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('prompt')
@click.option('--model-a', '-a', required=True, help='Model for agent A (primary proposer)')
@click.option('--model-b', '-b', required=True, help='Model for agent B (critical reviewer)')
@click.option('--remote', '-r', help='Plan server URL; runs in process when omitted')
@click.option('--interactive', '-i', is_flag=True, help='Prompt for an intervention when stopped')
@click.option('--output-format', '-f', type=click.Choice(['json', 'text']), default='text', help='Output format')
@click.pass_context
def negotiate(ctx, prompt, model_a, model_b, remote, interactive, output_format):
    """Run a negotiation for PROMPT. Ctrl-C stops it."""
    try:
        app = ParleyApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug'))
        state = asyncio.run(_negotiate_impl(
            app, prompt, model_a, model_b, remote, interactive, output_format
        ))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if state.status is SessionStatus.ERROR:
        sys.exit(1)


# Implementation functions

async def _list_models_impl(app: ParleyApplication, provider_filter: Optional[str]) -> Dict[str, Any]:
    """Implementation for the models command."""
    config = app.initialize()
    if not config.provider.api_key:
        raise ConfigurationError("OpenRouter API key not configured (set OPENROUTER_API_KEY)")

    try:
        available = await app.provider.list_models(config.provider.api_key)
    finally:
        await app.shutdown()

    if provider_filter:
        available = [m for m in available if m.provider == provider_filter]
    grouped = group_models_by_provider(available)
    return {
        'models': [m.model_dump() for m in available],
        'grouped': {name: [m.model_dump() for m in entries] for name, entries in grouped.items()},
    }


async def _negotiate_impl(
    app: ParleyApplication,
    prompt: str,
    model_a: str,
    model_b: str,
    remote: Optional[str],
    interactive: bool,
    output_format: str
) -> SessionState:
    """Implementation for the negotiate command."""
    app.initialize()
    try:
        source = RemotePlanSource(remote) if remote else LocalPlanSource(app.engine())
    except ConfigurationError:
        await app.shutdown()
        raise
    controller = PlanningController(source, on_event=EventRenderer(output_format))
    controller.configure(prompt=prompt, model_a=model_a, model_b=model_b)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.stop)
    except NotImplementedError:
        logger.debug("Signal handlers are not supported on this platform")

    try:
        state = await controller.start()
        while interactive and state.status is SessionStatus.STOPPED:
            text = click.prompt("\nIntervention (empty to quit)", default="", show_default=False)
            if not text.strip():
                break
            state = await controller.intervene(text)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        if isinstance(source, RemotePlanSource):
            await source.aclose()
        await app.shutdown()

    if state.error and state.status is not SessionStatus.ERROR:
        click.echo(state.error, err=True)
    return state


if __name__ == '__main__':
    cli()
