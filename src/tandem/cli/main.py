"""
Main CLI application for Tandem.

Provides command-line interface for serving the orchestrator, inspecting
configured backends and chatting with the two agent identities.
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Optional, Dict, Any

import click
import uvicorn
import yaml
from fastapi import FastAPI

from tandem.lib.config import ConfigurationError, get_config, initialize_config
from tandem.lib.logging_config import get_audit_logger, setup_logging
from tandem.lib.observability import initialize_telemetry, shutdown_telemetry
from tandem.models.interaction import Interaction
from tandem.services.api_server import create_app
from tandem.services.orchestrator import Orchestrator


logger = logging.getLogger("tandem.cli")
audit_logger = get_audit_logger()


class TandemApplication:
    """Main Tandem application manager."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config_manager = None
        self.app: Optional[FastAPI] = None
        self.orchestrator: Optional[Orchestrator] = None
        self._telemetry_enabled = False
        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize configuration, logging, telemetry and the orchestrator."""
        try:
            logger.info("Initializing Tandem application")
            self.config_manager = initialize_config(self.config_path)
            config = self.config_manager.get_config()

            setup_logging(config.logging.model_dump())
            logger.info("Logging configured")

            if config.observability.enabled:
                initialize_telemetry(config.observability.model_dump())
                self._telemetry_enabled = True
                logger.info("Observability initialized")

            self.orchestrator = Orchestrator.from_config(config)
            self.app = create_app(self.orchestrator)

            audit_logger.log_session_event(
                "system_startup",
                "system",
                actor=self.orchestrator.owner_id,
                result="success",
                metadata={
                    "config_path": config.config_file_path,
                    "backends_configured": list(config.backends.keys())
                }
            )
            logger.info("Tandem application initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize Tandem application: {e}")
            audit_logger.log_session_event(
                "system_startup",
                "system",
                result="failed",
                metadata={"error": str(e)}
            )
            raise

    async def shutdown(self) -> None:
        """Gracefully shutdown the Tandem application."""
        logger.info("Shutting down Tandem application")
        try:
            if self.orchestrator:
                await self.orchestrator.executor.stop()
                await self.orchestrator.shutdown()
            if self._telemetry_enabled:
                shutdown_telemetry()
            audit_logger.log_session_event("system_shutdown", "system", result="success")
            logger.info("Tandem application shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
            audit_logger.log_session_event(
                "system_shutdown",
                "system",
                result="failed",
                metadata={"error": str(e)}
            )

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run_server(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the HTTP server until a shutdown signal arrives."""
        await self.initialize()
        config = get_config()

        final_host = host or config.server.host
        final_port = port or config.server.port
        logger.info(f"Starting Tandem server on {final_host}:{final_port}")

        self.setup_signal_handlers()

        server_config = uvicorn.Config(
            app=self.app,
            host=final_host,
            port=final_port,
            log_config=None,  # Use our custom logging
            access_log=False
        )
        server = uvicorn.Server(server_config)
        # Lifespan of the app owns start and shutdown of the orchestrator
        self.orchestrator = None

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
            await asyncio.gather(shutdown_task, return_exceptions=True)
            server_task.result()


def _emit(data: Dict[str, Any], output_format: str) -> bool:
    """Print structured output; False when the caller should print text."""
    if output_format == 'json':
        click.echo(json.dumps(data, indent=2, default=str))
        return True
    if output_format == 'yaml':
        click.echo(yaml.dump(data, default_flow_style=False, indent=2))
        return True
    return False


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """Tandem two-agent orchestrator CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


@cli.command()
@click.option('--host', default=None, help='Host to bind to (default: from config)')
@click.option('--port', default=None, type=int, help='Port to bind to (default: from config)')
@click.pass_context
def serve(ctx, host, port):
    """Start the orchestrator HTTP server."""
    try:
        app = TandemApplication(config_path=ctx.obj.get('config_path'))
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
    """Validate the Tandem configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Service: {config.observability.service_name}")
        click.echo(f"Backends configured: {len(config.backends)}")
        click.echo(f"Preferred tier: {config.router.prefer_tier}")

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
@click.option('--output-format', '-f', type=click.Choice(['json', 'yaml', 'text']), default='text', help='Output format')
@click.pass_context
def backends(ctx, output_format):
    """List configured backends with their capability profiles."""
    try:
        config = initialize_config(ctx.obj.get('config_path')).get_config()
        result = {
            'backends': [
                {
                    'backend_id': backend_id,
                    'enabled': backend.enabled,
                    'command': backend.command,
                    'capability': backend.capability.model_dump(mode='json'),
                }
                for backend_id, backend in config.backends.items()
            ]
        }
        if _emit(result, output_format):
            return

        click.echo(f"Backends ({len(result['backends'])}):")
        for backend in result['backends']:
            capability = backend['capability']
            marker = "+" if backend['enabled'] else "-"
            click.echo(f"  {marker} {backend['backend_id']} ({capability['privacy_tier']})")
            click.echo(f"      context: {capability['max_context_tokens']} tokens, "
                       f"cost: ${capability['cost_per_1k_tokens']:.4f}/1k, "
                       f"streaming: {capability['streaming']}")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('message')
@click.option('--project', '-p', default='default', help='Project the session belongs to')
@click.option('--local-only', is_flag=True, help='Never route to remote backends')
@click.option('--approve', 'auto_decision', flag_value='approve', help='Approve proposed actions without asking')
@click.option('--reject', 'auto_decision', flag_value='reject', help='Reject proposed actions without asking')
@click.option('--output-format', '-f', type=click.Choice(['json', 'yaml', 'text']), default='text', help='Output format')
@click.pass_context
def chat(ctx, message, project, local_only, auto_decision, output_format):
    """Send one message and print the agent's response."""
    try:
        app = TandemApplication(config_path=ctx.obj.get('config_path'))
        result = asyncio.run(_chat_impl(app, message, project, local_only, auto_decision, output_format))
        if _emit(result, output_format):
            return

        for turn in result['turns']:
            click.echo(f"[{turn['sequence']}] {turn['author']}: {turn['content']}")
        if result.get('error_code'):
            click.echo(f"Error: {result['error_code']}: {result.get('error_message')}", err=True)
            sys.exit(2)

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


async def _chat_impl(
    app: TandemApplication,
    message: str,
    project: str,
    local_only: bool,
    auto_decision: Optional[str],
    output_format: str
) -> Dict[str, Any]:
    """Implementation for the chat command."""
    await app.initialize()
    orchestrator = app.orchestrator
    await orchestrator.executor.start()
    try:
        policy = orchestrator.router.default_policy.model_copy(
            update={"local_only": local_only or orchestrator.router.default_policy.local_only}
        )
        session = await orchestrator.open_session(project, policy)
        interaction: Interaction = await orchestrator.submit_turn(session.session_id, "user", message)
        turns = list(interaction.turns)

        for action in orchestrator.pending_actions(session.session_id):
            if auto_decision is None and output_format == 'text':
                approved = click.confirm(
                    f"Approve {action.kind} ({action.description or action.action_id})?", default=False
                )
            else:
                approved = auto_decision == 'approve'
            decision = await orchestrator.decide_action(action.action_id, approved)
            turns.extend(decision.turns)

        result = interaction.model_dump(mode="json")
        result['turns'] = [t.to_record() for t in turns]
        return result
    finally:
        await app.shutdown()


@cli.command('export-config')
@click.option('--output', '-o', type=click.Path(), help='Output file path')
@click.pass_context
def export_config(ctx, output):
    """Export the current configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config_dict = config_manager.get_config().model_dump(mode='json')

        if output:
            with open(output, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            click.echo(f"Configuration exported to: {output}")
        else:
            click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == '__main__':
    main()
