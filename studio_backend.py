#!/usr/bin/env python3
"""Agent Studio backend - engines and LAVS gateway entry point"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from core.events import encode_event
from core.settings import AppSettings, load_settings
from core.telemetry import configure_logging
from engines.manager import EngineManager, initialize_engines
from engines.protocol import EngineConfig
from lavs.gateway import LavsGateway
from lavs.tools import LavsToolGenerator
from lavs.types import LAVSError

logger = logging.getLogger(__name__)


class StudioBackend:
    """Main application controller"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.settings: Optional[AppSettings] = None
        self.shutdown_event = asyncio.Event()

        # Components
        self.engine_manager: Optional[EngineManager] = None
        self.lavs_gateway: Optional[LavsGateway] = None
        self.tool_generator: Optional[LavsToolGenerator] = None

    def load_config(self):
        """Load application configuration"""
        self.settings = load_settings(self.config_path)
        configure_logging(self.settings.log_level)

    async def initialize(self):
        """Initialize all components"""
        logger.info("Initializing studio backend")

        self.engine_manager = initialize_engines(self.settings)
        logger.info(f"Engines registered: {', '.join(self.engine_manager.get_registered_engines())}")

        self.lavs_gateway = LavsGateway(self.settings.lavs)
        self.tool_generator = LavsToolGenerator(self.lavs_gateway)
        logger.info(f"LAVS gateway initialized (agents dirs: {', '.join(self.settings.lavs.agents_dirs)})")

    async def run(self):
        """Run until a shutdown signal arrives"""
        cleanup_task = asyncio.create_task(self._periodic_cleanup())
        logger.info("Studio backend is running")

        await self.shutdown_event.wait()
        logger.info("Shutdown signal received")

        cleanup_task.cancel()
        await asyncio.gather(cleanup_task, return_exceptions=True)
        await self.shutdown()

    async def _periodic_cleanup(self):
        """Evict idle rate-limit windows and stale engine sessions"""
        interval = self.settings.lavs.cleanup_interval
        while not self.shutdown_event.is_set():
            try:
                await asyncio.sleep(interval)

                evicted = self.lavs_gateway.cleanup()
                stale = await self.engine_manager.cleanup_stale_sessions(self.settings.cursor.stale_session_age)
                if evicted or stale:
                    logger.info(f"Cleanup: {evicted} rate limit windows, {stale} stale sessions")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}", exc_info=True)

    async def shutdown(self):
        """Graceful shutdown"""
        logger.info("Starting graceful shutdown")

        if self.engine_manager:
            await self.engine_manager.close()

        if self.lavs_gateway:
            await self.lavs_gateway.close()

        logger.info("Graceful shutdown complete")

    def handle_signal(self, sig):
        """Handle shutdown signals"""
        logger.info(f"Received signal {sig}")
        self.shutdown_event.set()

    # One-shot commands

    async def chat(self, args: argparse.Namespace) -> int:
        """Stream one message through an engine, printing AGUI events as NDJSON"""
        config = EngineConfig(
            workspace=str(Path(args.workspace).resolve()),
            session_id=args.session,
            model=args.model,
            provider_id=args.provider,
            timeout=args.timeout,
        )
        exit_code = 0
        async for event in self.engine_manager.stream_message(args.engine, args.message, config):
            print(encode_event(event), flush=True)
            if event.type == "RUN_ERROR":
                exit_code = 1
        return exit_code

    async def lavs_call(self, args: argparse.Namespace) -> int:
        try:
            data = json.loads(args.input) if args.input else {}
        except json.JSONDecodeError as e:
            print(f"Invalid --input JSON: {e}", file=sys.stderr)
            return 2

        response = await self.lavs_gateway.handle(args.agent, args.endpoint, data, args.project)
        print(json.dumps(response, indent=2, default=str))
        return 1 if "error" in response else 0

    async def lavs_tools(self, args: argparse.Namespace) -> int:
        try:
            tools = self.tool_generator.generate_tools(args.agent)
        except LAVSError as e:
            print(json.dumps({"error": e.to_dict()}, indent=2))
            return 1
        print(json.dumps([t.tool.model_dump() for t in tools], indent=2))
        return 0

    async def models(self, args: argparse.Namespace) -> int:
        models = await self.engine_manager.get_supported_models(args.engine)
        print(json.dumps([m.model_dump(by_alias=True) for m in models], indent=2))
        return 0

    async def status(self, args: argparse.Namespace) -> int:
        print(json.dumps(self.engine_manager.get_status(), indent=2))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent Studio backend")
    parser.add_argument("-c", "--config", type=Path, help="Path to config YAML")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the backend until interrupted")

    chat = subparsers.add_parser("chat", help="Send one message and print AGUI events")
    chat.add_argument("message")
    chat.add_argument("-e", "--engine", help="Engine type (default from config)")
    chat.add_argument("-w", "--workspace", default=".")
    chat.add_argument("-s", "--session", help="Session id to resume")
    chat.add_argument("-m", "--model")
    chat.add_argument("-p", "--provider")
    chat.add_argument("-t", "--timeout", type=float)

    call = subparsers.add_parser("lavs-call", help="Call a LAVS endpoint")
    call.add_argument("agent")
    call.add_argument("endpoint")
    call.add_argument("-i", "--input", help="Endpoint input as JSON")
    call.add_argument("--project", help="Project path passed to the handler")

    tools = subparsers.add_parser("lavs-tools", help="List tools generated from an agent manifest")
    tools.add_argument("agent")

    models = subparsers.add_parser("models", help="List models for an engine")
    models.add_argument("-e", "--engine")

    subparsers.add_parser("status", help="Show engine status")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    if args.config is not None and not args.config.exists():
        print(f"Config file not found: {args.config}", file=sys.stderr)
        return 1

    app = StudioBackend(args.config)
    app.load_config()
    await app.initialize()

    command = args.command or "serve"
    if command != "serve":
        handler = getattr(app, command.replace("-", "_"))
        try:
            return await handler(args)
        finally:
            await app.shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: app.handle_signal(s))

    await app.run()
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
