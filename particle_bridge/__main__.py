#
# Copyright 2025 The ParticleBridge and AmpScm contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Command-line interface for Particle Bridge."""

import asyncio
import argparse
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from .api import ParticleBridgeAPI
from .config import ConfigurationError, load_config
from .routes import create_app, register_routes

# Logger will be configured in main() based on daemon/console mode
logger = logging.getLogger(__name__)

# Global variables
bridge_api: Optional[ParticleBridgeAPI] = None
server: Optional[uvicorn.Server] = None
shutdown_event: Optional[asyncio.Event] = None


def close_event_streams():
    """Tell every SSE client to disconnect."""
    if bridge_api and bridge_api.event_listeners:
        logger.info(f"Closing {len(bridge_api.event_listeners)} SSE event streams...")
        for queue in list(bridge_api.event_listeners):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug("SSE queue full while closing")


def uvicorn_log_config(args) -> dict:
    """Uvicorn log config matching the chosen output mode."""
    if args.syslog:
        # Syslog mode: no handlers of its own, everything goes to the root logger
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                "uvicorn": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.error": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.access": {"handlers": [], "level": "WARNING", "propagate": True},
            },
        }

    if args.daemon:
        # Daemon mode: no timestamps, syslog adds them
        formatter = {"format": "%(levelname)-8s %(message)s"}
    else:
        formatter = {"format": "%(asctime)s %(levelname)s %(message)s", "datefmt": "%Y-%m-%d %H:%M:%S"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": dict(formatter),
            "access": dict(formatter),
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "formatter": "access",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
        },
    }


async def run_server(args, config):
    """Run the Particle Bridge server."""
    global bridge_api, server, shutdown_event

    shutdown_event = asyncio.Event()

    def handle_signal(signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()
        close_event_streams()
        if server:
            server.should_exit = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        bridge_api = ParticleBridgeAPI(config)

        app = create_app()
        register_routes(app, lambda: bridge_api)

        await bridge_api.initialize()

        logger.info("*** Particle Bridge ready! ***")
        logger.info(f"API Server: http://{args.host}:{args.port}")
        logger.info(f"Documentation: http://{args.host}:{args.port}/docs")
        logger.info(f"Status: http://{args.host}:{args.port}/status")
        logger.info(f"Accessories: http://{args.host}:{args.port}/accessories")
        logger.info(f"Live Events: http://{args.host}:{args.port}/events")

        uv_config = uvicorn.Config(
            app,
            host=args.host,
            port=args.port,
            log_config=uvicorn_log_config(args),
            access_log=True
        )
        server = uvicorn.Server(uv_config)
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down gracefully...")
    except Exception as e:
        logger.error(f"ERROR: Failed to start Particle Bridge: {e}")
        raise
    finally:
        if bridge_api:
            logger.info("Performing cleanup...")
            if bridge_api.event_listeners:
                close_event_streams()
                # Give clients a moment to receive the close signal
                await asyncio.sleep(0.3)
            await bridge_api.cleanup()

        if args.pid_file:
            pid_path = Path(args.pid_file)
            try:
                if pid_path.exists():
                    pid_path.unlink()
                    logger.info(f"PID file removed: {pid_path}")
            except OSError as e:
                logger.warning(f"Failed to remove PID file: {e}")


def configure_logging(args):
    """Console, daemon or syslog output."""
    if args.syslog:
        syslog_address = args.syslog
        if ':' in syslog_address and not syslog_address.startswith('/'):
            # Network address (host:port)
            host, port = syslog_address.rsplit(':', 1)
            syslog_address = (host, int(port))
        # else: Unix socket path (e.g., /dev/log)

        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
            syslog_handler.setFormatter(logging.Formatter(
                'particle-bridge[%(process)d]: %(levelname)s %(message)s'
            ))
            root_logger = logging.getLogger()
            root_logger.setLevel(logging.INFO)
            # Silence console output in syslog mode
            root_logger.handlers = [syslog_handler]
            logger.info("Logging to syslog: %s", args.syslog)
        except OSError as e:
            logging.basicConfig(
                level=logging.INFO,
                format='%(asctime)s %(levelname)s %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                stream=sys.stdout,
                force=True
            )
            logger.error(f"Failed to connect to syslog ({args.syslog}): {e}")
            logger.info("Falling back to console logging")
    elif args.daemon:
        # Daemon mode: no timestamp, syslog adds it
        logging.basicConfig(
            level=logging.INFO,
            format='%(levelname)s %(message)s',
            stream=sys.stdout,
            force=True
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            stream=sys.stdout,
            force=True
        )

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Particle Bridge - HomeKit-style REST API for Particle cloud devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start with a config file (console mode)
  particle-bridge --config ~/.particle-bridge.json
  python -m particle_bridge --config ./particle-bridge.json

  # Run as system daemon
  particle-bridge --config /etc/particle-bridge.json --daemon --pid-file /var/run/particle-bridge.pid

  # Send logs to local syslog
  particle-bridge --config /etc/particle-bridge.json --syslog /dev/log

  # Debug mode with verbose logging
  particle-bridge --config ./particle-bridge.json --verbose

API Endpoints:
  GET  /api                                     - API information
  GET  /status                                  - Bridge status
  GET  /accessories                             - All bridged accessories
  GET  /accessories/{aid}/characteristics/{name} - Read (polls the device)
  PUT  /accessories/{aid}/characteristics/{name}?value= - Write (sends a command)
  GET  /events                                  - Server-Sent Events for live changes
        """
    )
    parser.add_argument("--config", default="~/.particle-bridge.json",
                        help="Path to JSON configuration (default: ~/.particle-bridge.json)")
    parser.add_argument("--host", default="0.0.0.0",
                        help="Address to bind the REST API to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=4408,
                        help="Port for REST API server (default: 4408)")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--daemon", action="store_true",
                        help="Run in daemon mode (syslog-friendly logging, auto-enables --pid-file)")
    parser.add_argument("--syslog",
                        help="Send logs to syslog instead of stdout (e.g., /dev/log or logserver:514)")
    parser.add_argument("--pid-file",
                        help="Write process ID to specified file")
    return parser


def main():
    """Main entry point for the CLI."""
    args = build_parser().parse_args()

    # Daemon mode implies PID file if not specified
    if args.daemon and not args.pid_file:
        args.pid_file = "/var/run/particle-bridge.pid" if sys.platform != "win32" else "particle-bridge.pid"

    configure_logging(args)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    if args.pid_file:
        pid_path = Path(args.pid_file)
        try:
            pid_path.write_text(str(os.getpid()))
            logger.info(f"PID file written: {pid_path}")
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_server(args, config))
    except KeyboardInterrupt:
        logger.info("*** Shutdown complete ***")
    except Exception as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
