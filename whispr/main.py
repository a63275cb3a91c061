#!/usr/bin/env python3
"""
Service entry point.

Roles:
    api     operational HTTP surface and ingestion endpoints
    worker  analysis worker pool draining the job queue
    all     both in one process (required for the memory:// backend)
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

from aiohttp import web

from . import __version__
from .api.server import create_app
from .common_tools.errors import ConfigurationError
from .common_tools.logging import (
    configure_logging,
    get_logger,
    log_service_shutdown,
    log_service_startup,
)
from .config.settings import ConfigManager, get_config_manager
from .services import WhisprServices, build_services

ROLES = ("api", "worker", "all")

logger = get_logger("main")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the whispr analysis services")
    parser.add_argument("--config", default=None,
                        help="Path to the YAML configuration (default: $WHISPR_CONFIG_PATH or config.yaml)")
    parser.add_argument("--role", choices=ROLES, default="all", help="Which part of the service to run")
    return parser.parse_args(argv)


async def run_services(services: WhisprServices, role: str) -> None:
    config = services.config
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    runner: Optional[web.AppRunner] = None
    if role in ("api", "all"):
        runner = web.AppRunner(create_app(services))
        await runner.setup()
        site = web.TCPSite(runner, config.api.host, config.api.port)
        await site.start()
        logger.info(f"HTTP API listening on {config.api.host}:{config.api.port}")

    if role in ("worker", "all"):
        await services.worker_pool.start()

    log_service_startup(config.service_name, version=__version__,
                        config={"role": role, "backend": "memory" if config.redis.in_memory else "redis",
                                "batch_size": config.batching.batch_size,
                                "analysis_interval_ms": config.batching.analysis_interval_ms,
                                "workers": config.queue.concurrency})
    try:
        await shutdown_event.wait()
    finally:
        if services.worker_pool.running:
            await services.worker_pool.shutdown()
        if runner is not None:
            await runner.cleanup()
        await services.close()
        log_service_shutdown(config.service_name, reason="signal")


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    manager = ConfigManager(args.config) if args.config else get_config_manager()

    try:
        config = manager.load_config()
    except (ConfigurationError, ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(config.service_name, log_level=config.monitoring.log_level,
                      log_format=config.monitoring.log_format, log_file=config.monitoring.log_file)

    if config.redis.in_memory and args.role != "all":
        logger.warning("memory:// backend keeps state in-process; API and worker only share it with --role all")

    services = build_services(config)
    asyncio.run(run_services(services, args.role))
    return 0


if __name__ == "__main__":
    sys.exit(main())
