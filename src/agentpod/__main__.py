"""
Main entry point for agentpod.

Modes:
- serve (default): run the HTTP API with uvicorn
- reap: run one reaper sweep and print the report
"""

import argparse
import asyncio
import json
import sys

import structlog
import uvicorn

from .config import get_settings
from .logging import setup_logging


async def reap_once() -> int:
    from .api_server import build_services

    services = build_services()
    try:
        report = await services.reaper.sweep()
    finally:
        await services.aclose()
    print(json.dumps({"paused": report.paused, "errors": report.errors}, indent=2))
    return 1 if report.errors else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="agentpod")
    parser.add_argument(
        "--mode",
        choices=["serve", "reap"],
        default="serve",
        help="Run mode (default: serve)",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    logger = structlog.get_logger(__name__)

    if args.mode == "reap":
        logger.info("agentpod_reap_once")
        return asyncio.run(reap_once())

    from .api_server import create_app

    logger.info("agentpod_serving", host=settings.host, port=settings.port)
    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(0)
