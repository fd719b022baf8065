"""Main entry point for the resilience kernel diagnostics service."""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from resilience_kernel.api.app import create_app
from resilience_kernel.config.loader import load_config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # The long-poll issues a request every few seconds; keep httpx quiet.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resilience-kernel",
        description="Serve the resilience kernel and its diagnostics API",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args.config)
    except Exception as e:
        logger.error("Failed to load configuration: %s", e)
        return 1
    logger.info("Configuration loaded: daemon=%s", config.daemon.base_url)

    try:
        uvicorn.run(
            create_app(config=config),
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
        )
    except Exception as e:
        logger.error("Error starting server: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
