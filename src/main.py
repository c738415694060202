"""
Main application entry point for the streaming gateway.
"""

# Standard library imports
import argparse
import os
import sys
from pathlib import Path

import uvicorn

# Third-party imports
from dotenv import load_dotenv

# Local imports
from common.config import load_config
from common.logging import get_logger, log_startup_message, setup_logging
from gateway.app import create_gateway_app
from router.request_router import CREDENTIALS

# Load environment variables from .env file at module level
load_dotenv()

logger = get_logger(__name__)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Multi-provider streaming chat gateway")
    parser.add_argument("--port", type=int, help="Override the port to run on")
    parser.add_argument("--host", type=str, help="Override the host to run on")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    return parser.parse_args()


def report_credentials() -> int:
    """
    Log which adapter families have credentials. Missing ones are not fatal;
    requests for them fail with a 503 instead.

    Returns:
        Number of distinct credentials present
    """
    env_vars = sorted(set(CREDENTIALS.values()))
    available = [name for name in env_vars if os.getenv(name)]
    missing = [name for name in env_vars if not os.getenv(name)]
    log_startup_message("credentials_checked", available=available, missing=missing)
    if not available:
        logger.warning(
            event="no_credentials",
            message="No provider API keys are set; every chat request will fail",
        )
    return len(available)


def main() -> None:
    """Main entry point."""
    try:
        args = parse_args()
        config = load_config(args.config)
        setup_logging(config)

        report_credentials()

        app = create_gateway_app(config)

        host = args.host or config.gateway.host
        port = args.port or config.gateway.port

        logger.info(event="starting_server", host=host, port=port)

        # uvicorn creates its own event loop
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_config=None,  # Use our custom logging setup
            access_log=False,
        )

    except KeyboardInterrupt:
        logger.info(event="application_shutdown", reason="Keyboard interrupt")
    except Exception as e:
        logger.critical(event="application_crashed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
