from __future__ import annotations

import argparse
import logging
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from research_scheduler.api.app import create_app
from research_scheduler.config import load_config
from research_scheduler.logging_setup import setup_logging


logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="research-scheduler")
    parser.add_argument(
        "--env",
        default=".env",
        help="Path to .env file (default: .env).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    config = load_config()
    setup_logging(
        config.log_level,
        config.log_file,
        max_bytes=config.log_max_bytes,
        backup_count=config.log_backup_count,
        access_log=config.access_log,
    )

    app = create_app(config=config)
    logger.info("serving on http://%s:%s", config.http_bind, config.http_port)
    uvicorn.run(
        app,
        host=config.http_bind,
        port=config.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
