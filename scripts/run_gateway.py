#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging

import uvicorn

from services.config.runtime_config import ENV_PATH, apply_env_file, current_values, validate_setup

logger = logging.getLogger("scenechat.launcher")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the SceneChat gateway")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    apply_env_file()

    validation = validate_setup(current_values())
    for warning in validation["warnings"]:
        logger.warning("Setup: %s", warning)
    if not validation["ok"]:
        # chat requests answer 500 until this is fixed; the rest of the API stays up
        for error in validation["errors"]:
            logger.error("Setup (%s): %s", ENV_PATH, error)

    logger.info("Starting gateway on %s:%d", args.host, args.port)
    uvicorn.run(
        "services.gateway.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if args.debug else "info",
    )


if __name__ == "__main__":
    main()
