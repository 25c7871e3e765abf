"""CLI entry point for the vibe-flow server."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional
from typing import Sequence

import uvicorn
from dotenv import load_dotenv

from .config import ServerConfig
from .config import load_server_config
from .server import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="vibe-flow task board and terminal server")
    parser.add_argument("--config", type=Path, default=None, help="Path to server config YAML")
    parser.add_argument("--host", default=None, help="Host interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--db", type=Path, default=None, help="Path to SQLite state database")
    parser.add_argument("--repo", type=Path, default=None, help="Initial repository root")
    parser.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL", "INFO"))
    return parser


def resolve_config(args: argparse.Namespace) -> ServerConfig:
    config = load_server_config(args.config)
    overrides = {
        "host": args.host,
        "port": args.port,
        "state_path": args.db,
        "repo_root": args.repo,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    if updates:
        config = config.model_copy(update=updates)
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = resolve_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Unable to load configuration: %s", exc)
        return 2

    app = create_app(config)
    logger.info("Serving on http://%s:%s", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI bootstrap
    raise SystemExit(main())
