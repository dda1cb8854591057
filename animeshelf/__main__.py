"""Module executed when running ``python -m animeshelf``."""

from __future__ import annotations

import argparse
from typing import Sequence

import uvicorn

from app.config import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="animeshelf", description="Run the anime catalog API server."
    )
    parser.add_argument("--host", default=settings.server_host)
    parser.add_argument("--port", type=int, default=settings.server_port)
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=settings.environment == "development",
        help="Restart on code changes (defaults to on in development)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Start the uvicorn server using the configured settings."""

    args = build_parser().parse_args(argv)
    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
