"""Entry points for launching the FastAPI proxy via uvicorn."""
from __future__ import annotations

import argparse
import logging

import uvicorn

from .app import create_app
from .config import ProxySettings


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _build_settings(args: argparse.Namespace) -> ProxySettings:
    """Construct ProxySettings from the environment, then CLI overrides."""

    settings = ProxySettings.from_env()
    settings.host = args.host or settings.host or DEFAULT_HOST
    settings.port = args.port or settings.port or DEFAULT_PORT
    if args.base_url:
        settings.base_url = args.base_url.rstrip("/")
    if args.max_retries is not None:
        settings.max_retries = args.max_retries
    return settings


def _log_configuration(settings: ProxySettings) -> None:
    """Emit a concise summary of the active configuration values."""

    logger.info("Initializing Step Chat Proxy ...")
    logger.info(
        "✓ Loaded configuration host=%s port=%s base_url=%s max_retries=%s retry_delay=%.1fs",
        settings.host,
        settings.port,
        settings.base_url,
        settings.max_retries,
        settings.retry_delay,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Step chat OpenAI-compatible proxy")
    parser.add_argument("--host", default=None, help="Host interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to bind")
    parser.add_argument("--base-url", default=None, help="Provider base URL")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Extra attempts for a failed completion pipeline",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        settings = _build_settings(args)
    except ValueError as err:
        logger.error("[!] Configuration error: %s", err)
        raise SystemExit(1)

    _log_configuration(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.host or DEFAULT_HOST,
        port=settings.port or DEFAULT_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
