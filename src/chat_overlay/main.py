"""CLI entrypoint for the chat overlay engine."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from .app import OverlayApp
from .config import load_settings
from .errors import ConfigurationError
from .logging import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-overlay",
        description="Aggregate live chat and alerts from every platform into one OBS overlay.",
    )
    parser.add_argument("--debug", action="store_true", help="Force DEBUG logging regardless of LOG_LEVEL")
    return parser


async def main(debug: bool = False) -> None:
    settings = load_settings()
    configure_logging(settings.log_level, debug=debug)

    app = OverlayApp(settings)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:  # pragma: no cover - Windows compatibility
            signal.signal(sig, lambda *_: stop_event.set())

    app.register_shutdown_callback(stop_event.set)

    await app.start()
    try:
        await stop_event.wait()
    finally:
        await app.stop()


def run(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        asyncio.run(main(debug=args.debug))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(run())
