"""
txstream: pending transaction feed to stdout

Reads gateway credentials from the environment, keeps the feed subscription
alive, and writes every transaction to stdout as line-delimited JSON or
msgpack.
"""

import asyncio
import logging
import signal
import sys
from typing import BinaryIO, Optional

from pydantic import ValidationError

from config.settings import Settings, settings
from core.errors import ConfigurationError
from models.transaction import Transaction
from stream.client import StreamListener, TransactionStream

logger = logging.getLogger("txstream")


class LoggingListener(StreamListener):
    """Reports stream lifecycle events to the log."""

    def on_connect(self):
        logger.info("Connected to tx stream")

    def on_reconnect(self):
        logger.info("Reconnected to tx stream")

    def on_error(self, error: Exception):
        logger.error(f"{type(error).__name__}: {error}")


class RecordWriter:
    """Writes transactions to a binary stream, flushing after each record."""

    def __init__(self, out: BinaryIO, output_format: str = "json"):
        if output_format not in ("json", "msgpack"):
            raise ValueError(f"unknown output format: {output_format}")
        self.out = out
        self.output_format = output_format
        self._written = 0

    def write(self, tx: Transaction):
        if self.output_format == "msgpack":
            self.out.write(tx.to_msgpack())
        else:
            self.out.write(tx.to_json().encode("utf-8") + b"\n")
        self.out.flush()
        self._written += 1

    @property
    def written(self) -> int:
        return self._written


def setup_signal_handlers(stop: asyncio.Event):
    """Set the stop event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def handler(sig: signal.Signals):
        logger.info(f"Received {sig.name}, initiating graceful shutdown...")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler, sig)
        except NotImplementedError:
            # Windows event loops do not support add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop.set))


async def run(app_settings: Settings, out: BinaryIO, stop: Optional[asyncio.Event] = None) -> int:
    """
    Stream transactions into ``out`` until stopped.

    Returns the number of records written.
    """
    config = app_settings.to_stream_config()
    stream = TransactionStream(config, LoggingListener())
    writer = RecordWriter(out, app_settings.output_format)

    stop = stop or asyncio.Event()
    feed = stream.start(stop)
    try:
        async for tx in feed:
            writer.write(tx)
    finally:
        await stream.stop()
        logger.info(f"Stream stopped after {writer.written} records: {stream.get_stats()}")
    return writer.written


async def main(app_settings: Settings):
    stop = asyncio.Event()
    setup_signal_handlers(stop)
    await run(app_settings, sys.stdout.buffer, stop)


def cli(argv: Optional[list] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="txstream - pending transaction feed to stdout")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--format",
        choices=("json", "msgpack"),
        default=None,
        help="Output encoding (default: OUTPUT_FORMAT or json)"
    )
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Websocket URL override (default: WS_URL or the gateway for the auth mode)"
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip gateway certificate verification"
    )

    args = parser.parse_args(argv)

    overrides = {}
    if args.format:
        overrides["output_format"] = args.format
    if args.url:
        overrides["ws_url"] = args.url
    if args.insecure:
        overrides["insecure"] = True
    app_settings = settings.model_copy(update=overrides)

    # stdout carries records, so logs go to stderr
    logging.basicConfig(
        level=logging.DEBUG if args.debug else app_settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ]
    )

    try:
        asyncio.run(main(app_settings))
    except (ConfigurationError, ValidationError) as e:
        logger.critical(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
