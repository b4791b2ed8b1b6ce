"""Websocket client for the pending transaction feed."""

import asyncio
import inspect
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.client import connect as websocket_connect

from core.errors import SubscriptionError, TransportError
from models.envelope import decode_envelope
from models.transaction import Transaction
from .config import StreamConfig
from .dedup import DedupFilter

logger = logging.getLogger(__name__)

SUBSCRIBE_REQUEST = '{"id": 1, "method": "subscribe", "params": ["newTxs", {"include": ["tx_contents"]}]}'

# Any subscribe response containing this is a rejection
ERROR_MARKER = '"error"'

Dialer = Callable[..., Awaitable[Any]]


class StreamListener:
    """
    Lifecycle notifications from a TransactionStream.

    Subclass and override what you need. Methods may be plain functions or
    coroutines. ``on_connect`` fires once, for the first successful subscribe
    of the stream; every later successful subscribe fires ``on_reconnect``.
    """

    def on_connect(self):
        pass

    def on_reconnect(self):
        pass

    def on_error(self, error: Exception):
        pass


class TransactionFeed:
    """
    Async iterator over transactions forwarded by a running stream.

    Ends once the stream has stopped and the queue is drained. If the stream
    task died with an unexpected exception, that exception is raised here
    instead.
    """

    def __init__(self, queue: "asyncio.Queue[Transaction]", task: asyncio.Task):
        self._queue = queue
        self._task = task

    def __aiter__(self) -> "TransactionFeed":
        return self

    async def __anext__(self) -> Transaction:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._task.done():
            self._raise_for_task()
            raise StopAsyncIteration

        getter = asyncio.ensure_future(self._queue.get())
        try:
            done, _ = await asyncio.wait({getter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not getter.done():
                getter.cancel()

        if getter in done:
            return getter.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        self._raise_for_task()
        raise StopAsyncIteration

    def _raise_for_task(self):
        if not self._task.cancelled() and self._task.exception() is not None:
            raise self._task.exception()

    def qsize(self) -> int:
        return self._queue.qsize()


class TransactionStream:
    """
    Long-lived subscription to the pending transaction feed.

    Runs one background task that connects, subscribes, and forwards
    validated, deduplicated transactions to a bounded queue. Every failure
    (dial, handshake, read, decode, validation) closes the connection, is
    reported to ``listener.on_error``, and is retried after an exponential
    backoff. Retrying never gives up; only ``stop()`` ends the loop.

    A full queue blocks the read loop, so a slow consumer stalls the feed
    rather than losing transactions.
    """

    def __init__(
        self,
        config: StreamConfig,
        listener: Optional[StreamListener] = None,
        *,
        dialer: Optional[Dialer] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.listener = listener or StreamListener()
        self._dialer = dialer or websocket_connect
        self._clock = clock
        self._backoff = config.make_backoff(rng)

        self._queue: Optional[asyncio.Queue] = None
        self._dedup: Optional[DedupFilter] = None
        self._task: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._dial_options: Dict[str, Any] = {}
        self._connected_once = False
        self._connected = False

        # Stats
        self._forwarded_count = 0
        self._error_count = 0
        self._connect_count = 0
        self._reconnect_count = 0
        self._start_time = 0.0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, stop: Optional[asyncio.Event] = None) -> TransactionFeed:
        """
        Launch the background task and return the transaction feed.

        Must be called from a running event loop. Setting ``stop`` (or calling
        ``stop()``) shuts the stream down.

        Raises:
            ConfigurationError: if the TLS client certificate cannot be loaded
            RuntimeError: if the stream was already started
        """
        if self._task is not None:
            raise RuntimeError("stream already started")

        self._dial_options = self._build_dial_options()
        self._stop = stop or asyncio.Event()
        self._queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._dedup = DedupFilter(
            ttl_seconds=self.config.dedup_ttl_seconds,
            max_size=self.config.dedup_max_size,
            clock=self._clock,
        )
        self._start_time = time.time()

        self._task = asyncio.create_task(self._run(), name="transaction-stream")
        self._watcher = asyncio.create_task(self._watch_stop(), name="transaction-stream-stop")
        return TransactionFeed(self._queue, self._task)

    async def stop(self):
        """Stop the stream and wait for the background task to finish."""
        if self._task is None:
            return
        self._stop.set()
        await asyncio.wait({self._task})
        if self._watcher is not None:
            await asyncio.wait({self._watcher})

    def _build_dial_options(self) -> Dict[str, Any]:
        config = self.config
        options: Dict[str, Any] = {
            "open_timeout": config.open_timeout,
            "ping_interval": config.ping_interval,
            "ping_timeout": config.ping_timeout,
            "max_size": config.max_message_size,
        }
        header = config.authorization_header()
        if header:
            options["additional_headers"] = {"Authorization": header}
        context = config.ssl_context()
        if context is not None:
            options["ssl"] = context
        return options

    async def _watch_stop(self):
        await self._stop.wait()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self):
        logger.info(f"Transaction stream starting ({self.config.auth_mode.value} auth, {self.config.endpoint})")
        try:
            while True:
                try:
                    connection = await self._connect()
                except Exception as e:
                    await self._fail(e)
                    continue

                self._backoff.reset()
                self._connected = True

                try:
                    await self._notify_connected()
                    await self._consume(connection)
                except asyncio.CancelledError:
                    await self._close(connection)
                    raise
                except Exception as e:
                    await self._close(connection)
                    await self._fail(e)
        finally:
            self._connected = False
            if self._watcher is not None:
                self._watcher.cancel()
            logger.info("Transaction stream stopped")

    async def _connect(self):
        """Dial the gateway and complete the subscribe handshake."""
        url = self.config.endpoint
        logger.info(f"Connecting to {url}")
        try:
            connection = await self._dialer(url, **self._dial_options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"dial {url}: {type(e).__name__}: {e}") from e

        try:
            await connection.send(SUBSCRIBE_REQUEST)
            response = await connection.recv()
        except asyncio.CancelledError:
            await self._close(connection)
            raise
        except Exception as e:
            await self._close(connection)
            raise SubscriptionError(f"subscribe request failed: {type(e).__name__}: {e}") from e

        if isinstance(response, bytes):
            response = response.decode("utf-8", errors="replace")
        if ERROR_MARKER in response:
            await self._close(connection)
            raise SubscriptionError(f"subscription failed: {response[:200]}")

        logger.info(f"Subscribed to {url}")
        return connection

    async def _consume(self, connection):
        """Forward transactions until the connection or a message fails."""
        while True:
            try:
                raw = await connection.recv()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise TransportError(f"read failed: {type(e).__name__}: {e}") from e

            tx = decode_envelope(raw).unwrap()
            tx.check()

            if self._dedup.is_duplicate(tx.hash):
                logger.debug(f"Dropping duplicate tx {tx.hash}")
                continue

            await self._queue.put(tx)
            self._forwarded_count += 1

    async def _close(self, connection):
        self._connected = False
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"Error closing connection: {type(e).__name__}: {e}")

    async def _fail(self, error: Exception):
        """Report a failure and wait out the next backoff delay."""
        self._error_count += 1
        delay = self._backoff.duration()
        logger.warning(
            f"Stream error: {type(error).__name__}: {error}; "
            f"retrying in {delay:.2f}s (attempt {self._backoff.attempt})"
        )
        await self._notify(self.listener.on_error, error)
        await asyncio.sleep(delay)

    async def _notify_connected(self):
        if not self._connected_once:
            self._connected_once = True
            self._connect_count += 1
            logger.info("Connected to transaction stream")
            await self._notify(self.listener.on_connect)
        else:
            self._reconnect_count += 1
            logger.info("Reconnected to transaction stream")
            await self._notify(self.listener.on_reconnect)

    async def _notify(self, callback: Callable, *args):
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            name = getattr(callback, "__name__", repr(callback))
            logger.error(f"Stream listener {name} failed: {type(e).__name__}: {e}")

    def get_stats(self) -> dict:
        """Get streaming statistics."""
        uptime = time.time() - self._start_time if self._start_time > 0 else 0
        tx_per_sec = self._forwarded_count / uptime if uptime > 0 else 0

        return {
            "forwarded_count": self._forwarded_count,
            "error_count": self._error_count,
            "connect_count": self._connect_count,
            "reconnect_count": self._reconnect_count,
            "backoff_attempt": self._backoff.attempt,
            "connected": self._connected,
            "running": self.running,
            "uptime_seconds": uptime,
            "tx_per_second": tx_per_sec,
            "queue_size": self._queue.qsize() if self._queue is not None else 0,
            "dedup": self._dedup.get_stats() if self._dedup is not None else {},
        }
