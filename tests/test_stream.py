"""Tests for the transaction stream lifecycle."""

import asyncio
import json
import ssl
from unittest.mock import patch

import pytest

from core.errors import (
    ConfigurationError,
    DecodeError,
    MissingTransactionError,
    SubscriptionError,
    TransactionValidationError,
    TransportError,
)
from stream.client import SUBSCRIBE_REQUEST, StreamListener, TransactionStream
from stream.config import (
    CERT_FILE_NAME,
    CLOUD_WS_URL,
    ENTERPRISE_WS_URL,
    KEY_FILE_NAME,
    AccountCredentials,
    ClientCertificate,
    StreamConfig,
)
from tests.fakes import (
    REJECTED,
    FakeConnection,
    FakeDialer,
    RecordingListener,
    tx_message,
)


def make_config(**overrides) -> StreamConfig:
    options = {
        "account": AccountCredentials(account_id="acct-1", secret_hash="s3cr3t"),
        "backoff_min_seconds": 0,
        "backoff_max_seconds": 0,
        "backoff_jitter": False,
    }
    options.update(overrides)
    return StreamConfig(**options)


async def collect(feed, count: int, timeout: float = 2.0) -> list:
    return [await asyncio.wait_for(feed.__anext__(), timeout) for _ in range(count)]


async def wait_exhausted(dialer: FakeDialer, timeout: float = 2.0):
    await asyncio.wait_for(dialer.exhausted.wait(), timeout)


class TestForwarding:
    """Tests for decoding, dedup, and ordering of forwarded transactions."""

    @pytest.mark.asyncio
    async def test_duplicates_dropped_order_preserved(self):
        """Test 0xaaa, 0xaaa, 0xbbb yields exactly 0xaaa then 0xbbb."""
        conn = FakeConnection([tx_message("0xaaa"), tx_message("0xaaa"), tx_message("0xbbb")])
        dialer = FakeDialer(conn)
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, 2)
            await wait_exhausted(dialer)

            assert [tx.hash for tx in records] == ["0xaaa", "0xbbb"]
            assert feed.qsize() == 0
            assert stream.get_stats()["forwarded_count"] == 2
            assert stream.get_stats()["dedup"]["duplicates"] == 1
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        """Test N distinct transactions arrive in wire order."""
        hashes = [f"0x{i:04x}" for i in range(20)]
        dialer = FakeDialer(FakeConnection([tx_message(h) for h in hashes]))
        stream = TransactionStream(make_config(), dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, len(hashes))
            assert [tx.hash for tx in records] == hashes
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_dedup_survives_reconnect(self):
        """Test a hash seen before a reconnect is still suppressed after it."""
        dialer = FakeDialer(
            FakeConnection([tx_message("0xaaa")]),
            FakeConnection([tx_message("0xaaa"), tx_message("0xbbb")]),
        )
        stream = TransactionStream(make_config(), dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, 2)
            await wait_exhausted(dialer)

            assert [tx.hash for tx in records] == ["0xaaa", "0xbbb"]
            assert feed.qsize() == 0
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_hash_forwarded_again_after_window(self):
        """Test the same hash passes again once the dedup window elapsed."""
        now = [1000.0]

        class AdvancingListener(StreamListener):
            def on_reconnect(self):
                now[0] += 61

        dialer = FakeDialer(
            FakeConnection([tx_message("0xaaa")]),
            FakeConnection([tx_message("0xaaa")]),
        )
        stream = TransactionStream(
            make_config(dedup_ttl_seconds=60),
            AdvancingListener(),
            dialer=dialer,
            clock=lambda: now[0],
        )

        feed = stream.start()
        try:
            records = await collect(feed, 2)
            assert [tx.hash for tx in records] == ["0xaaa", "0xaaa"]
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_slow_consumer_blocks_reads(self):
        """Test a full queue stops the read loop instead of dropping."""
        conn = FakeConnection([tx_message("0xa"), tx_message("0xb"), tx_message("0xc")], hang=True)
        stream = TransactionStream(make_config(queue_size=1), dialer=FakeDialer(conn))

        feed = stream.start()
        try:
            for _ in range(50):
                await asyncio.sleep(0)

            assert feed.qsize() == 1
            assert len(conn.incoming) == 1

            records = await collect(feed, 3)
            assert [tx.hash for tx in records] == ["0xa", "0xb", "0xc"]
        finally:
            await stream.stop()


class TestSessionFailures:
    """Tests for failures that end a session."""

    @pytest.mark.asyncio
    async def test_validation_failure(self):
        """Test an empty nonce forwards nothing and reports one validation error."""
        conn = FakeConnection([tx_message("0xaaa", nonce="")])
        dialer = FakeDialer(conn)
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            await wait_exhausted(dialer)

            assert feed.qsize() == 0
            assert listener.events == ["connect", "error"]
            error = listener.errors[0]
            assert isinstance(error, TransactionValidationError)
            assert error.field == "nonce"
            assert "validation failed" in str(error)
            assert conn.closed
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_decode_error_ends_session(self):
        """Test a malformed message closes the session before later messages."""
        conn = FakeConnection(["not valid json", tx_message("0xaaa")])
        dialer = FakeDialer(conn)
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            await wait_exhausted(dialer)

            assert feed.qsize() == 0
            assert isinstance(listener.errors[0], DecodeError)
            assert conn.closed
            assert len(conn.incoming) == 1
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_missing_record_is_error(self):
        """Test an envelope without txContents ends the session."""
        message = json.dumps({"jsonrpc": "2.0", "method": "subscribe", "params": {"subscription": "x"}})
        dialer = FakeDialer(FakeConnection([message]))
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        stream.start()
        try:
            await wait_exhausted(dialer)

            assert isinstance(listener.errors[0], MissingTransactionError)
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_read_error_is_transport_error(self):
        """Test a dropped connection is reported as a transport error."""
        dialer = FakeDialer(FakeConnection([tx_message("0xaaa")]))
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            await collect(feed, 1)
            await wait_exhausted(dialer)

            error = listener.errors[0]
            assert isinstance(error, TransportError)
            assert isinstance(error.__cause__, ConnectionError)
        finally:
            await stream.stop()


class TestConnect:
    """Tests for dialing, the subscribe handshake, and reconnects."""

    @pytest.mark.asyncio
    async def test_handshake_rejected(self):
        """Test an error marker in the subscribe response tears the session down."""
        conn = FakeConnection([tx_message("0xaaa")], handshake=REJECTED)
        dialer = FakeDialer(conn)
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            await wait_exhausted(dialer)

            assert listener.events == ["error"]
            assert isinstance(listener.errors[0], SubscriptionError)
            assert conn.sent == [SUBSCRIBE_REQUEST]
            assert conn.closed
            assert feed.qsize() == 0
            assert stream.get_stats()["forwarded_count"] == 0
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_handshake_read_failure(self):
        """Test a failed handshake read is a subscription error."""
        conn = FakeConnection(handshake=ConnectionError("reset"))
        dialer = FakeDialer(conn)
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        stream.start()
        try:
            await wait_exhausted(dialer)

            assert isinstance(listener.errors[0], SubscriptionError)
            assert conn.closed
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_connect_then_reconnect(self):
        """Test on_connect fires once and on_reconnect for later sessions."""
        dialer = FakeDialer(
            FakeConnection([tx_message("0xaaa")]),
            FakeConnection([tx_message("0xbbb")]),
            FakeConnection([tx_message("0xccc")]),
        )
        listener = RecordingListener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, 3)
            await wait_exhausted(dialer)

            assert [tx.hash for tx in records] == ["0xaaa", "0xbbb", "0xccc"]
            assert listener.events == ["connect", "error", "reconnect", "error", "reconnect", "error"]
            stats = stream.get_stats()
            assert stats["connect_count"] == 1
            assert stats["reconnect_count"] == 2
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_dial_failures_retried_and_backoff_reset(self):
        """Test dial errors are retried and a successful subscribe resets backoff."""
        attempts_at_connect = []
        dialer = FakeDialer(
            OSError("connection refused"),
            OSError("connection refused"),
            FakeConnection([tx_message("0xaaa")], hang=True),
        )

        class Listener(RecordingListener):
            def on_connect(self):
                super().on_connect()
                attempts_at_connect.append(stream.get_stats()["backoff_attempt"])

        listener = Listener()
        stream = TransactionStream(make_config(), listener, dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, 1)

            assert records[0].hash == "0xaaa"
            assert listener.events == ["error", "error", "connect"]
            assert all(isinstance(e, TransportError) for e in listener.errors)
            assert isinstance(listener.errors[0].__cause__, OSError)
            assert attempts_at_connect == [0]
            assert stream.is_connected
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_backoff_delays_grow_between_failures(self):
        """Test consecutive failures sleep for growing delays."""
        dialer = FakeDialer(OSError("down"), OSError("down"), OSError("down"))
        config = make_config(backoff_min_seconds=0.1, backoff_max_seconds=0.3)
        stream = TransactionStream(config, dialer=dialer)
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        with patch("stream.client.asyncio.sleep", fake_sleep):
            stream.start()
            try:
                await wait_exhausted(dialer)
            finally:
                await stream.stop()

        assert delays == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_token_dial_options(self):
        """Test token auth sends the Authorization header to the cloud gateway."""
        config = make_config()
        dialer = FakeDialer()
        stream = TransactionStream(config, dialer=dialer)

        stream.start()
        try:
            await wait_exhausted(dialer)

            url, options = dialer.calls[0]
            assert url == CLOUD_WS_URL
            assert options["additional_headers"] == {"Authorization": config.account.authorization_header()}
            assert "ssl" not in options
            assert options["open_timeout"] == config.open_timeout
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_certificate_dial_options(self, tmp_path):
        """Test certificate auth dials the enterprise gateway with a TLS context."""
        (tmp_path / CERT_FILE_NAME).write_text("cert")
        (tmp_path / KEY_FILE_NAME).write_text("key")
        config = make_config(certificate=ClientCertificate.from_dir(tmp_path))
        dialer = FakeDialer()
        stream = TransactionStream(config, dialer=dialer)

        with patch.object(ssl.SSLContext, "load_cert_chain"):
            stream.start()
        try:
            await wait_exhausted(dialer)

            url, options = dialer.calls[0]
            assert url == ENTERPRISE_WS_URL
            assert isinstance(options["ssl"], ssl.SSLContext)
            assert "additional_headers" not in options
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_bad_certificate_fails_before_dialing(self, tmp_path):
        """Test an unloadable key pair fails start() without any dial."""
        (tmp_path / CERT_FILE_NAME).write_text("garbage")
        (tmp_path / KEY_FILE_NAME).write_text("garbage")
        config = make_config(certificate=ClientCertificate.from_dir(tmp_path))
        dialer = FakeDialer()
        stream = TransactionStream(config, dialer=dialer)

        with pytest.raises(ConfigurationError):
            stream.start()

        await asyncio.sleep(0)
        assert dialer.calls == []
        assert not stream.running


class TestListener:
    """Tests for listener dispatch."""

    @pytest.mark.asyncio
    async def test_async_listener(self):
        """Test coroutine callbacks are awaited."""
        seen = []

        class AsyncListener(StreamListener):
            async def on_connect(self):
                await asyncio.sleep(0)
                seen.append("connect")

        dialer = FakeDialer(FakeConnection([tx_message("0xaaa")], hang=True))
        stream = TransactionStream(make_config(), AsyncListener(), dialer=dialer)

        feed = stream.start()
        try:
            await collect(feed, 1)
            assert seen == ["connect"]
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_stream(self):
        """Test an exception in a callback is logged and the loop continues."""

        class BrokenListener(StreamListener):
            def on_error(self, error):
                raise RuntimeError("listener bug")

        dialer = FakeDialer(
            FakeConnection([tx_message("0xaaa")]),
            FakeConnection([tx_message("0xbbb")], hang=True),
        )
        stream = TransactionStream(make_config(), BrokenListener(), dialer=dialer)

        feed = stream.start()
        try:
            records = await collect(feed, 2)
            assert [tx.hash for tx in records] == ["0xaaa", "0xbbb"]
        finally:
            await stream.stop()


class TestShutdown:
    """Tests for stopping the stream."""

    @pytest.mark.asyncio
    async def test_stop_during_connect_callback_closes_connection(self):
        """Test stop() while an async on_connect is running still closes the connection."""
        entered = asyncio.Event()

        class SlowListener(StreamListener):
            async def on_connect(self):
                entered.set()
                await asyncio.sleep(10)

        conn = FakeConnection(hang=True)
        stream = TransactionStream(make_config(), SlowListener(), dialer=FakeDialer(conn))

        feed = stream.start()
        await asyncio.wait_for(entered.wait(), timeout=2.0)
        await stream.stop()

        assert conn.closed
        assert not stream.is_connected
        assert [tx async for tx in feed] == []

    @pytest.mark.asyncio
    async def test_stop_closes_connection_and_ends_feed(self):
        """Test stop() closes the live connection and ends iteration."""
        conn = FakeConnection([tx_message("0xaaa")], hang=True)
        stream = TransactionStream(make_config(), dialer=FakeDialer(conn))

        feed = stream.start()
        await collect(feed, 1)
        await stream.stop()

        assert conn.closed
        assert not stream.running
        assert not stream.is_connected
        assert [tx async for tx in feed] == []

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_backoff(self):
        """Test setting the stop event ends a stream stuck in backoff."""
        dialer = FakeDialer(OSError("down"))
        stream = TransactionStream(
            make_config(backoff_min_seconds=30, backoff_max_seconds=30),
            dialer=dialer,
        )
        stop = asyncio.Event()

        feed = stream.start(stop)
        for _ in range(10):
            await asyncio.sleep(0)
        stop.set()

        remaining = await asyncio.wait_for(_drain(feed), timeout=2.0)
        assert remaining == []
        assert not stream.running
        assert len(dialer.calls) == 1
        await stream.stop()

    @pytest.mark.asyncio
    async def test_queued_records_drained_after_stop(self):
        """Test records already queued are still delivered after stop."""
        conn = FakeConnection([tx_message("0xaaa"), tx_message("0xbbb")], hang=True)
        stream = TransactionStream(make_config(), dialer=FakeDialer(conn))

        feed = stream.start()
        for _ in range(50):
            await asyncio.sleep(0)
        await stream.stop()

        assert [tx.hash async for tx in feed] == ["0xaaa", "0xbbb"]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        """Test a stream cannot be started twice."""
        stream = TransactionStream(make_config(), dialer=FakeDialer())

        stream.start()
        try:
            with pytest.raises(RuntimeError):
                stream.start()
        finally:
            await stream.stop()

    @pytest.mark.asyncio
    async def test_stop_before_start(self):
        """Test stop() on an unstarted stream is a no-op."""
        stream = TransactionStream(make_config(), dialer=FakeDialer())

        await stream.stop()
        assert not stream.running


async def _drain(feed) -> list:
    return [tx async for tx in feed]
