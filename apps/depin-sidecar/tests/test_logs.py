from __future__ import annotations

import json
import logging

import pytest

from conftest import FakeAuth
from depin_sidecar.errors import AuthUnavailable, ConnectionTimeout, SidecarError
from depin_sidecar.logs import LogStreamer


class FakeSocket:
    def __init__(self, factory, url, on_open, on_message, on_error, on_close):
        self.factory    = factory
        self.url        = url
        self.on_open    = on_open
        self.on_message = on_message
        self.on_error   = on_error
        self.on_close   = on_close
        self.sent       = []
        self.closed     = False

    def run_forever(self):
        if self.factory.auto_open:
            self.on_open(self)

    def send(self, data):
        self.sent.append(json.loads(data))

    def close(self):
        self.closed = True


class SocketFactory:
    def __init__(self, auto_open=True):
        self.auto_open = auto_open
        self.sockets = []

    def __call__(self, url, **callbacks):
        ws = FakeSocket(self, url, **callbacks)
        self.sockets.append(ws)
        return ws


class FakeTimer:
    def __init__(self, delay, fn):
        self.delay     = delay
        self.fn        = fn
        self.started   = False
        self.cancelled = False
        self.daemon    = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class Recorder:
    def __init__(self, streamer):
        self.logs, self.errors, self.closes = [], [], 0
        streamer.on("log", self.logs.append).on("error", self.errors.append).on("close", self._closed)

    def _closed(self):
        self.closes += 1


@pytest.fixture
def sockets():
    return SocketFactory()


@pytest.fixture
def timers():
    created = []

    def factory(delay, fn):
        t = FakeTimer(delay, fn)
        created.append(t)
        return t

    factory.created = created
    return factory


def make_streamer(sockets, timers, auth=None, **kwargs):
    kwargs.setdefault("connect_timeout", 2)
    return LogStreamer(
        auth or FakeAuth(),
        ingress_domain = "node.test",
        socket_factory = sockets,
        timer_factory  = timers,
        **kwargs,
    )


def connected(sockets, timers, **kwargs):
    streamer = make_streamer(sockets, timers, **kwargs)
    recorder = Recorder(streamer)
    streamer.connect("node-1", "job-1")
    return streamer, recorder


class TestConnect:
    def test_subscribes_with_signed_header(self, sockets, timers):
        connected(sockets, timers)
        ws = sockets.sockets[0]
        assert ws.url == "wss://node-1.node.test"
        assert ws.sent == [{
            "path":   "/log",
            "body":   {"jobAddress": "job-1", "address": "owner-1"},
            "header": "Hello Nosana Node!:sig-1",
        }]

    def test_times_out_when_never_open(self, timers):
        streamer = make_streamer(SocketFactory(auto_open=False), timers, connect_timeout=0.05)
        with pytest.raises(ConnectionTimeout):
            streamer.connect("node-1", "job-1")

    def test_auth_failure_is_raised(self, sockets, timers):
        class NoAuth(FakeAuth):
            def produce(self):
                raise AuthUnavailable("no signer")

        streamer = make_streamer(sockets, timers, auth=NoAuth())
        with pytest.raises(AuthUnavailable):
            streamer.connect("node-1", "job-1")

    def test_unknown_event(self, sockets, timers):
        with pytest.raises(ValueError):
            make_streamer(sockets, timers).on("bogus", print)


class TestMessages:
    def test_log_frame(self, sockets, timers):
        _, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_message(ws, json.dumps({"path": "log", "data": json.dumps({"line": "loading model"})}))
        assert rec.logs == [{"line": "loading model"}]

    def test_unparseable_frame_is_raw(self, sockets, timers):
        _, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_message(ws, "plain text")
        ws.on_message(ws, json.dumps({"path": "log", "data": "{not json"}))
        assert rec.logs[0] == {"raw": "plain text"}
        assert "raw" in rec.logs[1]

    def test_error_frame(self, sockets, timers):
        _, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_message(ws, json.dumps({"error": "job not found"}))
        assert rec.logs == []
        assert isinstance(rec.errors[0], SidecarError)

    def test_other_frames_ignored(self, sockets, timers):
        _, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_message(ws, json.dumps({"path": "status", "data": "x"}))
        assert rec.logs == [] and rec.errors == []

    def test_listener_error_does_not_stop_others(self, sockets, timers):
        streamer, rec = connected(sockets, timers)
        seen = []
        streamer.on("log", lambda r: 1 / 0)
        streamer.on("log", seen.append)
        ws = sockets.sockets[0]
        ws.on_message(ws, json.dumps({"path": "log", "data": "{}"}))
        assert seen == [{}]


class TestReconnect:
    def test_normal_close_does_not_reconnect(self, sockets, timers):
        _, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_close(ws, 1000, "bye")
        assert timers.created == []
        assert rec.closes == 1

    def test_abnormal_close_retries_ten_times_then_closes(self, sockets, timers):
        streamer, rec = connected(sockets, timers)
        sockets.auto_open = False

        for attempt in range(10):
            ws = sockets.sockets[-1]
            ws.on_close(ws, 1006, "gone")
            timer = timers.created[-1]
            assert timer.delay == 3 and timer.started and timer.daemon
            assert rec.closes == 0
            timer.fn()

        ws = sockets.sockets[-1]
        ws.on_close(ws, 1006, "gone")

        assert len(timers.created) == 10
        assert len(sockets.sockets) == 11
        assert rec.closes == 1

    def test_successful_open_resets_retry_count(self, sockets, timers):
        streamer, _ = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_close(ws, None, None)
        assert streamer.retry_count == 1
        timers.created[-1].fn()
        # run_forever opens on a background thread
        sockets.sockets[-1].on_open(sockets.sockets[-1])
        assert streamer.retry_count == 0

    def test_stale_socket_events_are_ignored(self, sockets, timers):
        _, rec = connected(sockets, timers)
        old = sockets.sockets[0]
        old.on_close(old, 1006, "gone")
        timers.created[-1].fn()

        old.on_close(old, 1006, "late")
        old.on_error(old, RuntimeError("late"))

        assert len(timers.created) == 1
        assert rec.errors == []

    def test_close_cancels_pending_reconnect(self, sockets, timers):
        streamer, rec = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_close(ws, 1006, "gone")

        streamer.close()
        ws.on_close(ws, 1006, "racing")

        assert timers.created[0].cancelled
        assert ws.closed
        assert len(timers.created) == 1
        assert rec.closes == 1

    def test_reconnect_after_close_is_a_no_op(self, sockets, timers):
        streamer, _ = connected(sockets, timers)
        ws = sockets.sockets[0]
        ws.on_close(ws, 1006, "gone")
        streamer.close()
        timers.created[0].fn()
        assert len(sockets.sockets) == 1


class TestCloseRaces:
    def test_close_while_reconnect_socket_is_built(self, timers):
        holder = {}

        class ClosingFactory(SocketFactory):
            def __call__(self, url, **callbacks):
                ws = super().__call__(url, **callbacks)
                if len(self.sockets) == 2:
                    holder["streamer"].close()
                return ws

        sockets = ClosingFactory()
        streamer, rec = connected(sockets, timers)
        holder["streamer"] = streamer
        first = sockets.sockets[0]
        first.on_close(first, 1006, "gone")

        timers.created[0].fn()

        late = sockets.sockets[1]
        assert late.closed
        assert late.sent == []
        assert streamer._ws is None
        assert rec.closes == 1

    def test_close_between_scheduling_and_starting_the_timer(self, sockets, timers):
        streamer, rec = connected(sockets, timers)

        class CloseOnSocketClosed(logging.Handler):
            def emit(self, record):
                if "Socket closed" in record.getMessage():
                    streamer.close()

        logger = logging.getLogger("depin_sidecar.logs")
        handler = CloseOnSocketClosed()
        old_level = logger.level
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            ws = sockets.sockets[0]
            ws.on_close(ws, 1006, "gone")
        finally:
            logger.removeHandler(handler)
            logger.setLevel(old_level)

        timer = timers.created[0]
        assert timer.cancelled
        assert rec.closes == 1
        timer.fn()
        assert len(sockets.sockets) == 1

    def test_subscribe_failure_on_reconnect_emits_error(self, sockets, timers):
        class FlakyAuth(FakeAuth):
            def produce(self):
                if self.produced >= 1:
                    raise AuthUnavailable("signing service down")
                return super().produce()

        streamer, rec = connected(sockets, timers, auth=FlakyAuth())
        sockets.auto_open = False
        first = sockets.sockets[0]
        first.on_close(first, 1006, "gone")
        timers.created[0].fn()

        second = sockets.sockets[1]
        second.on_open(second)

        assert second.sent == []
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], AuthUnavailable)
