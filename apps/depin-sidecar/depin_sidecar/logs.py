"""
Log Streamer
============

Streams a running job's logs from the node's websocket:

    streamer = controller.get_log_streamer()
    streamer.on("log", print).on("error", log.warning).on("close", done.set)
    streamer.connect(node, job_address)   # returns once the subscribe is sent
    …
    streamer.close()

Protocol: on open, send `{path: "/log", body: {jobAddress, address}, header}`
where header is the signed node-auth header. Frames are JSON envelopes; a
`path == "log"` frame carries the log record as a JSON string in `data`.
Anything that does not parse is passed on as `{"raw": <text>}`.

An abnormal close (anything but 1000 / 1005) reconnects after 3s, at most 10
times in a row; a successful open resets the count. close() stops for good.
"""

from __future__ import annotations
import json
import logging
import threading
from typing import Any, Callable, Optional

import websocket

from .auth import AuthProvider
from .errors import ConnectionTimeout, SidecarError
from .node import DEFAULT_INGRESS_DOMAIN

log = logging.getLogger(__name__)

NORMAL_CLOSE_CODES = (1000, 1005)
MAX_RETRIES        = 10
RETRY_DELAY        = 3
CONNECT_TIMEOUT    = 10


class _Attempt:
    """Outcome of one socket open: set once the subscribe is sent or failed."""

    def __init__(self, initial: bool = True):
        self.ready   = threading.Event()
        self.error: Optional[BaseException] = None
        self.initial = initial   # connect() is waiting on it

    def fail(self, error: BaseException):
        self.error = error
        self.ready.set()


class LogStreamer:
    EVENTS = ("log", "error", "close")

    def __init__(
        self,
        auth:            AuthProvider,
        ingress_domain:  str      = DEFAULT_INGRESS_DOMAIN,
        max_retries:     int      = MAX_RETRIES,
        retry_delay:     float    = RETRY_DELAY,
        connect_timeout: float    = CONNECT_TIMEOUT,
        socket_factory:  Callable = websocket.WebSocketApp,
        timer_factory:   Callable = threading.Timer,
    ):
        self.auth            = auth
        self.ingress_domain  = ingress_domain
        self.max_retries     = max_retries
        self.retry_delay     = retry_delay
        self.connect_timeout = connect_timeout

        self._socket_factory = socket_factory
        self._timer_factory  = timer_factory
        self._listeners: dict[str, list[Callable]] = {e: [] for e in self.EVENTS}
        self._lock           = threading.Lock()
        self._ws: Any        = None
        self._timer: Any     = None
        self._attempt: Optional[_Attempt] = None
        self._node           = ""
        self._job_address    = ""
        self._close_emitted  = False

        self.should_reconnect = True
        self.retry_count      = 0

    # ─── Events ───────────────────────────────────────────────────────────────

    def on(self, event: str, fn: Callable) -> "LogStreamer":
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}; expected one of {self.EVENTS}")
        self._listeners[event].append(fn)
        return self

    def _emit(self, event: str, *args):
        for fn in list(self._listeners[event]):
            try:
                fn(*args)
            except Exception:
                log.exception(f"[logs] '{event}' listener raised")

    def _emit_close(self):
        with self._lock:
            if self._close_emitted:
                return
            self._close_emitted = True
        self._emit("close")

    # ─── Connection ───────────────────────────────────────────────────────────

    def connect(self, node: str, job_address: str):
        """Open the socket and subscribe. Raises ConnectionTimeout after 10s."""
        self._node          = node
        self._job_address   = job_address
        self.should_reconnect = True
        self._close_emitted = False

        attempt = self._open()
        if not attempt.ready.wait(self.connect_timeout):
            raise ConnectionTimeout(f"Log socket to {node} still connecting after {self.connect_timeout}s")
        if attempt.error is not None:
            raise attempt.error

    def _open(self, reconnect: bool = False) -> Optional[_Attempt]:
        url = f"wss://{self._node}.{self.ingress_domain}"
        log.info(f"[logs] Connecting to {url}")
        attempt = _Attempt(initial=not reconnect)
        ws = self._socket_factory(
            url,
            on_open    = self._on_open,
            on_message = self._on_message,
            on_error   = self._on_error,
            on_close   = self._on_close,
        )
        with self._lock:
            cancelled = reconnect and not self.should_reconnect
            if not cancelled:
                self._ws      = ws
                self._attempt = attempt
        if cancelled:
            log.info("[logs] Streamer closed while reconnecting — dropping new socket")
            ws.close()
            return None
        threading.Thread(
            target = ws.run_forever,
            name   = f"logs-{self._job_address[:8]}",
            daemon = True,
        ).start()
        return attempt

    def _on_open(self, ws):
        with self._lock:
            if ws is not self._ws:
                return
            attempt = self._attempt
            self.retry_count = 0
        log.info(f"[logs] Connected to node {self._node}")
        try:
            auth = self.auth.produce()
            ws.send(json.dumps({
                "path":   "/log",
                "body":   {"jobAddress": self._job_address, "address": auth.identity},
                "header": auth.header,
            }))
            log.info(f"[logs] Subscribed to logs for job {self._job_address} ({auth.identity})")
            attempt.ready.set()
        except Exception as e:
            log.error(f"[logs] Failed to send subscribe message: {e}")
            attempt.fail(e)
            if not attempt.initial:
                self._emit("error", e)

    def _on_message(self, ws, data):
        text = data.decode("utf-8", "replace") if isinstance(data, bytes) else str(data)
        try:
            message = json.loads(text)
            if message.get("path") == "log":
                payload = message["data"]
                record = json.loads(payload) if isinstance(payload, str) else payload
            elif message.get("error"):
                self._emit("error", SidecarError(str(message["error"])))
                return
            else:
                return
        except (ValueError, TypeError, KeyError, AttributeError):
            record = {"raw": text}
        self._emit("log", record)

    def _on_error(self, ws, error):
        if ws is not self._ws:
            return
        log.error(f"[logs] Socket error: {error}")
        self._emit("error", error)

    def _on_close(self, ws, code=None, reason=None):
        with self._lock:
            if ws is not self._ws:
                return
            abnormal = code not in NORMAL_CLOSE_CODES
            retry = self.should_reconnect and abnormal and self.retry_count < self.max_retries
            if retry:
                self.retry_count += 1
                timer = self._timer = self._timer_factory(self.retry_delay, self._reconnect)
                timer.daemon = True
                attempt_no = self.retry_count
        if abnormal:
            log.info(f"[logs] Socket closed. Code: {code}, Reason: {reason}")
        if retry:
            log.info(f"[logs] Reconnecting in {self.retry_delay}s (attempt {attempt_no}/{self.max_retries})")
            # a cancelled timer never fires, even when started afterwards
            timer.start()
            return
        self._emit_close()

    def _reconnect(self):
        with self._lock:
            if not self.should_reconnect:
                return
        self._open(reconnect=True)

    def close(self):
        """Stop streaming for good; later close events from the old socket are ignored."""
        with self._lock:
            self.should_reconnect = False
            ws, self._ws = self._ws, None
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if ws is not None:
            ws.close()
        self._emit_close()
