"""
Hands finished LED frames to the device on a dedicated worker lane.

At most one frame is in flight and at most one more is pending. A frame
arriving while the device is still busy replaces the pending one, so a
slow device never builds up a backlog and never holds up the caller for
longer than it asks to wait. A send that fails after the caller stopped
waiting is reported by the next ``update``.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

from errors import DeviceUnreachable

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class DeviceUpdater:
    """Bounded, rate-limited pass-through to a device sink.

    The sink needs ``send_colors(colors)``; ``clear()`` and ``disconnect()``
    are used on close when present. A sink exposing ``connected`` and
    ``reconnect()`` is reconnected on the lane when it drops, at most once
    per ``reconnect_interval``.

    Args:
        sink: connected device (normally a ConnectionManager)
        timeout: longest a frame may stay unacknowledged before the device
            counts as unreachable
        min_interval: minimum seconds between two sends
        keepalive_interval: resend an unchanged frame after this long
        reconnect_interval: minimum seconds between reconnect attempts
    """

    def __init__(self, sink, timeout=0.5, min_interval=0.0, keepalive_interval=1.0,
                 reconnect_interval=1.0, clock=time.monotonic):
        self.sink = sink
        self.timeout = timeout
        self.min_interval = min_interval
        self.keepalive_interval = keepalive_interval
        self.reconnect_interval = reconnect_interval
        self._clock = clock

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="device-lane")
        self._lock = threading.RLock()
        self._in_flight = None
        self._started_at = None
        self._pending = None
        self._reported = None
        self._unreported_error = None
        self._last_frame = None
        self._last_sent_at = None
        self._last_reconnect = None
        self._closed = False

        self.frames_sent = 0
        self.frames_skipped = 0
        self.frames_superseded = 0
        self.reconnects = 0

    @property
    def last_frame(self):
        return self._last_frame

    def update(self, colors, cancel=None, budget=None) -> bool:
        """Queue ``colors`` for the device and wait at most ``budget`` seconds.

        Without a budget the wait is bounded by ``timeout`` alone.

        Returns:
            True if the frame was delivered within the wait. False if it was
            skipped as unchanged or rate limited, is still on its way, or is
            pending behind a frame in flight.

        Raises:
            DeviceUnreachable: an earlier send failed, this one failed, or the
                frame in flight has gone unacknowledged for ``timeout``
        """
        frame = tuple(tuple(c) for c in colors)

        with self._lock:
            if self._closed:
                raise DeviceUnreachable("device updater is closed")

            if self._unreported_error is not None:
                _, error = self._unreported_error
                self._unreported_error = None
                raise self._as_unreachable(error)

            if self._in_flight is not None and not self._in_flight.done():
                if self._pending is not None:
                    self.frames_superseded += 1
                self._pending = frame
                stalled = time.monotonic() - self._started_at
                if stalled >= self.timeout:
                    raise DeviceUnreachable(f"no acknowledgement within {self.timeout:.2f}s")
                return False

            if self._should_skip(frame):
                self.frames_skipped += 1
                return False
            future = self._start(frame)

        limit = self.timeout if budget is None else max(0.0, min(self.timeout, budget))
        if self._wait(future, cancel, limit):
            return True
        if time.monotonic() - self._started_at >= self.timeout:
            raise DeviceUnreachable(f"no acknowledgement within {self.timeout:.2f}s")
        return False

    def _should_skip(self, frame) -> bool:
        if self._last_sent_at is None:
            return False
        elapsed = self._clock() - self._last_sent_at
        if elapsed < self.min_interval:
            return True
        return frame == self._last_frame and elapsed < self.keepalive_interval

    def _start(self, frame):
        future = self._executor.submit(self._deliver, frame)
        self._in_flight = future
        self._started_at = time.monotonic()
        future.add_done_callback(self._on_done)
        return future

    def _deliver(self, frame):
        if not getattr(self.sink, "connected", True):
            self._reconnect()
        self.sink.send_colors(frame)
        with self._lock:
            self._last_frame = frame
            self._last_sent_at = self._clock()
            self.frames_sent += 1

    def _reconnect(self):
        reconnect = getattr(self.sink, "reconnect", None)
        if reconnect is None:
            raise DeviceUnreachable("device disconnected")

        now = self._clock()
        if self._last_reconnect is not None and now - self._last_reconnect < self.reconnect_interval:
            raise DeviceUnreachable("device disconnected, waiting to reconnect")
        self._last_reconnect = now

        logger.info("Device disconnected, reconnecting...")
        reconnect()
        self.reconnects += 1
        logger.info("Device reconnected")

    def _on_done(self, future):
        failed = not future.cancelled() and future.exception() is not None
        if failed:
            logger.debug("Frame delivery failed: %s", future.exception())

        with self._lock:
            if failed and future is not self._reported:
                self._unreported_error = (future, future.exception())
            if future is not self._in_flight:
                return
            if self._pending is None or self._closed:
                return
            frame, self._pending = self._pending, None
            if frame == self._last_frame and not failed:
                self.frames_skipped += 1
                return
            logger.debug("Flushing latest pending frame")
            self._start(frame)

    def _wait(self, future, cancel, limit) -> bool:
        """Wait for ``future`` up to ``limit``. True once its outcome is collected."""
        deadline = time.monotonic() + limit
        while not future.done():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait([future], timeout=min(remaining, POLL_INTERVAL))
            if cancel is not None and cancel.is_set() and not future.done():
                raise DeviceUnreachable("update cancelled by shutdown")

        with self._lock:
            self._reported = future
            if self._unreported_error is not None and self._unreported_error[0] is future:
                self._unreported_error = None

        if future.cancelled():
            raise DeviceUnreachable("update cancelled by shutdown")
        error = future.exception()
        if error is not None:
            raise self._as_unreachable(error)
        return True

    @staticmethod
    def _as_unreachable(error):
        if isinstance(error, DeviceUnreachable):
            return error
        if isinstance(error, OSError):  # includes TimeoutError, serial errors
            unreachable = DeviceUnreachable(f"{type(error).__name__}: {error}")
            unreachable.__cause__ = error
            return unreachable
        return error

    def close(self, grace=1.0):
        """Drain the lane for up to ``grace`` seconds, blank the LEDs, release the sink."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending = None
            in_flight = self._in_flight

        if in_flight is not None and not in_flight.done():
            wait([in_flight], timeout=grace)
        self._executor.shutdown(wait=False, cancel_futures=True)

        clear = getattr(self.sink, "clear", None)
        connected = getattr(self.sink, "connected", True)
        if clear is not None and connected and (in_flight is None or in_flight.done()):
            try:
                clear()
            except (DeviceUnreachable, OSError) as e:
                logger.warning("Could not clear LEDs on shutdown: %s", e)

        disconnect = getattr(self.sink, "disconnect", None)
        if disconnect is not None:
            disconnect()
        logger.info(
            "Device released (%d sent, %d skipped, %d superseded, %d reconnects)",
            self.frames_sent, self.frames_skipped, self.frames_superseded, self.reconnects,
        )
