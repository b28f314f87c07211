import threading
import time

import pytest

from config import SyncConfig
from errors import CaptureUnavailable, ConnectionFailed


class FakeSink:
    """Device stand-in that records frames and can fail, stall or drop on demand."""

    def __init__(self, led_count=6):
        self.led_count = led_count
        self.frames = []
        self.fail_next = 0
        self.error = TimeoutError("device did not acknowledge")
        self.gate = None  # threading.Event; send blocks until set
        self.delay = 0.0
        self.connected = True
        self.reconnect_failures = 0
        self.reconnects = 0
        self.on_disconnected = None
        self.cleared = False
        self.disconnected = False

    def send_colors(self, colors):
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if not self.connected:
            raise ConnectionFailed("not connected")
        if self.fail_next:
            self.fail_next -= 1
            raise self.error
        self.frames.append(list(colors))

    def drop(self):
        self.connected = False
        if self.on_disconnected:
            self.on_disconnected()

    def reconnect(self):
        if self.reconnect_failures:
            self.reconnect_failures -= 1
            raise ConnectionFailed("[USB] cannot open /dev/ttyUSB0")
        self.reconnects += 1
        self.connected = True

    def clear(self):
        self.cleared = True

    def disconnect(self):
        was_connected = self.connected
        self.connected = False
        self.disconnected = True
        if was_connected and self.on_disconnected:
            self.on_disconnected()


class FakeSampler:
    """Returns the same segment colors every tick unless told otherwise."""

    def __init__(self, colors):
        self.colors = list(colors)
        self.fail_next = 0
        self.calls = 0

    def sample(self):
        self.calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise CaptureUnavailable("display asleep")
        return list(self.colors)


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def make_config():
    def _make(**overrides):
        values = dict(
            segment_count=2,
            transition_speed=30.0,
            snap_threshold=1.0,
            target_frame_rate=50,
            device_timeout=0.3,
            capture_timeout=0.3,
            keepalive_interval=10.0,
            reconnect_interval=0.0,
            max_consecutive_failures=5,
            retry_backoff=0.0,
            shutdown_grace=0.2,
        )
        values.update(overrides)
        return SyncConfig(**values)
    return _make


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()
