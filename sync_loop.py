"""
The fixed-cadence driver: capture -> smooth -> map -> device update.

The loop thread owns every TransitionState and the LED mapping. Capture
and device I/O each get a one-thread lane. The device is waited on only
until the next tick is due, so a slow device never delays the next
capture; its stale frame is superseded instead.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

import config
from color_smoother import ColorSmoother, initial_states
from errors import CaptureUnavailable, DeviceUnreachable, SyncAborted
from zone_mapper import build_mapping, map_colors

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


@dataclass
class SyncStats:
    frames: int = 0
    frames_sent: int = 0
    deadlines_missed: int = 0
    capture_failures: int = 0
    device_failures: int = 0
    last_frame: tuple = ()


class SyncLoop:
    """Drives one pipeline pass per tick at ``config.target_frame_rate``.

    Args:
        config: validated SyncConfig
        sampler: object with ``sample() -> list of RGB``, one per segment
        updater: DeviceUpdater bound to the connected device
        led_count: number of LEDs on the device
    """

    def __init__(self, config, sampler, updater, led_count, smoother=None, clock=time.monotonic):
        self.config = config
        self.sampler = sampler
        self.updater = updater
        self.mapping = build_mapping(config.segment_count, led_count)
        self.smoother = smoother or ColorSmoother(config.transition_speed, config.snap_threshold)
        self._clock = clock
        self.states = initial_states(config.segment_count, clock())
        self.stats = SyncStats()

        self.capture_failures = 0
        self.device_failures = 0

        self._stop = threading.Event()
        self._deadline = None
        self._capture_lane = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture-lane")
        self._capture_future = None
        self._closed = False

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self):
        """Ask the loop to finish. Safe from signal handlers and other threads."""
        self._stop.set()

    # ===== One tick =====

    def tick(self) -> bool:
        """Run one capture -> smooth -> map -> update pass.

        Returns:
            True if a frame reached the device

        Raises:
            SyncAborted: too many consecutive failures of one kind
        """
        self.stats.frames += 1

        try:
            samples = self._capture()
        except CaptureUnavailable as e:
            self.capture_failures += 1
            self.stats.capture_failures += 1
            logger.warning("CaptureUnavailable: %s (%d in a row)", e, self.capture_failures)
            self._check_ceiling(self.capture_failures, "capture")
            return False
        self.capture_failures = 0

        self.states = self.smoother.step_all(self.states, samples, self._clock())
        frame = map_colors(
            self.mapping,
            [s.current for s in self.states],
            self.config.brightness,
            self.config.saturation,
        )

        try:
            sent = self.updater.update(frame, cancel=self._stop, budget=self._time_left())
        except DeviceUnreachable as e:
            self.device_failures += 1
            self.stats.device_failures += 1
            logger.warning("DeviceUnreachable: %s (%d in a row)", e, self.device_failures)
            self._check_ceiling(self.device_failures, "device")
            return False

        # A frame still in flight is not proof the device is back
        delivered = self.updater.frames_sent > self.stats.frames_sent
        self.stats.frames_sent = self.updater.frames_sent
        if delivered and self.device_failures:
            logger.info("Device responding again after %d failed updates", self.device_failures)
            self.device_failures = 0

        if sent:
            self.stats.last_frame = tuple(frame)

        if self.stats.frames % config.LOG_EVERY_N_FRAMES == 0:
            sample = ", ".join(f"LED{i}:{c}" for i, c in enumerate(frame[:3]))
            logger.debug("[Frame %d] %s...", self.stats.frames, sample)
        return sent

    def _capture(self):
        # A capture still running from an earlier tick is reused, not queued behind
        if self._capture_future is None or self._capture_future.done():
            self._capture_future = self._capture_lane.submit(self.sampler.sample)
        future = self._capture_future

        deadline = time.monotonic() + self.config.capture_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CaptureUnavailable(
                    f"no frame within {self.config.capture_timeout:.2f}s"
                )
            done, _ = wait([future], timeout=min(remaining, POLL_INTERVAL))
            if done:
                break
            if self._stop.is_set():
                raise CaptureUnavailable("capture abandoned for shutdown")

        if future.cancelled():
            raise CaptureUnavailable("capture cancelled")
        error = future.exception()
        if error is not None:
            if isinstance(error, CaptureUnavailable):
                raise error
            raise CaptureUnavailable(f"{type(error).__name__}: {error}") from error

        samples = future.result()
        if len(samples) != self.config.segment_count:
            raise CaptureUnavailable(
                f"sampler returned {len(samples)} segments, expected {self.config.segment_count}"
            )
        return samples

    def _time_left(self):
        # Device waits end at the next deadline so capture stays on schedule
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def _check_ceiling(self, failures, stage):
        if failures >= self.config.max_consecutive_failures:
            raise SyncAborted(f"{failures} consecutive {stage} failures, giving up")

    def backoff_delay(self) -> float:
        """Extra wait before the next tick after consecutive failures."""
        failures = max(self.capture_failures, self.device_failures)
        if failures == 0:
            return 0.0
        return min(self.config.retry_backoff * 2 ** (failures - 1), self.config.max_backoff)

    # ===== Scheduling =====

    def run(self):
        """Tick until ``stop()``; always releases the device on the way out."""
        period = self.config.frame_interval
        logger.info(
            "Sync started: %d segments -> %d LEDs @ %.1f FPS",
            self.mapping.segment_count, self.mapping.led_count, self.config.target_frame_rate,
        )
        next_tick = self._clock()

        try:
            while not self._stop.is_set():
                self._deadline = next_tick + period
                self.tick()

                next_tick += period
                now = self._clock()
                if now > next_tick:
                    # Overran: drop the missed deadlines instead of catching up
                    missed = int((now - next_tick) // period) + 1
                    self.stats.deadlines_missed += missed
                    next_tick += missed * period
                    logger.debug("Frame overrun, skipped %d deadline(s)", missed)

                next_tick += self.backoff_delay()
                delay = next_tick - now
                if delay > 0:
                    self._stop.wait(delay)
        finally:
            self.close()

        logger.info(
            "Sync loop asked to stop. %d frames, %d sent, %d deadlines missed",
            self.stats.frames, self.stats.frames_sent, self.stats.deadlines_missed,
        )

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._capture_lane.shutdown(wait=False, cancel_futures=True)
        self.updater.close(self.config.shutdown_grace)
