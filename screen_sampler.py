"""
Screen sampling: grab the capture region and reduce it to one average
color per vertical segment.
"""

import logging

import numpy as np
from PIL import ImageGrab
from screeninfo import get_monitors

from config import CaptureRegion
from errors import CaptureUnavailable, ConfigInvalid

logger = logging.getLogger(__name__)


def monitor_region(index: int) -> CaptureRegion:
    """Bounding box of the monitor at ``index`` (screeninfo order)."""
    try:
        monitors = list(get_monitors())
    except Exception as e:
        raise ConfigInvalid(f"cannot enumerate monitors: {e}")

    if not 0 <= index < len(monitors):
        raise ConfigInvalid(f"monitor {index} not found ({len(monitors)} detected)")

    m = monitors[index]
    logger.info(
        "Capturing monitor %d: %dx%d @ (%d, %d)%s",
        index, m.width, m.height, m.x, m.y, " [Primary]" if m.is_primary else "",
    )
    return CaptureRegion(m.x, m.y, m.width, m.height)


def average_segments(pixels, segment_count, sample_step=1):
    """Average color of ``segment_count`` equal-width vertical slices.

    Slice boundaries are ``floor(k * width / segment_count)``. A slice that
    would be empty (image narrower than the segment count) uses the nearest
    column instead. ``sample_step`` strides rows and columns inside each
    slice; the stride is fixed, so the same pixels are read every frame.
    """
    if segment_count < 1:
        raise ValueError("segment_count must be >= 1")
    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise ValueError(f"expected a non-empty HxWx3 buffer, got shape {pixels.shape}")

    h, w = pixels.shape[:2]
    colors = []

    for k in range(segment_count):
        x_start = (k * w) // segment_count
        x_end = ((k + 1) * w) // segment_count
        if x_end <= x_start:
            x_start = min(x_start, w - 1)
            x_end = x_start + 1

        region = pixels[::sample_step, x_start:x_end:sample_step, :3]
        avg = np.rint(region.reshape(-1, 3).mean(axis=0)).astype(int)
        colors.append((int(avg[0]), int(avg[1]), int(avg[2])))

    return colors


class ScreenSampler:
    """Captures one region of the screen and averages it per segment."""

    def __init__(self, segment_count, region=None, sample_step=1, grab=ImageGrab.grab):
        if segment_count < 1:
            raise ConfigInvalid(f"segment_count must be >= 1, got {segment_count}")
        if sample_step < 1:
            raise ConfigInvalid(f"sample_step must be >= 1, got {sample_step}")
        if region is not None and (region.width < 1 or region.height < 1):
            raise ConfigInvalid(f"capture region is empty: {region}")

        self.segment_count = segment_count
        self.region = region
        self.sample_step = sample_step
        self._grab = grab

    def capture(self):
        """Grab the region as an HxWx3 uint8 array.

        Raises:
            CaptureUnavailable: backend not ready, or nothing was captured
        """
        bbox = self.region.bbox if self.region is not None else None
        try:
            screen = self._grab(bbox=bbox, all_screens=True)
            pixels = np.asarray(screen.convert("RGB"), dtype=np.uint8)
        except (OSError, ValueError) as e:
            raise CaptureUnavailable(f"screen grab failed: {e}") from e
        except Exception as e:
            # Platform backends raise their own types (e.g. missing X display)
            raise CaptureUnavailable(f"screen grab failed: {type(e).__name__}: {e}") from e

        if pixels.ndim != 3 or pixels.size == 0:
            raise CaptureUnavailable(f"capture region {bbox} produced no pixels")
        return pixels

    def sample(self):
        """Capture and return ``segment_count`` average RGB tuples."""
        return average_segments(self.capture(), self.segment_count, self.sample_step)
