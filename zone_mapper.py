"""
Segment -> LED mapping.

LEDs are a linear index space 0..M-1. With at least as many LEDs as
segments, each segment owns a contiguous run; when M is not a multiple of
N the first ``M % N`` segments get one extra LED. With fewer LEDs than
segments, each LED shows the segment at the centre of its share of the
screen.
"""

from dataclasses import dataclass
from typing import Tuple

from color_smoother import hsv_to_rgb, make_hsv
from errors import ConfigInvalid


@dataclass(frozen=True)
class LEDMapping:
    segment_count: int
    led_count: int
    assignments: Tuple[int, ...]

    def leds_for(self, segment: int):
        return [i for i, s in enumerate(self.assignments) if s == segment]


def build_mapping(segment_count: int, led_count: int) -> LEDMapping:
    if segment_count < 1:
        raise ConfigInvalid(f"segment_count must be >= 1, got {segment_count}")
    if led_count < 1:
        raise ConfigInvalid(f"led_count must be >= 1, got {led_count}")

    if led_count >= segment_count:
        base, extra = divmod(led_count, segment_count)
        assignments = []
        for segment in range(segment_count):
            size = base + (1 if segment < extra else 0)
            assignments.extend([segment] * size)
    else:
        assignments = [
            ((2 * led + 1) * segment_count) // (2 * led_count)
            for led in range(led_count)
        ]

    return LEDMapping(segment_count, led_count, tuple(assignments))


def map_colors(mapping: LEDMapping, colors, brightness=1.0, saturation=1.0):
    """Expand N smoothed HSV colors to M RGB tuples.

    Value is scaled by ``brightness`` and saturation by ``saturation``
    (both 0-1) before conversion.
    """
    if len(colors) != mapping.segment_count:
        raise ValueError(
            f"expected {mapping.segment_count} segment colors, got {len(colors)}"
        )

    # Convert each segment once, then fan out
    scaled = [
        hsv_to_rgb(make_hsv(c.h, c.s * saturation, c.v * brightness))
        for c in colors
    ]
    return [scaled[segment] for segment in mapping.assignments]
