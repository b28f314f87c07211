"""
HSV color smoothing.

Each segment has a TransitionState that is either Resting (current equals
target) or Transitioning (current moves toward target every tick). State
objects are immutable; ``ColorSmoother.step`` returns the next one instead of
mutating anything, so the sync loop owns all state explicitly.

Distance between two colors is the Chebyshev distance in degree units: hue
difference along the shortest arc, and saturation/value differences scaled
by ``CHANNEL_SCALE`` so a full 0-1 swing counts as much as the largest
possible hue change (180 degrees).
"""

import colorsys
import math
from dataclasses import dataclass, replace
from typing import NamedTuple

CHANNEL_SCALE = 180.0
EPSILON = 1e-6


class HSV(NamedTuple):
    h: float  # degrees, [0, 360)
    s: float  # [0, 1]
    v: float  # [0, 1]


def make_hsv(h, s, v) -> HSV:
    """Build an HSV with hue wrapped and saturation/value clamped."""
    h = h % 360.0
    if h >= 360.0:
        h = 0.0
    return HSV(h, min(1.0, max(0.0, s)), min(1.0, max(0.0, v)))


def rgb_to_hsv(rgb) -> HSV:
    r, g, b = rgb
    h, s, v = colorsys.rgb_to_hsv(r / 255.0, g / 255.0, b / 255.0)
    return make_hsv(h * 360.0, s, v)


def hsv_to_rgb(hsv):
    r, g, b = colorsys.hsv_to_rgb(hsv.h / 360.0, hsv.s, hsv.v)
    return (
        min(255, max(0, int(round(r * 255)))),
        min(255, max(0, int(round(g * 255)))),
        min(255, max(0, int(round(b * 255)))),
    )


def hue_delta(current, target):
    """Signed shortest angular distance from ``current`` to ``target``, in (-180, 180]."""
    delta = (target - current) % 360.0
    if delta > 180.0:
        delta -= 360.0
    return delta


def is_achromatic(hsv):
    return hsv.s <= EPSILON or hsv.v <= EPSILON


def distance(a, b):
    """Chebyshev distance between two HSV colors, in degree units."""
    return max(
        abs(hue_delta(a.h, b.h)),
        abs(b.s - a.s) * CHANNEL_SCALE,
        abs(b.v - a.v) * CHANNEL_SCALE,
    )


def _approach(current, target, max_step):
    delta = target - current
    if abs(delta) <= max_step:
        return target
    return current + math.copysign(max_step, delta)


@dataclass(frozen=True)
class TransitionState:
    current: HSV
    target: HSV
    updated_at: float

    @property
    def resting(self) -> bool:
        return distance(self.current, self.target) <= EPSILON


def initial_states(segment_count, now=0.0):
    """One resting black state per segment."""
    black = HSV(0.0, 0.0, 0.0)
    return tuple(TransitionState(black, black, now) for _ in range(segment_count))


class ColorSmoother:
    """Advances transition states toward their sampled targets.

    Args:
        transition_speed: largest step per tick, in degrees for hue and
            ``transition_speed / CHANNEL_SCALE`` for saturation and value
        snap_threshold: at or below this distance current jumps to target
    """

    def __init__(self, transition_speed: float, snap_threshold: float):
        if transition_speed <= 0:
            raise ValueError("transition_speed must be > 0")
        if snap_threshold < 0:
            raise ValueError("snap_threshold must be >= 0")
        self.transition_speed = transition_speed
        self.snap_threshold = snap_threshold

    def step(self, state: TransitionState, target_rgb, now: float) -> TransitionState:
        """Return the state after one tick toward ``target_rgb``."""
        target = rgb_to_hsv(target_rgb)
        current = state.current

        # Hue is meaningless for grays; don't sweep through the wheel for it
        if is_achromatic(target):
            target = HSV(current.h, target.s, target.v)
        elif is_achromatic(current):
            current = HSV(target.h, current.s, current.v)

        if distance(current, target) <= max(self.snap_threshold, EPSILON):
            return TransitionState(target, target, now)

        speed = self.transition_speed
        dh = hue_delta(current.h, target.h)
        if abs(dh) <= speed:
            h = target.h
        else:
            h = current.h + math.copysign(speed, dh)

        channel_step = speed / CHANNEL_SCALE
        nxt = make_hsv(
            h,
            _approach(current.s, target.s, channel_step),
            _approach(current.v, target.v, channel_step),
        )
        if distance(nxt, target) <= EPSILON:
            nxt = target
        return replace(state, current=nxt, target=target, updated_at=now)

    def step_all(self, states, targets, now: float):
        """Advance every segment by one tick. ``targets`` is one RGB per state."""
        if len(states) != len(targets):
            raise ValueError(f"expected {len(states)} segment colors, got {len(targets)}")
        return tuple(self.step(state, rgb, now) for state, rgb in zip(states, targets))
