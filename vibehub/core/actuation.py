"""Conversion between protocol-native values and normalized intensities.

All functions here are pure and total: they never raise for numeric input,
they saturate instead.
"""

from __future__ import annotations

import math

from vibehub.core.model import ChannelRange

SPEED_CEILING = 5.0


def clamp_intensity(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def normalize(protocol_value: float, channel_range: ChannelRange) -> float:
    """Map a protocol value onto [0, 1] relative to the channel range."""
    span = channel_range.maximum - channel_range.minimum
    if span == 0 or math.isnan(protocol_value):
        return 0.0
    return clamp_intensity((protocol_value - channel_range.minimum) / span)


def denormalize(intensity: float, channel_range: ChannelRange) -> float:
    """Map an intensity onto the channel range, snapped to its resolution.

    Out-of-range intensities saturate at the range bounds.
    """
    fraction = clamp_intensity(intensity)
    low, high = sorted((channel_range.minimum, channel_range.maximum))
    value = channel_range.minimum + fraction * (channel_range.maximum - channel_range.minimum)
    if channel_range.resolution > 0:
        steps = math.floor((value - channel_range.minimum) / channel_range.resolution + 0.5)
        value = channel_range.minimum + steps * channel_range.resolution
    return max(low, min(high, value))


def remap(value: float, start: float, end: float) -> float:
    """Scale a raw parameter from [start, end] onto [0, 1]."""
    return normalize(value, ChannelRange(minimum=start, maximum=end, resolution=0.0))


class SpeedFilter:
    """Exponentially smoothed absolute rate of change of a parameter."""

    def __init__(self, alpha: float) -> None:
        self.alpha = alpha
        self.previous_position = 0.0
        self.smoothed_speed = 0.0

    def update(self, position: float, delta_time: float) -> float:
        if delta_time <= 0:
            return self.smoothed_speed
        speed = abs(position - self.previous_position) / delta_time
        self.smoothed_speed = self.alpha * speed + (1.0 - self.alpha) * self.smoothed_speed
        self.previous_position = position
        return self.smoothed_speed


def speed_to_intensity(speed: float, ceiling: float = SPEED_CEILING) -> float:
    if ceiling <= 0:
        return 0.0
    return clamp_intensity(min(speed, ceiling) / ceiling)
