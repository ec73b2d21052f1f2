from __future__ import annotations

import math

from pianobus.errors import InvalidInputError

MIN_VOLUME = 0
MAX_VOLUME = 100
DEFAULT_VOLUME = 80


def clamp_volume(raw) -> int:
    """Round to an int and clamp into [0, 100]. Raises InvalidInputError for non-numbers/NaN."""
    if isinstance(raw, bool):
        raise InvalidInputError(f"volume must be a number, got {raw!r}")
    try:
        v = float(raw)
    except (TypeError, ValueError):
        raise InvalidInputError(f"volume must be a number, got {raw!r}") from None
    if math.isnan(v):
        raise InvalidInputError("volume is NaN")
    if math.isinf(v):
        return MAX_VOLUME if v > 0 else MIN_VOLUME
    return max(MIN_VOLUME, min(MAX_VOLUME, int(round(v))))


class VolumeState:
    """Process-wide volume. Only VolumeControl writes to it."""

    def __init__(self, value: int = DEFAULT_VOLUME) -> None:
        self._value = clamp_volume(value)

    @property
    def value(self) -> int:
        return self._value

    def _set(self, value: int) -> None:
        self._value = value


class VolumeControl:
    def __init__(self, state: VolumeState, publisher=None) -> None:
        self.state = state
        self.publisher = publisher

    def set_volume(self, raw):
        """Clamp, store and publish. Returns the stored volume.

        Out-of-range values are clamped, not rejected. The value is republished
        even when it did not change, so a subscriber that joined late picks up
        the current level on the next slider move.
        """
        try:
            v = clamp_volume(raw)
        except InvalidInputError:
            # Unusable slider value: keep the current level, publish nothing
            return self.state.value
        self.state._set(v)
        if self.publisher is not None:
            self.publisher.publish_volume(v)
        return v
