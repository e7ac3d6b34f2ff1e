import numpy as np
from typing import Optional

from .. import config


def seconds_per_beat(bpm: float) -> float:
    if not bpm or bpm <= 0 or not np.isfinite(bpm):
        bpm = config.DEFAULT_BPM
    return 60.0 / float(bpm)


def beat_grid(bpm: float, duration: float, *, offset: float = 0.0) -> np.ndarray:
    """
    a fixed-tempo beat grid: times `offset + k * secondsPerBeat` inside
    [0, duration].
    """
    if duration <= 0:
        return np.zeros(0)
    spb = seconds_per_beat(bpm)
    n = int(np.floor((duration - offset) / spb + 1e-9)) + 1
    beats = offset + np.arange(max(n, 0)) * spb
    return beats[(beats >= 0) & (beats <= duration)]


def snap_time(
    t: float,
    spb: float,
    *,
    tolerance: float = config.SNAP_TOLERANCE_BEATS,
    duration: Optional[float] = None,
) -> float:
    """
    moves `t` onto the nearest grid point when it lies within
    `tolerance * spb` of it; otherwise `t` is returned unchanged.
    the result is clamped to [0, duration].
    """
    grid_point = round(t / spb) * spb
    if abs(grid_point - t) <= tolerance * spb:
        t = grid_point
    t = max(0.0, t)
    if duration is not None:
        t = min(t, duration)
    return float(t)
