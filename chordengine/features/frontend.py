import logging
import numpy as np
from typing import Any, Tuple

from .. import config
from .._internal.dsp import compute_autocorrelation, downmix, resample_linear
from .._internal.utils import count_frames, frame, is_positive_int, validate_audio
from ..errors import InvalidAudioError

logger = logging.getLogger(__name__)

# a 2-d buffer whose last axis is this short is read as (n, channels)
MAX_INTERLEAVED_CHANNELS = 8


def _channels_last(y: np.ndarray) -> bool:
    return y.shape[-1] <= MAX_INTERLEAVED_CHANNELS and y.shape[-1] < y.shape[0]


def prepare_audio(
    audio: Any, sample_rate: int, target_sr: int = config.TARGET_SR
) -> Tuple[np.ndarray, float]:
    """
    turns a decoded buffer into the mono analysis signal.

    accepts mono `(n,)`, planar `(channels, n)` or interleaved
    `(n, channels)` input; channels are averaged, then the signal is
    linearly resampled to `target_sr`.

    Returns:
        (y, duration): the mono signal at `target_sr` and the input
        duration in seconds.
    """
    if not is_positive_int(sample_rate):
        raise InvalidAudioError(f"sample_rate must be a positive integer, got {sample_rate!r}")
    y = validate_audio(audio)
    if y.ndim == 2:
        channels_last = _channels_last(y)
        n_samples = y.shape[0] if channels_last else y.shape[1]
        y = downmix(y, channels_last=channels_last)
    else:
        n_samples = y.shape[0]
    duration = n_samples / float(sample_rate)
    y = resample_linear(np.ascontiguousarray(y), sample_rate, target_sr)
    logger.debug(
        "prepared %d samples @ %d Hz -> %d samples @ %d Hz",
        n_samples, sample_rate, y.shape[0], target_sr,
    )
    return y, duration


def estimate_tempo(
    y: np.ndarray,
    sr: int = config.TARGET_SR,
    frame_length: int = config.FRAME_SIZE,
    hop_seconds: float = config.HOP_SECONDS,
) -> float:
    """
    global tempo from the autocorrelation of short-time energy.

    energy is taken over `frame_length` windows every `hop_seconds`; the
    strongest lag between 0.3 s and 2.0 s becomes the beat period.
    too little (or silent) audio gives the default 120 BPM.
    """
    hop = max(1, int(round(hop_seconds * sr)))
    if count_frames(y.shape[-1], frame_length, hop) < config.TEMPO_MIN_FRAMES:
        return config.DEFAULT_BPM

    energy = np.sum(frame(y, frame_length=frame_length, hop_length=hop) ** 2, axis=1)
    if not np.any(energy > config.SILENCE_ENERGY):
        return config.DEFAULT_BPM

    min_lag = max(1, int(round(config.TEMPO_MIN_LAG_SECONDS / hop_seconds)))
    max_lag = min(int(round(config.TEMPO_MAX_LAG_SECONDS / hop_seconds)), energy.shape[0] - 1)
    if max_lag < min_lag:
        return config.DEFAULT_BPM

    ac = compute_autocorrelation(energy, max_size=max_lag + 1)
    # first maximum wins ties
    best_lag = min_lag + int(np.argmax(ac[min_lag : max_lag + 1]))
    bpm = 60.0 / (best_lag * hop_seconds)
    bpm = float(np.clip(round(bpm), config.MIN_BPM, config.MAX_BPM))
    logger.debug("tempo lag %d frames -> %.0f BPM", best_lag, bpm)
    return bpm
