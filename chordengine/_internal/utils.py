import threading
import time
import numpy as np
from numpy.lib.stride_tricks import as_strided
import numba
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from ..errors import AnalysisTimeoutError, InvalidAudioError


def tiny(x: Union[float, np.ndarray]) -> float:
    x = np.asarray(x)
    if np.issubdtype(x.dtype, np.floating) or np.issubdtype(
        x.dtype, np.complexfloating
    ):
        dtype = x.dtype
    else:
        dtype = np.dtype(np.float32)
    return np.finfo(dtype).tiny


def normalize(
    S: np.ndarray,
    *,
    norm: Optional[float] = np.inf,
    axis: Optional[int] = 0,
    threshold: Optional[float] = None,
) -> np.ndarray:
    """
    normalizes a matrix along a specified axis.

    vectors whose norm is below `threshold` are left untouched, so an
    all-zero frame stays all-zero instead of turning into NaN.

    Args:
        norm: `np.inf` for max-norm, `1` for L1-norm, `2` for L2-norm.
        axis: the axis to normalize over.
        threshold: smallest norm that is divided out.
    """
    if threshold is None:
        threshold = tiny(S)
    elif threshold <= 0:
        raise ValueError(f"threshold={threshold} must be strictly positive")
    if not np.all(np.isfinite(S)):
        raise ValueError("Input must be finite")

    mag = np.abs(S).astype(float)
    if norm is None:
        return S
    elif norm == np.inf:
        length = np.max(mag, axis=axis, keepdims=True)
    elif np.issubdtype(type(norm), np.number) and norm > 0:
        length = np.sum(mag**norm, axis=axis, keepdims=True) ** (1.0 / norm)
    else:
        raise ValueError(f"Unsupported norm: {repr(norm)}")

    length[length < threshold] = 1.0
    return S / length


def frame(
    x: np.ndarray,
    *,
    frame_length: int,
    hop_length: int,
) -> np.ndarray:
    """
    slices a 1-d signal into overlapping frames, shape (n_frames, frame_length).

    returns a read-only view built with stride tricks; only frames that fit
    entirely inside the signal are produced.
    """
    x = np.ascontiguousarray(x)
    if x.shape[-1] < frame_length:
        raise ValueError(
            f"Input is too short (n={x.shape[-1]:d}) for frame_length={frame_length:d}"
        )
    if hop_length < 1:
        raise ValueError(f"Invalid hop_length: {hop_length:d}")
    n_frames = 1 + (x.shape[-1] - frame_length) // hop_length
    return as_strided(
        x,
        shape=(n_frames, frame_length),
        strides=(x.strides[-1] * hop_length, x.strides[-1]),
        writeable=False,
    )


def count_frames(n_samples: int, frame_length: int, hop_length: int) -> int:
    if n_samples < frame_length:
        return 0
    return 1 + (n_samples - frame_length) // hop_length


def validate_audio(y: Any) -> np.ndarray:
    """checks a decoded buffer and returns it as a float64 array."""
    if not isinstance(y, np.ndarray):
        try:
            y = np.asarray(y)
        except (TypeError, ValueError) as exc:
            raise InvalidAudioError(f"Audio data is not array-like: {exc}") from exc
    if not (np.issubdtype(y.dtype, np.floating) or np.issubdtype(y.dtype, np.integer)):
        raise InvalidAudioError(f"Audio data must be numeric, got dtype={y.dtype}")
    if y.ndim == 0 or y.ndim > 2:
        raise InvalidAudioError(
            f"Audio data must be one- or two-dimensional, given y.shape={y.shape}"
        )
    y = y.astype(np.float64, copy=False)
    if not np.isfinite(y).all():
        raise InvalidAudioError("Audio buffer is not finite everywhere")
    return y


def is_positive_int(x: Any) -> bool:
    return isinstance(x, (int, np.integer)) and not isinstance(x, bool) and (x > 0)


def percentile(values: Iterable[float], p: float) -> float:
    """
    lower nearest-rank percentile of the finite values: the sorted value at
    index floor(p/100 * (n-1)). 0.0 for an empty input.
    """
    a = np.asarray(list(values) if not isinstance(values, np.ndarray) else values, dtype=float)
    a = np.sort(a[np.isfinite(a)])
    if a.size == 0:
        return 0.0
    return float(a[int(np.floor((p / 100.0) * (a.size - 1)))])


def energy_percentiles(energy: np.ndarray, ps: Sequence[int]) -> Dict[int, float]:
    return {int(p): percentile(energy, p) for p in ps}


def hz_to_pc(freqs: Any) -> Union[int, np.ndarray]:
    """pitch class of a frequency: round(69 + 12*log2(f/440)) mod 12."""
    freqs = np.asanyarray(freqs, dtype=float)
    midi = np.floor(69.0 + 12.0 * np.log2(freqs / 440.0) + 0.5).astype(int)
    return np.mod(midi, 12)


def hz_to_midi(freqs: Any) -> Union[float, np.ndarray]:
    return 69.0 + 12.0 * np.log2(np.asanyarray(freqs, dtype=float) / 440.0)


@numba.vectorize(
    ["float32(complex64)", "float64(complex128)"], nopython=True, cache=True, identity=0
)
def _complex_mag_square(x):
    return x.real**2 + x.imag**2


def magnitude_square(x: Any) -> Any:
    """squared magnitude of a (possibly complex) array."""
    if np.iscomplexobj(x):
        return _complex_mag_square(x)
    return np.square(x)


class Deadline:
    """
    a wall-clock budget shared by every stage of one analysis.

    stages call `check()` at their boundaries; once the budget is spent
    (or `cancel()` was called) it raises AnalysisTimeoutError, so work
    abandoned by the caller stops at the next boundary.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._expires is not None and time.monotonic() >= self._expires

    def check(self) -> None:
        if self.expired():
            raise AnalysisTimeoutError(self.timeout if self.timeout is not None else 0.0)
