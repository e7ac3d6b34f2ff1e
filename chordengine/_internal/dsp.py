import numpy as np
import scipy
import scipy.fft
import scipy.signal
import numba
from typing import Any, Optional, Tuple

from .utils import magnitude_square


def compute_autocorrelation(
    y: np.ndarray, *, max_size: Optional[int] = None, axis: int = -1
) -> np.ndarray:
    """
    computes the (unnormalized, linear) autocorrelation of a signal.

    this is done by taking the inverse fourier transform of power spectrum.
    (aka wiener-khinchin theorem). zero padding to >= 2n-1 keeps it linear,
    so lag k is exactly sum_{n < N-k} y[n] * y[n+k].

    Args:
        y: the input signal array. can be multi-dimensional too.
        max_size: maximum number of lags to compute. if none, we compute up
            to the full length of the signal.
        axis: the axis along which autocorrelation should be calculated.
    """
    if max_size is None:
        max_size = y.shape[axis]
    max_size = int(min(max_size, y.shape[axis]))
    fft = scipy.fft
    n_pad = fft.next_fast_len(2 * y.shape[axis] - 1, real=True)
    powspec = magnitude_square(fft.rfft(y, n=n_pad, axis=axis))
    autocorr = fft.irfft(powspec, n=n_pad, axis=axis)
    subslice = [slice(None)] * autocorr.ndim
    subslice[axis] = slice(max_size)
    autocorr_slice: np.ndarray = autocorr[tuple(subslice)]
    return autocorr_slice


def make_window(window: Any, Nx: int, *, fftbins: Optional[bool] = False) -> np.ndarray:
    """
    generates a window of a given type and length.

    a string (e.g., 'hann') goes through scipy; `fftbins=False` gives the
    symmetric window 0.5*(1 - cos(2*pi*i/(N-1))) used for analysis frames.
    """
    if callable(window):
        return window(Nx)
    elif isinstance(window, (str, tuple)) or np.isscalar(window):
        win: np.ndarray = scipy.signal.get_window(window, Nx, fftbins=fftbins)
        return win
    elif isinstance(window, (np.ndarray, list)):
        if len(window) == Nx:
            return np.asarray(window)
        raise ValueError(f"Window size mismatch: {len(window):d} != {Nx:d}")
    else:
        raise ValueError(f"Invalid window specification: {window!r}")


def next_pow2(n: int) -> int:
    size = 1
    while size < n:
        size <<= 1
    return size


@numba.njit(cache=True, nogil=True)
def _radix2_magnitudes(frames, n_fft):
    """
    iterative in-place radix-2 FFT of each row, returning |X[k]| for
    k in [0, n_fft/2). rows shorter than n_fft are zero padded.
    """
    n_rows = frames.shape[0]
    n_in = frames.shape[1]
    half = n_fft >> 1
    out = np.zeros((n_rows, half))

    # twiddle table shared by every stage: w[k] = exp(-2j*pi*k/n_fft)
    tw_re = np.empty(half)
    tw_im = np.empty(half)
    for k in range(half):
        ang = -2.0 * np.pi * k / n_fft
        tw_re[k] = np.cos(ang)
        tw_im[k] = np.sin(ang)

    re = np.empty(n_fft)
    im = np.empty(n_fft)
    for r in range(n_rows):
        for i in range(n_fft):
            re[i] = frames[r, i] if i < n_in else 0.0
            im[i] = 0.0

        # bit-reversal permutation
        j = 0
        for i in range(n_fft):
            if i < j:
                tmp = re[i]
                re[i] = re[j]
                re[j] = tmp
                tmp = im[i]
                im[i] = im[j]
                im[j] = tmp
            m = n_fft >> 1
            while m >= 1 and j >= m:
                j -= m
                m >>= 1
            j += m

        # butterflies
        length = 2
        while length <= n_fft:
            step = n_fft // length
            h = length >> 1
            for start in range(0, n_fft, length):
                for k in range(h):
                    wr = tw_re[k * step]
                    wi = tw_im[k * step]
                    a = start + k
                    b = a + h
                    v_re = re[b] * wr - im[b] * wi
                    v_im = re[b] * wi + im[b] * wr
                    re[b] = re[a] - v_re
                    im[b] = im[a] - v_im
                    re[a] = re[a] + v_re
                    im[a] = im[a] + v_im
            length <<= 1

        for k in range(half):
            out[r, k] = np.sqrt(re[k] * re[k] + im[k] * im[k])
    return out


def fft_magnitudes(frames: np.ndarray) -> Tuple[np.ndarray, int]:
    """
    magnitude spectra of one frame (1-d) or a stack of frames (2-d).

    returns (mags, n_fft) where mags has n_fft/2 bins per frame and n_fft
    is the frame length rounded up to a power of two.
    """
    x = np.asarray(frames, dtype=np.float64)
    single = x.ndim == 1
    x = np.atleast_2d(x)
    n_fft = next_pow2(x.shape[-1])
    mags = _radix2_magnitudes(np.ascontiguousarray(x), n_fft)
    return (mags[0] if single else mags), n_fft


def downmix(y: np.ndarray, channels_last: bool = False) -> np.ndarray:
    """averages channels to mono. mono input passes straight through."""
    if y.ndim == 1:
        return y
    if channels_last:
        y = y.T
    if y.shape[0] == 1:
        return y[0]
    return y.mean(axis=0)


def resample_linear(y: np.ndarray, orig_sr: float, target_sr: float) -> np.ndarray:
    """
    linear-interpolation resampler. output length is floor(n / ratio)
    (at least 1); the last input sample is held past the end.
    """
    if orig_sr == target_sr or y.size == 0:
        return y
    ratio = orig_sr / float(target_sr)
    new_length = max(1, int(np.floor(y.shape[-1] / ratio)))
    src = np.arange(new_length) * ratio
    i0 = np.floor(src).astype(np.int64)
    i0 = np.minimum(i0, y.shape[-1] - 1)
    i1 = np.minimum(i0 + 1, y.shape[-1] - 1)
    frac = src - i0
    return y[i0] * (1.0 - frac) + y[i1] * frac


def lowpass(y: np.ndarray, sr: float, cutoff: float, order: int = 4) -> np.ndarray:
    """zero-phase butterworth low-pass; short inputs are returned unfiltered."""
    sos = scipy.signal.butter(order, cutoff, btype="lowpass", fs=sr, output="sos")
    # sosfiltfilt needs more samples than its edge padding
    if y.shape[-1] <= 3 * (2 * sos.shape[0] + 1):
        return y
    return scipy.signal.sosfiltfilt(sos, y)


@numba.njit(cache=True, nogil=True)
def _yin_difference(x, max_period):
    n = x.shape[0]
    diff = np.zeros(max_period + 1)
    for tau in range(1, max_period + 1):
        s = 0.0
        for j in range(n - tau):
            d = x[j] - x[j + tau]
            s += d * d
        diff[tau] = s
    return diff


@numba.njit(cache=True, nogil=True)
def _yin_cmnd(diff):
    """cumulative mean normalized difference function."""
    n = diff.shape[0]
    cmnd = np.ones(n)
    cumsum = 0.0
    for tau in range(1, n):
        cumsum += diff[tau]
        if cumsum > 0.0:
            cmnd[tau] = diff[tau] * tau / cumsum
    return cmnd


def yin_period(
    x: np.ndarray, min_period: int, max_period: int, threshold: float
) -> Tuple[float, float]:
    """
    YIN period estimate in samples with its confidence (1 - cmnd).

    takes the first dip under `threshold`, walked down to its local
    minimum; else the global minimum of the search range. returns
    (0.0, 0.0) when the frame is too short for the range.
    """
    max_period = min(max_period, x.shape[0] // 2)
    if max_period <= min_period + 1:
        return 0.0, 0.0
    cmnd = _yin_cmnd(_yin_difference(np.ascontiguousarray(x, dtype=np.float64), max_period))
    region = cmnd[min_period : max_period + 1]
    below = np.flatnonzero(region < threshold)
    if below.size:
        tau = min_period + int(below[0])
        while tau + 1 <= max_period and cmnd[tau + 1] < cmnd[tau]:
            tau += 1
    else:
        tau = min_period + int(np.argmin(region))

    # parabolic refinement around the dip
    period = float(tau)
    if min_period < tau < max_period:
        y1, y2, y3 = cmnd[tau - 1], cmnd[tau], cmnd[tau + 1]
        a = (y1 - 2.0 * y2 + y3) / 2.0
        b = (y3 - y1) / 2.0
        if a > 0:
            shift = -b / (2.0 * a)
            if -0.5 <= shift <= 0.5:
                period += shift
    return period, float(max(0.0, 1.0 - cmnd[tau]))


@numba.njit(cache=True, nogil=True)
def _normalized_autocorr_peak(x, min_period, max_period, max_len):
    best_corr = 0.0
    best_period = 0
    n = x.shape[0]
    for period in range(min_period, max_period + 1):
        length = min(n - period, max_len)
        if length <= 0:
            break
        corr = 0.0
        e1 = 0.0
        e2 = 0.0
        for i in range(length):
            corr += x[i] * x[i + period]
            e1 += x[i] * x[i]
            e2 += x[i + period] * x[i + period]
        norm_corr = corr / np.sqrt(e1 * e2 + 1e-10)
        if norm_corr > best_corr:
            best_corr = norm_corr
            best_period = period
    return best_period, best_corr


def autocorr_period(
    x: np.ndarray, min_period: int, max_period: int, max_len: int
) -> Tuple[int, float]:
    """strongest normalized autocorrelation period over a window of max_len."""
    period, corr = _normalized_autocorr_peak(
        np.ascontiguousarray(x, dtype=np.float64), int(min_period), int(max_period), int(max_len)
    )
    return int(period), float(corr)
