import logging
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Tuple

from .. import config
from .._internal.dsp import compute_autocorrelation, fft_magnitudes, make_window, next_pow2
from .._internal.utils import (
    Deadline, count_frames, energy_percentiles, frame, hz_to_pc, normalize, percentile
)
from ..result import FrameFeatures

logger = logging.getLogger(__name__)


class FeatureExtractor:
    """
    per-frame chroma, bass pitch class and energy.

    every frame is a hann-windowed slice of `frame_size` samples taken every
    `hop_seconds`. the window, the bin-to-pitch-class map and the bass
    synthesis basis are built once per size and kept on the instance.
    """

    def __init__(
        self,
        sr: int = config.TARGET_SR,
        frame_size: int = config.FRAME_SIZE,
        hop_seconds: float = config.HOP_SECONDS,
        workers: int = 1,
        window: str = "hann",
        block_frames: int = config.FEATURE_BLOCK_FRAMES,
        deadline: Optional[Deadline] = None,
    ):
        self.sr = sr
        self.frame_size = frame_size
        self.hop = max(1, int(round(hop_seconds * sr)))
        self.workers = max(1, int(workers))
        self.window = window
        self.block_frames = max(1, int(block_frames))
        self.deadline = deadline or Deadline()
        self._windows: Dict[int, np.ndarray] = {}
        self._pc_maps: Dict[int, np.ndarray] = {}
        self._bass_bases: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}

    def _get_window(self, n: int) -> np.ndarray:
        win = self._windows.get(n)
        if win is None:
            # symmetric: 0.5 * (1 - cos(2*pi*i / (n-1)))
            win = make_window(self.window, n, fftbins=False)
            self._windows[n] = win
        return win

    def _get_pc_map(self, n_fft: int) -> np.ndarray:
        """(n_fft/2, 12) matrix sending each fft bin in the chroma band to its pitch class."""
        pc_map = self._pc_maps.get(n_fft)
        if pc_map is None:
            freqs = np.arange(n_fft // 2) * self.sr / float(n_fft)
            pc_map = np.zeros((n_fft // 2, 12))
            band = np.flatnonzero(
                (np.arange(n_fft // 2) >= 1)
                & (freqs >= config.CHROMA_FMIN)
                & (freqs <= config.CHROMA_FMAX)
            )
            pc_map[band, hz_to_pc(freqs[band])] = 1.0
            self._pc_maps[n_fft] = pc_map
        return pc_map

    def _get_bass_basis(self, n_fft: int) -> Tuple[np.ndarray, np.ndarray]:
        """bin indices at or below the bass ceiling and their cosine basis."""
        cached = self._bass_bases.get(n_fft)
        if cached is None:
            bins = np.arange(1, n_fft // 2)
            bins = bins[bins * self.sr / float(n_fft) <= config.BASS_FMAX]
            n = np.arange(n_fft)
            basis = np.cos(2.0 * np.pi * np.outer(bins, n) / n_fft)
            cached = (bins, basis)
            self._bass_bases[n_fft] = cached
        return cached

    def _bass_lags(self, mags: np.ndarray, n_fft: int) -> np.ndarray:
        """
        one bass pitch class (or -1) per frame.

        the spectrum below BASS_FMAX is resynthesized as a sum of cosines
        and autocorrelated; the strongest lag inside the 40-250 Hz period
        range must sit strictly inside it and clear the correlation floor.
        """
        bins, basis = self._get_bass_basis(n_fft)
        out = np.full(mags.shape[0], -1, dtype=np.int64)
        if bins.size == 0:
            return out
        y_lp = mags[:, bins] @ basis
        y_lp = y_lp - y_lp.mean(axis=1, keepdims=True)
        denom = np.sum(y_lp**2, axis=1)
        denom[denom == 0] = 1e-9

        min_lag = int(np.floor(self.sr / config.BASS_FMAX))
        max_lag = int(np.floor(self.sr / config.BASS_FMIN))
        ac = compute_autocorrelation(y_lp, max_size=max_lag + 1, axis=-1)
        r = ac[:, min_lag : max_lag + 1] / denom[:, None]
        best = np.argmax(r, axis=1)
        best_r = r[np.arange(r.shape[0]), best]
        lags = min_lag + best

        ok = (lags > min_lag) & (lags < max_lag) & (best_r >= config.BASS_MIN_FRAME_CORRELATION)
        if np.any(ok):
            f0 = self.sr / lags[ok].astype(float)
            in_band = (f0 >= config.BASS_FMIN) & (f0 <= config.BASS_FMAX)
            idx = np.flatnonzero(ok)[in_band]
            out[idx] = hz_to_pc(f0[in_band])
        return out

    def _process_block(self, frames: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        self.deadline.check()
        windowed = frames * self._get_window(frames.shape[1])
        energy = np.sum(windowed**2, axis=1)
        mags, n_fft = fft_magnitudes(windowed)
        chroma = mags @ self._get_pc_map(n_fft)
        chroma = normalize(chroma, norm=1, axis=1)
        bass = self._bass_lags(mags, n_fft)
        return chroma, bass, energy

    def _clean_bass(self, bass: np.ndarray, energy: np.ndarray) -> np.ndarray:
        """drops bass in quiet frames and single-frame outliers."""
        thr = percentile(energy, config.BASS_ENERGY_PERCENTILE)
        cleaned = bass.copy()
        cleaned[energy < thr] = -1
        if bass.shape[0] >= 3:
            v = bass[1:-1]
            isolated = (v >= 0) & (bass[:-2] != v) & (bass[2:] != v)
            cleaned[1:-1][isolated] = -1
        return cleaned

    def _intro_skip(self, energy: np.ndarray, p70: float) -> int:
        """first frame of a stretch of INTRO_STABLE_SECONDS at or above p70, capped."""
        required = max(1, int(np.ceil(config.INTRO_STABLE_SECONDS * self.sr / self.hop)))
        cap = int(np.floor(config.INTRO_MAX_SECONDS * self.sr / self.hop))
        run = 0
        for i, e in enumerate(energy):
            run = run + 1 if e >= p70 else 0
            if run >= required:
                return min(i - required + 1, cap)
        return 0

    def extract(self, y: np.ndarray) -> FrameFeatures:
        n_frames = count_frames(y.shape[-1], self.frame_size, self.hop)
        if n_frames == 0:
            return FrameFeatures(
                chroma=np.zeros((0, 12)),
                bass_pc=np.zeros(0, dtype=np.int64),
                energy=np.zeros(0),
                hop=self.hop,
                sr=self.sr,
                frame_size=self.frame_size,
                percentiles={p: 0.0 for p in config.ENERGY_PERCENTILES},
            )

        frames = frame(y, frame_length=self.frame_size, hop_length=self.hop)
        # build the shared tables before any worker thread reads them
        n_fft = next_pow2(self.frame_size)
        self._get_window(self.frame_size)
        self._get_pc_map(n_fft)
        self._get_bass_basis(n_fft)
        blocks = [
            frames[s : s + self.block_frames] for s in range(0, n_frames, self.block_frames)
        ]
        if self.workers > 1 and len(blocks) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                parts = list(pool.map(self._process_block, blocks))
        else:
            parts = [self._process_block(b) for b in blocks]

        chroma = np.concatenate([p[0] for p in parts], axis=0)
        bass = np.concatenate([p[1] for p in parts], axis=0)
        energy = np.concatenate([p[2] for p in parts], axis=0)

        pcts = energy_percentiles(energy, config.ENERGY_PERCENTILES)
        bass = self._clean_bass(bass, energy)
        intro = self._intro_skip(energy, pcts[config.INTRO_STABLE_PERCENTILE])
        logger.debug(
            "extracted %d frames (hop %d), %d with bass, intro skip %d",
            n_frames, self.hop, int(np.sum(bass >= 0)), intro,
        )
        return FrameFeatures(
            chroma=chroma,
            bass_pc=bass,
            energy=energy,
            hop=self.hop,
            sr=self.sr,
            frame_size=self.frame_size,
            percentiles=pcts,
            intro_skip_frames=intro,
        )


def extract_features(
    y: np.ndarray, sr: int = config.TARGET_SR, workers: Optional[int] = None
) -> FrameFeatures:
    """one-shot helper around FeatureExtractor."""
    return FeatureExtractor(sr=sr, workers=workers or config.WORKERS).extract(y)
