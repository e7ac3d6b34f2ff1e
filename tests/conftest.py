import numpy as np
import pytest

from chordengine import config
from chordengine._internal.utils import energy_percentiles
from chordengine.result import FrameFeatures

SR = config.TARGET_SR


def midi_hz(midi: float) -> float:
    return 440.0 * 2.0 ** ((midi - 69) / 12.0)


def sines(freqs, seconds, sr=SR, amps=0.2):
    """sum of sines, one per frequency."""
    t = np.arange(int(round(seconds * sr))) / float(sr)
    amps = np.broadcast_to(np.asarray(amps, dtype=float), (len(freqs),))
    y = np.zeros_like(t)
    for f, a in zip(freqs, amps):
        y += a * np.sin(2 * np.pi * f * t)
    return y


def chord_features(segments, key_chroma=None, energy=1.0, hop=2205, sr=SR):
    """
    synthetic FrameFeatures: `segments` is a list of (pitch-class weights,
    bass pc, n_frames). weights are L1-normalized per frame.
    """
    chroma, bass = [], []
    for weights, bass_pc, n in segments:
        vec = np.zeros(12)
        for pc, w in weights.items():
            vec[pc] = w
        vec = vec / vec.sum()
        chroma.extend([vec] * n)
        bass.extend([bass_pc] * n)
    n_frames = len(chroma)
    energy = np.broadcast_to(np.asarray(energy, dtype=float), (n_frames,)).copy()
    return FrameFeatures(
        chroma=np.array(chroma),
        bass_pc=np.array(bass, dtype=np.int64),
        energy=energy,
        hop=hop,
        sr=sr,
        frame_size=config.FRAME_SIZE,
        percentiles=energy_percentiles(energy, config.ENERGY_PERCENTILES),
    )


TRIADS = {
    "C": {0: 1, 4: 1, 7: 1},
    "G": {7: 1, 11: 1, 2: 1},
    "Am": {9: 1, 0: 1, 4: 1},
    "F": {5: 1, 9: 1, 0: 1},
    "Em": {4: 1, 7: 1, 11: 1},
}


@pytest.fixture
def rng():
    return np.random.default_rng(20240917)


@pytest.fixture
def synth():
    return sines


@pytest.fixture
def hz():
    return midi_hz


@pytest.fixture
def make_features():
    return chord_features


@pytest.fixture
def triads():
    return dict(TRIADS)
