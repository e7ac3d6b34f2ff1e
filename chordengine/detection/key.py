import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple

from .. import config
from ..profiles.vocabulary import to_pc
from ..result import FrameFeatures, Key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BassTonic:
    """what the bass histogram says about the tonic."""

    root: int
    confidence: float
    minor_hint: Optional[bool] = None
    hint_confidence: float = 0.0


def _ratio_score(
    minor_side: float, major_side: float, rule: Tuple[float, float, float, float]
) -> Tuple[float, float]:
    """(minor, major) points from comparing two degree strengths."""
    minor_ratio, major_ratio, weight, cap = rule
    eps = config.KEY_RATIO_EPS
    ratio = (minor_side + eps) / (major_side + eps)
    if ratio >= minor_ratio:
        return weight * min(cap, ratio - 1.0), 0.0
    if ratio <= major_ratio:
        return 0.0, weight * min(cap, 1.0 / ratio - 1.0)
    return 0.0, 0.0


class KeyEstimator:
    """
    tonic and mode from the frame features.

    the bass histogram picks the tonic and the chroma around it picks the
    mode. when the histogram is too flat to trust, a krumhansl-schmuckler
    profile correlation over the whole song decides both.
    """

    def __init__(self, min_bass_confidence: float = config.BASS_TONIC_MIN_CONFIDENCE):
        self.min_bass_confidence = min_bass_confidence

    def estimate(self, features: FrameFeatures) -> Key:
        if features.n_frames == 0:
            return Key(0, False, config.DEFAULT_KEY_CONFIDENCE, "default")

        tonic = self.tonic_from_bass(features)
        if tonic.confidence > self.min_bass_confidence:
            key = self.mode_from_chroma(features, tonic)
        else:
            logger.debug(
                "bass tonic confidence %.2f too low, using key profiles", tonic.confidence
            )
            key = self.from_profiles(features)
        logger.info(
            "key %s (root=%d, minor=%s, confidence=%.2f, method=%s)",
            key.label(), key.root, key.minor, key.confidence, key.method,
        )
        return key

    def tonic_from_bass(self, features: FrameFeatures) -> BassTonic:
        """energy-weighted histogram of bass pitch classes over loud frames."""
        thr = features.percentile(config.KEY_ENERGY_PERCENTILE)
        start = features.intro_skip_frames
        bass = features.bass_pc[start:]
        energy = features.energy[start:]
        hist = np.zeros(12)
        if thr > 0:
            mask = (bass >= 0) & (energy >= thr)
            np.add.at(hist, bass[mask], energy[mask] / thr)

        total = hist.sum()
        if total <= 0:
            return BassTonic(root=0, confidence=0.0)
        # first maximum wins ties
        root = int(np.argmax(hist))
        frac = hist / total

        m3, M3 = frac[to_pc(root + 3)], frac[to_pc(root + 4)]
        m6, M6 = frac[to_pc(root + 8)], frac[to_pc(root + 9)]
        m7, M7 = frac[to_pc(root + 10)], frac[to_pc(root + 11)]
        minor_score = (
            (3.0 if m6 > config.BASS_HINT_SIXTH_MIN else 0.0)
            + (2.0 if m3 > config.BASS_HINT_THIRD_MIN else 0.0)
            + (1.0 if m7 > config.BASS_HINT_SEVENTH_MIN else 0.0)
        )
        major_score = (
            (3.0 if M6 > config.BASS_HINT_SIXTH_MIN else 0.0)
            + (2.0 if M3 > config.BASS_HINT_THIRD_MIN else 0.0)
            + (1.0 if M7 > config.BASS_HINT_SEVENTH_MIN else 0.0)
        )
        hint = None
        if minor_score > config.BASS_HINT_MIN_SCORE or major_score > config.BASS_HINT_MIN_SCORE:
            hint = minor_score > major_score
        return BassTonic(
            root=root,
            confidence=float(hist[root] / total),
            minor_hint=hint,
            hint_confidence=min(1.0, abs(minor_score - major_score) / config.BASS_HINT_SCALE),
        )

    def mode_from_chroma(self, features: FrameFeatures, tonic: BassTonic) -> Key:
        """
        major or minor around a known tonic.

        the loud-frame chroma average is compared at the third, sixth and
        seventh; the opening and closing KEY_EDGE_FRAMES loud frames count
        KEY_EDGE_WEIGHT times and vote on the third alone.
        """
        thr = features.percentile(config.KEY_ENERGY_PERCENTILE)
        start = features.intro_skip_frames
        n = features.n_frames
        idx = np.arange(start, n)
        if thr > 0:
            idx = idx[features.energy[idx] >= thr]
        w = features.energy[idx] / thr if thr > 0 else np.ones(idx.shape[0])
        chroma = features.chroma[idx]

        agg = _weighted_mean(chroma, w)
        edge = config.KEY_EDGE_WEIGHT
        opening_sel = idx < start + config.KEY_EDGE_FRAMES
        closing_sel = idx >= n - config.KEY_EDGE_FRAMES
        opening = _weighted_mean(chroma[opening_sel], w[opening_sel] * edge)
        closing = _weighted_mean(chroma[closing_sel], w[closing_sel] * edge)

        root = tonic.root
        m3, M3 = agg[to_pc(root + 3)], agg[to_pc(root + 4)]
        m6, M6 = agg[to_pc(root + 8)], agg[to_pc(root + 9)]
        m7, M7 = agg[to_pc(root + 10)], agg[to_pc(root + 11)]

        minor_score = major_score = 0.0
        for minor_side, major_side, rule in (
            (m3, M3, config.KEY_THIRD_RULE),
            (m6, M6, config.KEY_SIXTH_RULE),
            (m7, M7, config.KEY_SEVENTH_RULE),
        ):
            mi, ma = _ratio_score(minor_side, major_side, rule)
            minor_score += mi
            major_score += ma

        eps = config.KEY_RATIO_EPS
        for part in (opening, closing):
            if not part.any():
                continue
            ratio = (part[to_pc(root + 3)] + eps) / (part[to_pc(root + 4)] + eps)
            if ratio > config.KEY_EDGE_THIRD_RATIOS[0]:
                minor_score += config.KEY_EDGE_BONUS
            elif ratio < config.KEY_EDGE_THIRD_RATIOS[1]:
                major_score += config.KEY_EDGE_BONUS

        if tonic.minor_hint is not None:
            bonus = tonic.hint_confidence * config.BASS_HINT_WEIGHT
            if tonic.minor_hint:
                minor_score += bonus
            else:
                major_score += bonus

        if abs(minor_score - major_score) < config.MODE_TIE_MARGIN:
            if m6 > config.MODE_TIE_SIXTH_MIN and m6 >= M6:
                minor_score += config.MODE_TIE_SIXTH_BONUS
            if m3 > config.MODE_TIE_THIRD_MIN and m3 >= M3 * config.MODE_TIE_THIRD_RATIO:
                minor_score += config.MODE_TIE_THIRD_BONUS

        separation = abs(minor_score - major_score)
        spread = abs(m3 - M3) + abs(m6 - M6) + abs(m7 - M7)
        confidence = (
            config.KEY_CONF_BASE
            + tonic.confidence * config.KEY_CONF_TONIC
            + separation * config.KEY_CONF_SEPARATION
            + spread * config.KEY_CONF_SPREAD
        )
        logger.debug(
            "mode scores minor=%.2f major=%.2f (hint=%s)", minor_score, major_score, tonic.minor_hint
        )
        return Key(
            root=root,
            minor=bool(minor_score > major_score),
            confidence=float(min(1.0, confidence)),
            method="bass",
        )

    def from_profiles(self, features: FrameFeatures) -> Key:
        """krumhansl-schmuckler correlation of the song's weighted chroma average."""
        n = features.n_frames
        pos = np.arange(n) / float(n)
        w = np.where(
            pos < config.PROFILE_HEAD_FRACTION,
            config.PROFILE_HEAD_WEIGHT,
            np.where(pos > config.PROFILE_TAIL_FRACTION, config.PROFILE_TAIL_WEIGHT, 1.0),
        )
        agg = (features.chroma * (w * features.energy)[:, None]).sum(axis=0)
        total = agg.sum()
        if total <= 0:
            return Key(0, False, config.DEFAULT_KEY_CONFIDENCE, "default")
        agg = agg / total

        major = np.asarray(config.KS_MAJOR)
        minor = np.asarray(config.KS_MINOR)
        best_score, best_root, best_minor = -np.inf, 0, False
        for r in range(12):
            # profile index i is scale degree i above root r
            rotated = np.roll(agg, -r)
            score_maj = float(rotated @ major)
            score_min = float(rotated @ minor)
            if score_maj > best_score:
                best_score, best_root, best_minor = score_maj, r, False
            if score_min > best_score:
                best_score, best_root, best_minor = score_min, r, True
        confidence = float(np.clip(best_score / config.PROFILE_SCORE_SCALE, 0.0, 1.0))
        return Key(best_root, best_minor, confidence, "profile")


def _weighted_mean(chroma: np.ndarray, w: np.ndarray) -> np.ndarray:
    total = w.sum()
    if chroma.shape[0] == 0 or total <= 0:
        return np.zeros(12)
    return (chroma * w[:, None]).sum(axis=0) / total
