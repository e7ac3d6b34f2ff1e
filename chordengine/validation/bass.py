import logging
import numpy as np
from collections import Counter
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from .. import config
from .._internal.dsp import autocorr_period, fft_magnitudes, lowpass, make_window, yin_period
from .._internal.utils import Deadline, frame, hz_to_pc
from ..config import AnalysisOptions
from ..profiles.vocabulary import (
    base_triad, chord_tones, is_minor_label, note_name, parse_root, root_name, to_pc
)
from ..result import Key, SegmentVerdict, TimelineEvent
from .segments import map_segments, segment_spans, slice_seconds

logger = logging.getLogger(__name__)

NO_BASS = "NO_BASS"


@dataclass(frozen=True)
class BassDetection:
    pc: int
    frequency: float
    confidence: float


@dataclass(frozen=True)
class SegmentBass:
    """the voted bass note of one segment; pc is -1 when nothing was stable."""

    pc: int
    confidence: float
    stability: float
    frequency: float = 0.0


def fft_lowest_peak(
    x: np.ndarray, sr: int, fmin: float = config.BASS_SEARCH_FMIN, fmax: float = config.BASS_SEARCH_FMAX
) -> Optional[BassDetection]:
    """
    the lowest spectral peak in the bass band that stands out from the band
    average; the band maximum when there is none.
    """
    n = x.shape[0]
    windowed = x * make_window("hann", n, fftbins=False)
    rms = np.sqrt(np.sum(windowed**2) / n)
    if rms < config.BASS_MIN_RMS:
        return None
    mags, n_fft = fft_magnitudes(windowed)
    lo = int(np.floor(fmin * n_fft / sr))
    hi = min(int(np.ceil(fmax * n_fft / sr)), mags.shape[0] - 1)
    if hi <= lo:
        return None
    band = mags[lo : hi + 1]
    avg = band.mean()
    threshold = avg * config.BASS_PEAK_FACTOR

    peak = -1
    for b in range(max(lo, 1), min(hi + 1, mags.shape[0] - 1)):
        if mags[b] > mags[b - 1] and mags[b] > mags[b + 1] and mags[b] > threshold:
            peak = b
            break
    if peak < 0:
        peak = lo + int(np.argmax(band))
    if mags[peak] < avg * config.BASS_PEAK_FLOOR or mags[peak] <= 0:
        return None

    # parabolic interpolation of the peak bin
    pos = float(peak)
    if 0 < peak < mags.shape[0] - 1:
        y1, y2, y3 = mags[peak - 1], mags[peak], mags[peak + 1]
        denom = 2.0 * (2.0 * y2 - y1 - y3)
        if abs(denom) > 1e-4:
            pos += (y3 - y1) / denom
    freq = pos * sr / float(n_fft)
    if freq <= 0:
        return None
    confidence = min(1.0, mags[peak] / (avg + 1e-4) * config.BASS_PEAK_CONFIDENCE_SCALE)
    return BassDetection(int(hz_to_pc(freq)), freq, float(confidence))


def autocorr_bass(
    x: np.ndarray, sr: int, fmin: float = config.BASS_SEARCH_FMIN, fmax: float = config.BASS_SEARCH_FMAX
) -> Optional[BassDetection]:
    period, corr = autocorr_period(
        x, int(np.floor(sr / fmax)), int(np.floor(sr / fmin)), config.BASS_AUTOCORR_MAX_LEN
    )
    if period == 0 or corr < config.BASS_MIN_CORRELATION:
        return None
    freq = sr / float(period)
    return BassDetection(int(hz_to_pc(freq)), freq, float(min(1.0, corr)))


def yin_bass(
    x: np.ndarray, sr: int, fmin: float = config.BASS_SEARCH_FMIN, fmax: float = config.BASS_SEARCH_FMAX
) -> Optional[BassDetection]:
    period, confidence = yin_period(
        x, int(np.floor(sr / fmax)), int(np.ceil(sr / fmin)), config.BASS_YIN_THRESHOLD
    )
    if period <= 0 or confidence <= 0:
        return None
    freq = sr / period
    if not fmin <= freq <= fmax:
        return None
    return BassDetection(int(hz_to_pc(freq)), freq, confidence)


ESTIMATORS = (fft_lowest_peak, autocorr_bass, yin_bass)


class BassValidator:
    """
    second opinion on the bass note under each chord.

    the segment is low-passed and cut into sub-windows; three independent
    pitch estimators (lowest fft peak, normalized autocorrelation and yin)
    run on every window and the pitch classes they report are voted on.
    a winner has to appear in enough of the windows to count as the bass.
    """

    name = "bass"

    def __init__(
        self,
        options: Optional[AnalysisOptions] = None,
        frame_size: int = config.VALIDATOR_FRAME_SIZE,
        hop: int = config.VALIDATOR_HOP,
        deadline: Optional[Deadline] = None,
    ):
        self.options = options or AnalysisOptions()
        self.frame_size = frame_size
        self.hop = hop
        self.deadline = deadline

    def _windows(self, segment: np.ndarray) -> np.ndarray:
        if segment.shape[-1] >= self.frame_size:
            windows = frame(segment, frame_length=self.frame_size, hop_length=self.hop)
            if windows.shape[0] >= config.BASS_STABILITY_FRAMES:
                return windows
        return segment[None, : self.frame_size]

    def detect(self, segment: np.ndarray, sr: int) -> SegmentBass:
        """majority vote of all estimators over the segment's sub-windows."""
        threshold = self.options.bass_confidence_threshold
        filtered = lowpass(segment, sr, config.BASS_LOWPASS_HZ)
        windows = self._windows(filtered)
        per_window: List[List[BassDetection]] = []
        for w in windows:
            per_window.append([d for d in (est(w, sr) for est in ESTIMATORS) if d is not None])

        strong = [
            [d for d in found if d.confidence > threshold * config.BASS_STRONG_RATIO]
            for found in per_window
        ]
        if sum(1 for found in strong if found) < config.BASS_STABILITY_FRAMES:
            # too few confident windows to vote: fall back to the best single reading
            everything = [d for found in per_window for d in found]
            if not everything:
                return SegmentBass(-1, 0.0, 0.0)
            best = max(everything, key=lambda d: d.confidence)
            if best.confidence <= threshold * config.BASS_FALLBACK_RATIO:
                return SegmentBass(-1, best.confidence, 0.0)
            strong = [
                [d for d in found if d.pc == best.pc and d.confidence > threshold * config.BASS_FALLBACK_RATIO]
                for found in per_window
            ]

        votes = Counter(d.pc for found in strong for d in found)
        if not votes:
            return SegmentBass(-1, 0.0, 0.0)
        # first-counted note wins ties
        pc = votes.most_common(1)[0][0]
        agreeing = [d for found in strong for d in found if d.pc == pc]
        stability = sum(1 for found in strong if any(d.pc == pc for d in found)) / float(len(windows))
        avg_conf = float(np.mean([d.confidence for d in agreeing]))
        confidence = min(1.0, avg_conf * (0.5 + 0.5 * stability))
        if stability < config.BASS_MIN_STABILITY:
            return SegmentBass(-1, confidence, stability)
        return SegmentBass(
            pc, confidence, stability, float(np.mean([d.frequency for d in agreeing]))
        )

    def _prepare(self, item) -> Tuple[str, Optional[SegmentBass]]:
        ev, (start, end), y, sr = item
        if end - start < config.BASS_MIN_SEGMENT_SECONDS:
            return "too_short", None
        if parse_root(ev.label) < 0:
            return "cannot_parse", None
        segment = slice_seconds(y, sr, start, end)
        if segment.shape[-1] < self.frame_size // 2:
            return "too_short", None
        return "", self.detect(segment, sr)

    def suggest(self, label: str, bass: int, confidence: float, key: Key) -> Tuple[str, str]:
        """(suggested label, reason) for a confident bass note under `label`."""
        head, _, slash = label.partition("/")
        root = parse_root(head)
        bass_name = note_name(bass, key)
        if bass == root:
            return head, "bass_matches_root"

        interval = to_pc(bass - root)
        plain = head == base_triad(head)
        if plain and interval == 10:
            return head + "7", "seventh_inferred"
        if plain and interval == 11 and not is_minor_label(head):
            return head + "maj7", "seventh_inferred"
        if interval in chord_tones(head):
            return f"{head}/{bass_name}", "inversion"
        if self.options.allow_bass_override and confidence > config.BASS_OVERRIDE_CONFIDENCE:
            return bass_name + ("m" if is_minor_label(head) else ""), "bass_override"
        return label, "no_change"

    def validate(
        self,
        y: np.ndarray,
        sr: int,
        events: Sequence[TimelineEvent],
        key: Key,
        duration: float,
    ) -> Tuple[List[TimelineEvent], List[SegmentVerdict]]:
        spans = segment_spans(events, duration)
        detected = map_segments(
            self._prepare,
            [(ev, span, y, sr) for ev, span in zip(events, spans)],
            self.options.workers,
            self.deadline,
        )

        threshold = self.options.bass_confidence_threshold
        out: List[TimelineEvent] = []
        verdicts: List[SegmentVerdict] = []
        overrides = 0
        for ev, (reason, bass) in zip(events, detected):
            if bass is None or bass.pc < 0 or bass.confidence < threshold:
                confidence = 0.0 if bass is None else bass.confidence
                out.append(ev)
                verdicts.append(
                    SegmentVerdict(
                        self.name, ev.time, ev.label, NO_BASS, ev.label, confidence, False,
                        reason or "unclear_bass",
                    )
                )
                continue

            suggested, reason = self.suggest(ev.label, bass.pc, bass.confidence, key)
            overridden = suggested != ev.label
            if overridden:
                overrides += 1
                logger.debug(
                    "bass %s under %s at %.2fs (confidence %.2f): %s -> %s",
                    note_name(bass.pc, key), root_name(ev.label), ev.time, bass.confidence,
                    ev.label, suggested,
                )
                out.append(replace(ev, label=suggested, refined_by=self.name, confidence=bass.confidence))
            else:
                out.append(ev)
            verdicts.append(
                SegmentVerdict(
                    self.name, ev.time, ev.label, note_name(bass.pc, key), suggested,
                    bass.confidence, overridden, reason,
                )
            )

        logger.info("bass validator: %d of %d segments overridden", overrides, len(events))
        return out, verdicts
