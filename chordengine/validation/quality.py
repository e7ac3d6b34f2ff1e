import logging
import re
import numpy as np
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional, Sequence, Tuple
from typing_extensions import Literal

from .. import config
from .._internal.dsp import fft_magnitudes, make_window
from .._internal.utils import Deadline, frame, hz_to_midi
from ..config import AnalysisOptions
from ..profiles.vocabulary import chord_tones, is_minor_label, parse_root, root_name, to_pc
from ..result import Key, SegmentVerdict, TimelineEvent
from .segments import map_segments, segment_spans, slice_seconds

logger = logging.getLogger(__name__)

_POWER_CHORD_RE = re.compile(r"^[A-G](#|b)?5$")

ChordType = Literal["major", "minor", "skip"]


@dataclass(frozen=True)
class ThirdEvidence:
    """energy at a root's minor and major third inside one segment."""

    minor_energy: float
    major_energy: float
    weighted_minor: float
    weighted_major: float

    @property
    def total(self) -> float:
        return self.minor_energy + self.major_energy


def chord_type(label: str) -> ChordType:
    """'major', 'minor', or 'skip' for chords whose third is not the point."""
    head = label.split("/")[0]
    lower = head.lower()
    if "sus" in lower or "dim" in lower or "aug" in lower or "+" in head:
        return "skip"
    if _POWER_CHORD_RE.match(head):
        return "skip"
    return "minor" if is_minor_label(head) else "major"


def relabel(label: str, quality: str) -> str:
    """
    the same chord with its third swapped; extensions stay. a slash bass
    stays only while it is still a tone of the relabelled chord, so C/E
    turns minor as Cm and C/G as Cm/G.
    """
    head, _, bass = label.partition("/")
    root = root_name(head)
    suffix = head[len(root):]
    if is_minor_label(head):
        suffix = suffix[1:]
    out = root + ("m" if quality == "minor" else "") + suffix
    if not bass:
        return out
    bass_pc = parse_root(bass)
    if bass_pc < 0 or to_pc(bass_pc - parse_root(head)) not in chord_tones(out):
        return out
    return f"{out}/{bass}"


class QualityValidator:
    """
    second opinion on major versus minor, taken from the audio itself.

    each chord segment is re-analysed with its own spectra and the energy at
    the root's major third is weighed against the minor third. upper
    octaves count more than the fundamental octave, where bass notes smear
    the thirds. a short memory of recent decisions nudges borderline
    confidences.
    """

    name = "quality"

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
        self._bin_maps: Dict[Tuple[int, int], Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}

    def _get_bin_map(self, n_fft: int, sr: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """bin indices of the analysis band with their pitch class and octave level."""
        cached = self._bin_maps.get((n_fft, sr))
        if cached is None:
            lo = max(1, int(np.floor(config.QUALITY_FMIN * n_fft / sr)))
            hi = min(n_fft // 2 - 1, int(np.floor(config.QUALITY_FMAX * n_fft / sr)))
            bins = np.arange(lo, hi + 1)
            midi = hz_to_midi(bins * sr / float(n_fft))
            pcs = np.mod(np.floor(midi + 0.5).astype(int), 12)
            n_levels = len(config.HARMONIC_LEVEL_WEIGHTS)
            levels = np.clip(np.floor(midi / 12.0).astype(int) - 3, 0, n_levels - 1)
            cached = (bins, pcs, levels)
            self._bin_maps[(n_fft, sr)] = cached
        return cached

    def analyse_segment(self, segment: np.ndarray, sr: int, root: int) -> ThirdEvidence:
        frames = frame(segment, frame_length=self.frame_size, hop_length=self.hop)
        windowed = frames * make_window("hann", self.frame_size, fftbins=False)
        mags, n_fft = fft_magnitudes(windowed)
        bins, pcs, levels = self._get_bin_map(n_fft, sr)
        power = (mags[:, bins] ** 2).sum(axis=0)

        chroma = np.zeros(12)
        np.add.at(chroma, pcs, power)
        weights = np.asarray(config.HARMONIC_LEVEL_WEIGHTS)
        by_level = np.zeros((weights.shape[0], 12))
        np.add.at(by_level, (levels, pcs), power)

        m3, M3 = (root + 3) % 12, (root + 4) % 12
        return ThirdEvidence(
            minor_energy=float(chroma[m3]),
            major_energy=float(chroma[M3]),
            weighted_minor=float(by_level[:, m3] @ weights / weights.sum()),
            weighted_major=float(by_level[:, M3] @ weights / weights.sum()),
        )

    def _prepare(self, item) -> Tuple[str, Optional[ThirdEvidence]]:
        """the reason a segment is skipped, or its third evidence."""
        ev, (start, end), y, sr = item
        root = parse_root(ev.label)
        if root < 0:
            return "invalid_root", None
        if end <= start:
            return "invalid_duration", None
        length = end - start
        if length > config.QUALITY_CENTER_AFTER:
            margin = length * config.QUALITY_CENTER_MARGIN
            start, end = start + margin, end - margin
        segment = slice_seconds(y, sr, start, end)
        if segment.shape[-1] < self.frame_size:
            return "too_short", None
        if chord_type(ev.label) == "skip":
            return "non_refineable_type", None
        return "clear_decision", self.analyse_segment(segment, sr, root)

    def decide(self, evidence: ThirdEvidence) -> Tuple[str, float, str]:
        """(quality, confidence, reason) from one segment's third energies."""
        if evidence.total < config.QUALITY_MIN_THIRD_ENERGY:
            return "unknown", 0.0, "insufficient_third_energy"
        weighted_total = evidence.weighted_major + evidence.weighted_minor
        if weighted_total <= 0:
            return "unknown", 0.0, "insufficient_third_energy"
        ratio_major = evidence.weighted_major / weighted_total
        ratio_minor = evidence.weighted_minor / weighted_total
        diff = ratio_major - ratio_minor
        if abs(diff) < self.options.decision_threshold:
            return "unknown", abs(diff), "ambiguous_third"

        clarity = min(1.0, abs(diff) / config.QUALITY_CLEAR_DIFF)
        win = ratio_major if diff > 0 else ratio_minor
        energy_factor = min(1.0, evidence.total / config.QUALITY_ENERGY_SCALE)
        confidence = clarity * 0.5 + win * 0.3 + energy_factor * 0.2
        return ("major" if diff > 0 else "minor"), float(confidence), "clear_decision"

    @staticmethod
    def _history_vote(history: Deque[Tuple[int, str]]) -> Optional[str]:
        if len(history) < 2:
            return None
        majors = sum(1 for _, q in history if q == "major")
        minors = len(history) - majors
        if majors > minors + 1:
            return "major"
        if minors > majors + 1:
            return "minor"
        return None

    def validate(
        self,
        y: np.ndarray,
        sr: int,
        events: Sequence[TimelineEvent],
        key: Key,
        duration: float,
    ) -> Tuple[List[TimelineEvent], List[SegmentVerdict]]:
        """
        checks the third of every chord segment and flips the quality where
        the audio clearly disagrees.

        segments are analysed independently (in parallel when the options
        allow more than one worker); decisions are then taken in time order
        because they share the rolling history.
        """
        spans = segment_spans(events, duration)
        prepared = map_segments(
            self._prepare,
            [(ev, span, y, sr) for ev, span in zip(events, spans)],
            self.options.workers,
            self.deadline,
        )

        history: Deque[Tuple[int, str]] = deque(maxlen=config.QUALITY_HISTORY)
        out: List[TimelineEvent] = []
        verdicts: List[SegmentVerdict] = []
        overrides = 0
        for ev, (reason, evidence) in zip(events, prepared):
            if evidence is None:
                out.append(ev)
                verdicts.append(
                    SegmentVerdict(self.name, ev.time, ev.label, "unknown", ev.label, 0.0, False, reason)
                )
                continue

            root = parse_root(ev.label)
            quality, confidence, reason = self.decide(evidence)
            if quality != "unknown":
                vote = self._history_vote(history)
                if vote == quality and confidence < config.QUALITY_HISTORY_LOW:
                    confidence = min(config.QUALITY_HISTORY_CAP, confidence + config.QUALITY_HISTORY_BOOST)
                previous = next((q for r, q in reversed(history) if r == root), None)
                if previous is not None and previous != quality:
                    # a recurring root changing quality is evidence, not noise
                    reason = "quality_change"
                    if confidence < config.QUALITY_HISTORY_CAP:
                        confidence = min(
                            config.QUALITY_HISTORY_CAP,
                            confidence + config.QUALITY_HISTORY_CHANGE_BOOST,
                        )
                history.append((root, quality))

            current = chord_type(ev.label)
            suggested = relabel(ev.label, quality) if quality != "unknown" else ev.label
            overridden = (
                quality != "unknown"
                and quality != current
                and confidence >= self.options.min_confidence_to_override
            )
            if overridden:
                overrides += 1
                logger.debug(
                    "quality override %s -> %s at %.2fs (confidence %.2f)",
                    ev.label, suggested, ev.time, confidence,
                )
                out.append(replace(ev, label=suggested, refined_by=self.name, confidence=confidence))
            else:
                out.append(ev)
            verdicts.append(
                SegmentVerdict(
                    self.name, ev.time, ev.label, quality, suggested, confidence, overridden, reason
                )
            )

        logger.info("quality validator: %d of %d segments overridden", overrides, len(events))
        return out, verdicts
