import logging
import numpy as np
from collections import Counter
from dataclasses import replace
from typing import List, Optional, Sequence

from .. import config
from ..config import AnalysisOptions, HarmonyMode
from ..features.beats import seconds_per_beat, snap_time
from ..profiles.vocabulary import (
    base_triad, chord_tones, degree_quality, in_key, is_minor_label,
    nearest_diatonic, note_name, parse_root, scale_pcs, to_pc
)
from ..result import FrameFeatures, Key, TimelineEvent
from .descriptors import modal_context

logger = logging.getLogger(__name__)


def _triad_tones(label: str) -> List[int]:
    return [0, 3, 7] if is_minor_label(label) else [0, 4, 7]


class TimelineRefiner:
    """
    cleans up the raw tracker timeline and decorates it.

    passes, in order:
      1. labels reduced to plain triads
      2. early-diatonic correction
      3. quality corrections (minor-key III/V/VII, power chords)
      4. minimum-duration filter
      5. diatonic validation filter
      6. beat-grid snap
      7. duplicate merge
      8. extension decoration (per harmony mode)
      9. inversion decoration
     10. modal-context annotation

    every decision is taken from frame indices, never from the event times
    a previous run produced, so refining a refined timeline changes nothing.
    """

    def __init__(self, options: Optional[AnalysisOptions] = None):
        self.options = options or AnalysisOptions()

    def refine(
        self,
        events: Sequence[TimelineEvent],
        features: FrameFeatures,
        key: Key,
        bpm: float,
        duration: float,
    ) -> List[TimelineEvent]:
        if not events:
            return []
        spb = seconds_per_beat(bpm)
        n_in = len(events)

        out = [
            replace(ev, label=base_triad(ev.label), original_label=ev.original_label or ev.label)
            for ev in events
            if parse_root(ev.label) >= 0
        ]
        out = self.early_diatonic(out, features, key, spb)
        out = self.correct_qualities(out, features, key)
        out = self.filter_short(out, features, key, spb)
        out = self.filter_unsupported(out, features, key)
        out = self.snap_to_beats(out, features, spb, duration)
        out = merge_duplicates(out, key=base_triad)
        out = self.decorate_extensions(out, features, key)
        out = self.add_inversions(out, features, key)
        out = annotate_modal_context(out, key)
        logger.debug("refined %d raw events into %d", n_in, len(out))
        return out

    def _avg_chroma(self, features: FrameFeatures, fi: int) -> np.ndarray:
        half = config.DECORATION_HALF_WINDOW
        i0 = max(0, fi - half)
        i1 = min(features.n_frames - 1, fi + half)
        if i1 < i0:
            return np.zeros(12)
        return features.chroma[i0 : i1 + 1].mean(axis=0)

    def early_diatonic(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key, spb: float
    ) -> List[TimelineEvent]:
        """
        inside the opening window every chord is spelled as its scale
        degree; off-key chords move to the nearest diatonic root (the bass
        when it is diatonic), or to the tonic right at the start.
        """
        window = max(config.EARLY_WINDOW_SECONDS, config.EARLY_WINDOW_BEATS * spb)
        tonic_window = min(config.EARLY_TONIC_SECONDS, config.EARLY_TONIC_BEATS * spb)
        scale = scale_pcs(key.root, key.minor)
        out = []
        for ev in events:
            ft = features.frame_time(ev.frame_index)
            if ft > window:
                out.append(ev)
                continue
            root = parse_root(ev.label)
            if not in_key(root, key.root, key.minor):
                bass = int(features.bass_pc[ev.frame_index]) if ev.frame_index < features.n_frames else -1
                if ft < tonic_window:
                    root = key.root
                elif bass in scale:
                    root = bass
                else:
                    root = nearest_diatonic(root, key.root, key.minor)
            quality = degree_quality(root, key.root, key.minor)
            label = note_name(root, key) + (quality or "")
            out.append(ev if label == ev.label else replace(ev, label=label))
        return out

    def correct_qualities(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key
    ) -> List[TimelineEvent]:
        out = []
        for ev in events:
            if not is_minor_label(ev.label):
                out.append(ev)
                continue
            root = parse_root(ev.label)
            c = self._avg_chroma(features, ev.frame_index)
            m3, M3 = c[to_pc(root + 3)], c[to_pc(root + 4)]
            rel = to_pc(root - key.root)

            to_major = False
            if key.minor and rel in (3, 7, 10):
                # III, V and VII are commonly major in minor keys
                to_major = M3 > config.MINOR_TO_MAJOR_RATIO * m3 and M3 > config.MINOR_TO_MAJOR_MIN
            if (
                c[root] > config.POWER_CHORD_MIN
                and c[to_pc(root + 7)] > config.POWER_CHORD_MIN
                and m3 < config.POWER_CHORD_MAX_THIRD
                and M3 < config.POWER_CHORD_MAX_THIRD
            ):
                # no third at all: read a bare fifth as major
                to_major = True
            out.append(replace(ev, label=note_name(root, key)) if to_major else ev)
        return out

    def filter_short(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key, spb: float
    ) -> List[TimelineEvent]:
        """
        drops events shorter than max(0.5 s, half a beat) that are weak
        (energy under 85% of the median), off key, or sit over a bass note
        outside their triad. the first event always stays.
        """
        min_dur = max(config.MIN_DURATION_SECONDS, config.MIN_DURATION_BEATS * spb)
        median = features.percentile(50)
        sec_per_frame = features.hop / float(features.sr)
        out = []
        for i, ev in enumerate(events):
            if i == 0:
                out.append(ev)
                continue
            fi = ev.frame_index
            next_fi = events[i + 1].frame_index if i + 1 < len(events) else features.n_frames
            dur = (next_fi - fi) * sec_per_frame
            if dur >= min_dur:
                out.append(ev)
                continue
            root = parse_root(ev.label)
            weak = features.energy[fi] < config.WEAK_ENERGY_RATIO * median
            off_key = not in_key(root, key.root, key.minor)
            bass = int(features.bass_pc[fi])
            contradicted = bass >= 0 and to_pc(bass - root) not in _triad_tones(ev.label)
            if weak or off_key or contradicted:
                logger.debug(
                    "dropping %s at frame %d (%.2fs, weak=%s, off_key=%s, bass=%s)",
                    ev.label, fi, dur, weak, off_key, contradicted,
                )
                continue
            out.append(ev)
        return out

    def filter_unsupported(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key
    ) -> List[TimelineEvent]:
        """keeps diatonic roots, and other roots only when root and fifth both sound."""
        scale = scale_pcs(key.root, key.minor)
        out = []
        for ev in events:
            root = parse_root(ev.label)
            if root in scale:
                out.append(ev)
                continue
            c = self._avg_chroma(features, ev.frame_index)
            if (
                c[root] >= config.SUPPORT_MIN_STRENGTH
                and c[to_pc(root + 7)] >= config.SUPPORT_MIN_STRENGTH
            ):
                out.append(ev)
        if not out:
            out = [events[0]]
        return out

    def snap_to_beats(
        self, events: List[TimelineEvent], features: FrameFeatures, spb: float, duration: float
    ) -> List[TimelineEvent]:
        out = []
        prev = 0.0
        for ev in events:
            t = snap_time(features.frame_time(ev.frame_index), spb, duration=duration)
            t = max(prev, t)
            prev = t
            out.append(replace(ev, time=t))
        return out

    def decorate_extensions(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key
    ) -> List[TimelineEvent]:
        mode = HarmonyMode(self.options.harmony_mode)
        if mode == HarmonyMode.BASIC:
            return list(events)
        out = []
        for ev in events:
            label = self._decorate(ev.label, self._avg_chroma(features, ev.frame_index), key, mode)
            out.append(ev if label == ev.label else replace(ev, label=label))
        return out

    def _decorate(self, label: str, c: np.ndarray, key: Key, mode: HarmonyMode) -> str:
        root = parse_root(label)
        minor = is_minor_label(label)
        base = base_triad(label)
        plain = base[:-1] if minor else base
        mul = self.options.extension_sensitivity

        def s(interval):
            return c[to_pc(root + interval)]

        s_root, s_m3, s_M3, s_5 = s(0), s(3), s(4), s(7)
        s2, s4, s_b7, s7 = s(2), s(5), s(10), s(11)

        if not minor and s_M3 < config.SUS_MAX_THIRD and s_5 > config.SUS_MIN_FIFTH:
            if s4 > config.SUS_TONE_MIN / mul and s4 >= s2 * config.SUS_RIVAL_RATIO:
                return plain + "sus4"
            if s2 > config.SUS_TONE_MIN / mul and s2 >= s4 * config.SUS_RIVAL_RATIO:
                return plain + "sus2"

        out = base
        dominant = to_pc(root - key.root) == 7
        seventh_floor = config.DOMINANT_SEVENTH_MIN if dominant else config.SEVENTH_MIN
        if (
            not minor
            and s7 > config.MAJ7_MIN / mul
            and s7 > s_b7 * config.SEVENTH_DOMINANCE
        ):
            out = plain + "maj7"
        elif (
            s_b7 > seventh_floor / mul
            and s_root > config.SEVENTH_ROOT_MIN / mul
            and s_b7 >= s7 * config.SEVENTH_DOMINANCE
        ):
            out = base + "7"

        if mode == HarmonyMode.PRO:
            nine = s2 > config.NINTH_MIN / mul and s_root > config.SEVENTH_ROOT_MIN / mul
            third = s_m3 if minor else s_M3
            if nine and out.endswith("7") and not out.endswith("maj7"):
                out = out[:-1] + "9"
            elif nine and out == base and third > config.SUS_MAX_THIRD / mul:
                out = base + "add9"
        return out

    def add_inversions(
        self, events: List[TimelineEvent], features: FrameFeatures, key: Key
    ) -> List[TimelineEvent]:
        """
        appends the slash bass when most voiced frames of an event agree on
        a chord tone other than the root that also sounds strongly enough.
        """
        mult = self.options.bass_multiplier
        out = []
        for i, ev in enumerate(events):
            if "/" in ev.label:
                out.append(ev)
                continue
            fi = ev.frame_index
            end = events[i + 1].frame_index if i + 1 < len(events) else features.n_frames
            voiced = [int(b) for b in features.bass_pc[fi:max(end, fi + 1)] if b >= 0]
            if not voiced:
                out.append(ev)
                continue
            bass, votes = Counter(voiced).most_common(1)[0]
            root = parse_root(ev.label)
            if votes * 2 <= len(voiced) or bass == root:
                out.append(ev)
                continue
            if to_pc(bass - root) not in chord_tones(ev.label):
                out.append(ev)
                continue
            c = self._avg_chroma(features, fi)
            if (
                c[bass] > config.INVERSION_MIN_BASS_STRENGTH / max(1.0, mult)
                and c[bass] > config.INVERSION_ROOT_RATIO * c[root]
            ):
                out.append(replace(ev, label=f"{ev.label}/{note_name(bass, key)}"))
            else:
                out.append(ev)
        return out


def merge_duplicates(events: Sequence[TimelineEvent], key=None) -> List[TimelineEvent]:
    """collapses runs of adjacent events with the same label (or `key(label)`), keeping the first."""
    out: List[TimelineEvent] = []
    for ev in events:
        if out:
            a, b = out[-1].label, ev.label
            if (key(a) == key(b)) if key is not None else (a == b):
                continue
        out.append(ev)
    return out


def annotate_modal_context(events: Sequence[TimelineEvent], key: Key) -> List[TimelineEvent]:
    out = []
    for i, ev in enumerate(events):
        nxt = events[i + 1].label if i + 1 < len(events) else None
        ctx = modal_context(ev.label, nxt, key)
        out.append(ev if ctx == ev.modal_context else replace(ev, modal_context=ctx))
    return out
