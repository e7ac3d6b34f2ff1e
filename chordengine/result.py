from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .profiles.vocabulary import note_name, scale_pcs


@dataclass(frozen=True)
class FrameFeatures:
    """
    per-frame analysis arrays produced once by the feature extractor.

    all arrays share the frame axis; nothing downstream writes to them.
    """

    chroma: np.ndarray
    bass_pc: np.ndarray
    energy: np.ndarray
    hop: int
    sr: int
    frame_size: int
    percentiles: Dict[int, float]
    intro_skip_frames: int = 0

    @property
    def n_frames(self) -> int:
        return int(self.energy.shape[0])

    def frame_time(self, i: int) -> float:
        return i * self.hop / float(self.sr)

    def percentile(self, p: int) -> float:
        return self.percentiles[p]

    def transposed(self, semitones: int) -> "FrameFeatures":
        """same features with every pitch class shifted up by `semitones`."""
        bass = np.where(self.bass_pc >= 0, (self.bass_pc + semitones) % 12, -1)
        return FrameFeatures(
            chroma=np.roll(self.chroma, semitones, axis=1),
            bass_pc=bass.astype(self.bass_pc.dtype),
            energy=self.energy,
            hop=self.hop,
            sr=self.sr,
            frame_size=self.frame_size,
            percentiles=dict(self.percentiles),
            intro_skip_frames=self.intro_skip_frames,
        )


@dataclass(frozen=True)
class Key:
    root: int
    minor: bool
    confidence: float
    method: str = "default"

    def label(self) -> str:
        return note_name(self.root, self) + ("m" if self.minor else "")

    def scale_pcs(self) -> List[int]:
        return scale_pcs(self.root, self.minor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": int(self.root),
            "minor": bool(self.minor),
            "confidence": float(self.confidence),
        }


@dataclass(frozen=True)
class ChordCandidate:
    root: int
    quality: str  # 'major' or 'minor'
    label: str
    borrowed: bool

    @property
    def tones(self) -> List[int]:
        third = 3 if self.quality == "minor" else 4
        return [self.root % 12, (self.root + third) % 12, (self.root + 7) % 12]

    @property
    def template(self) -> np.ndarray:
        mask = np.zeros(12, dtype=float)
        mask[self.tones] = 1.0
        return mask


@dataclass
class TimelineEvent:
    time: float
    label: str
    frame_index: int
    original_label: Optional[str] = None
    refined_by: Optional[str] = None
    confidence: Optional[float] = None
    modal_context: Optional[str] = None

    def to_dict(self, extended: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {"t": float(self.time), "label": self.label}
        if extended:
            out["frame_index"] = int(self.frame_index)
            for name in ("original_label", "refined_by", "confidence", "modal_context"):
                value = getattr(self, name)
                if value is not None:
                    out[name] = value
        return out


@dataclass(frozen=True)
class SegmentVerdict:
    """what a second-opinion validator saw for one chord segment."""

    validator: str
    time: float
    original_label: str
    detected: str
    suggested_label: str
    confidence: float
    overridden: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validator": self.validator,
            "t": float(self.time),
            "original_label": self.original_label,
            "detected": self.detected,
            "suggested_label": self.suggested_label,
            "confidence": float(self.confidence),
            "overridden": bool(self.overridden),
            "reason": self.reason,
        }


@dataclass
class Result:
    chords: List[TimelineEvent]
    key: Key
    bpm: float
    duration: float
    beats: np.ndarray = field(default_factory=lambda: np.zeros(0))
    verdicts: List[SegmentVerdict] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, extended: bool = False) -> Dict[str, Any]:
        """
        JSON-ready form: chords [{t, label}], key {root, minor, confidence},
        bpm and duration. `extended` adds beats, verdicts and stats.
        """
        out: Dict[str, Any] = {
            "chords": [ev.to_dict(extended) for ev in self.chords],
            "key": self.key.to_dict(),
            "bpm": float(self.bpm),
            "duration": float(self.duration),
        }
        if extended:
            out["beats"] = [float(b) for b in self.beats]
            out["verdicts"] = [v.to_dict() for v in self.verdicts]
            out["stats"] = dict(self.stats)
        return out
