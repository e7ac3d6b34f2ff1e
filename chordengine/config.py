"""
chordengine.config
~~~~~~~~~~~~~~~~~~

constants shared by every stage of the engine, plus the per-call
options bag. the numeric thresholds here are tuned values: changing one
changes the output, so they live in one place with a name each.
"""

import enum
import logging
import multiprocessing
import os
from dataclasses import dataclass, field, fields
from typing import Final, Optional, Tuple

logger = logging.getLogger(__name__)

# ── Audio front end ──────────────────────────────────────────────────
TARGET_SR: Final[int] = 22050
"""Analysis sample rate in Hz; every input is resampled to it."""

FRAME_SIZE: Final[int] = 4096
"""Samples per analysis frame (power of two, fed to the radix-2 FFT)."""

HOP_SECONDS: Final[float] = 0.1
"""Frame hop in seconds (2205 samples at the analysis rate)."""

DEFAULT_BPM: Final[float] = 120.0
MIN_BPM: Final[float] = 60.0
MAX_BPM: Final[float] = 200.0

TEMPO_MIN_LAG_SECONDS: Final[float] = 0.3
"""Shortest energy-autocorrelation lag searched by the tempo estimate."""

TEMPO_MAX_LAG_SECONDS: Final[float] = 2.0
"""Longest lag searched (30 BPM)."""

TEMPO_MIN_FRAMES: Final[int] = 4
"""Below this many energy frames the tempo falls back to DEFAULT_BPM."""

# ── Features ─────────────────────────────────────────────────────────
CHROMA_FMIN: Final[float] = 80.0
CHROMA_FMAX: Final[float] = 5000.0

BASS_FMIN: Final[float] = 40.0
BASS_FMAX: Final[float] = 250.0

BASS_ENERGY_PERCENTILE: Final[int] = 40
"""Frames quieter than this energy percentile get no bass pitch class."""

BASS_MIN_FRAME_CORRELATION: Final[float] = 0.1
"""Normalized autocorrelation a per-frame bass lag needs to be kept."""

FEATURE_BLOCK_FRAMES: Final[int] = 128
"""Frames per parallel work item in the feature extractor."""

ENERGY_PERCENTILES: Final[Tuple[int, ...]] = (30, 40, 50, 70, 75, 80)

INTRO_STABLE_PERCENTILE: Final[int] = 70
INTRO_STABLE_SECONDS: Final[float] = 0.5
INTRO_MAX_SECONDS: Final[float] = 8.0

SILENCE_ENERGY: Final[float] = 1e-10
"""Total frame energy at or below this counts as digital silence."""

# ── Key estimation ───────────────────────────────────────────────────
KEY_ENERGY_PERCENTILE: Final[int] = 80
BASS_TONIC_MIN_CONFIDENCE: Final[float] = 0.25
"""Above this the bass histogram decides the tonic, else the profile fallback."""

KEY_EDGE_FRAMES: Final[int] = 5
KEY_EDGE_WEIGHT: Final[float] = 3.0
KEY_RATIO_EPS: Final[float] = 1e-4

# (minor-side ratio, major-side ratio, weight, cap) per compared degree pair
KEY_THIRD_RULE: Final[Tuple[float, float, float, float]] = (1.03, 0.97, 5.0, 3.0)
KEY_SIXTH_RULE: Final[Tuple[float, float, float, float]] = (1.08, 0.93, 3.0, 2.5)
KEY_SEVENTH_RULE: Final[Tuple[float, float, float, float]] = (1.08, 0.93, 2.0, 2.0)
KEY_EDGE_THIRD_RATIOS: Final[Tuple[float, float]] = (1.05, 0.95)
KEY_EDGE_BONUS: Final[float] = 4.0

KEY_CONF_BASE: Final[float] = 0.25
KEY_CONF_TONIC: Final[float] = 0.25
KEY_CONF_SEPARATION: Final[float] = 0.15
KEY_CONF_SPREAD: Final[float] = 0.8

BASS_HINT_SIXTH_MIN: Final[float] = 0.05
BASS_HINT_THIRD_MIN: Final[float] = 0.04
BASS_HINT_SEVENTH_MIN: Final[float] = 0.05
BASS_HINT_MIN_SCORE: Final[float] = 2.0
"""A bass mode hint is emitted only when either side scores above this."""

BASS_HINT_SCALE: Final[float] = 8.0
BASS_HINT_WEIGHT: Final[float] = 3.0

MODE_TIE_MARGIN: Final[float] = 2.0
MODE_TIE_SIXTH_MIN: Final[float] = 0.08
MODE_TIE_SIXTH_BONUS: Final[float] = 2.0
MODE_TIE_THIRD_MIN: Final[float] = 0.10
MODE_TIE_THIRD_RATIO: Final[float] = 0.95
MODE_TIE_THIRD_BONUS: Final[float] = 1.5

PROFILE_HEAD_FRACTION: Final[float] = 0.10
PROFILE_HEAD_WEIGHT: Final[float] = 5.0
PROFILE_TAIL_FRACTION: Final[float] = 0.90
PROFILE_TAIL_WEIGHT: Final[float] = 3.0
PROFILE_SCORE_SCALE: Final[float] = 10.0

KS_MAJOR: Final[Tuple[float, ...]] = (
    6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88,
)
"""Krumhansl-Schmuckler major key profile, tonic first."""

KS_MINOR: Final[Tuple[float, ...]] = (
    6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17,
)
"""Krumhansl-Schmuckler minor key profile, tonic first."""

DEFAULT_KEY_CONFIDENCE: Final[float] = 0.5

# ── Chord tracking ───────────────────────────────────────────────────
MIN_TEMPLATE_SIMILARITY: Final[float] = 0.35
DIATONIC_BONUS: Final[float] = 0.20
BORROWED_PENALTY: Final[float] = 0.25
BASS_ROOT_BONUS: Final[float] = 0.15
BASS_TONE_BONUS: Final[float] = 0.08
BASS_FOREIGN_PENALTY: Final[float] = 0.20
LOW_ENERGY_PENALTY: Final[float] = 0.30

TRANSITION_BASE: Final[float] = 0.4
TRANSITION_PER_FIFTH: Final[float] = 0.08
TRANSITION_QUALITY_CHANGE: Final[float] = 0.05
TRANSITION_BOTH_DIATONIC: Final[float] = 0.12
TRANSITION_BOTH_BORROWED: Final[float] = 0.30
TRANSITION_ONE_BORROWED: Final[float] = 0.18
CADENCE_V_I: Final[float] = 0.15
CADENCE_IV_V: Final[float] = 0.12
CADENCE_II_V: Final[float] = 0.12
CADENCE_IV_I: Final[float] = 0.10
FIFTH_UP_BONUS: Final[float] = 0.08

DEFAULT_BEAM_WIDTH: Final[int] = 8

# ── Timeline refinement ──────────────────────────────────────────────
MIN_DURATION_SECONDS: Final[float] = 0.5
MIN_DURATION_BEATS: Final[float] = 0.5
WEAK_ENERGY_RATIO: Final[float] = 0.85
"""An event is weak when its energy is below this fraction of the median."""

SNAP_TOLERANCE_BEATS: Final[float] = 0.35

EARLY_WINDOW_SECONDS: Final[float] = 15.0
EARLY_WINDOW_BEATS: Final[float] = 6.0
EARLY_TONIC_SECONDS: Final[float] = 3.0
EARLY_TONIC_BEATS: Final[float] = 2.0

DECORATION_HALF_WINDOW: Final[int] = 2
SEVENTH_MIN: Final[float] = 0.16
DOMINANT_SEVENTH_MIN: Final[float] = 0.15
SEVENTH_ROOT_MIN: Final[float] = 0.10
MAJ7_MIN: Final[float] = 0.20
SEVENTH_DOMINANCE: Final[float] = 1.2
SUS_TONE_MIN: Final[float] = 0.22
SUS_MAX_THIRD: Final[float] = 0.10
SUS_MIN_FIFTH: Final[float] = 0.10
SUS_RIVAL_RATIO: Final[float] = 0.9
NINTH_MIN: Final[float] = 0.25

INVERSION_MIN_BASS_STRENGTH: Final[float] = 0.15
INVERSION_ROOT_RATIO: Final[float] = 0.7

SUPPORT_MIN_STRENGTH: Final[float] = 0.08
"""Root and fifth chroma needed to keep a non-diatonic chord."""

MINOR_TO_MAJOR_RATIO: Final[float] = 1.25
MINOR_TO_MAJOR_MIN: Final[float] = 0.08
POWER_CHORD_MIN: Final[float] = 0.15
POWER_CHORD_MAX_THIRD: Final[float] = 0.08

KEY_FIT_MIN_RATIO: Final[float] = 0.6
KEY_FIT_IMPROVEMENT: Final[float] = 0.15
MODULATION_MIN_EVENTS: Final[int] = 20

# ── Second-opinion validators ────────────────────────────────────────
VALIDATOR_FRAME_SIZE: Final[int] = 4096
VALIDATOR_HOP: Final[int] = 2048

BASS_MIN_SEGMENT_SECONDS: Final[float] = 0.3
BASS_SEARCH_FMIN: Final[float] = 35.0
BASS_SEARCH_FMAX: Final[float] = 300.0
BASS_LOWPASS_HZ: Final[float] = 300.0
BASS_MIN_RMS: Final[float] = 0.005
BASS_PEAK_FACTOR: Final[float] = 1.5
BASS_PEAK_FLOOR: Final[float] = 0.5
BASS_PEAK_CONFIDENCE_SCALE: Final[float] = 0.3
BASS_MIN_CORRELATION: Final[float] = 0.3
BASS_AUTOCORR_MAX_LEN: Final[int] = 1000
BASS_YIN_THRESHOLD: Final[float] = 0.15
BASS_STRONG_RATIO: Final[float] = 0.7
BASS_FALLBACK_RATIO: Final[float] = 0.5
BASS_STABILITY_FRAMES: Final[int] = 2
BASS_MIN_STABILITY: Final[float] = 0.40
"""Share of sub-window votes the winning bass note needs."""

BASS_OVERRIDE_CONFIDENCE: Final[float] = 0.75
DEFAULT_BASS_CONFIDENCE: Final[float] = 0.45

QUALITY_FMIN: Final[float] = 80.0
QUALITY_FMAX: Final[float] = 4000.0
QUALITY_CENTER_AFTER: Final[float] = 1.5
QUALITY_CENTER_MARGIN: Final[float] = 0.20
QUALITY_MIN_THIRD_ENERGY: Final[float] = 5e-5
QUALITY_CLEAR_DIFF: Final[float] = 0.5
QUALITY_ENERGY_SCALE: Final[float] = 1e-3
HARMONIC_LEVEL_WEIGHTS: Final[Tuple[float, ...]] = (0.5, 0.8, 1.0, 1.0)
QUALITY_HISTORY: Final[int] = 5
QUALITY_HISTORY_LOW: Final[float] = 0.6
QUALITY_HISTORY_BOOST: Final[float] = 0.1
QUALITY_HISTORY_CHANGE_BOOST: Final[float] = 0.05
QUALITY_HISTORY_CAP: Final[float] = 0.95

DEFAULT_DECISION_THRESHOLD: Final[float] = 0.15
DEFAULT_MIN_CONFIDENCE_TO_OVERRIDE: Final[float] = 0.40

# ── Runtime (environment) ────────────────────────────────────────────
def env_number(name: str, default, cast=float):
    """reads a numeric environment override; a malformed value keeps the default."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(
            "ignoring %s=%r, not a valid %s; using %r", name, raw, cast.__name__, default
        )
        return default


_workers_env = env_number("CHORDENGINE_WORKERS", 1, int)
WORKERS: Final[int] = (
    multiprocessing.cpu_count() if _workers_env <= 0 else _workers_env
)
"""Threads for per-frame and per-segment work (1 runs serially)."""

_timeout_env = env_number("CHORDENGINE_TIMEOUT", 0.0, float)
TIMEOUT: Final[Optional[float]] = (
    _timeout_env if 0 < _timeout_env < float("inf") else None
)
"""Default pipeline deadline in seconds, None for no deadline."""


class HarmonyMode(str, enum.Enum):
    """which extensions the refiner may decorate onto triads."""

    BASIC = "basic"
    JAZZ = "jazz"
    PRO = "pro"


@dataclass
class AnalysisOptions:
    bass_multiplier: float = 1.2
    harmony_mode: HarmonyMode = HarmonyMode.JAZZ
    extension_sensitivity: float = 1.0
    decision_threshold: float = DEFAULT_DECISION_THRESHOLD
    min_confidence_to_override: float = DEFAULT_MIN_CONFIDENCE_TO_OVERRIDE
    bass_confidence_threshold: float = DEFAULT_BASS_CONFIDENCE
    allow_bass_override: bool = False
    beam_width: int = DEFAULT_BEAM_WIDTH
    use_quality_validator: bool = True
    use_bass_validator: bool = True
    reestimate_key: bool = True
    workers: int = field(default=WORKERS)
    timeout: Optional[float] = field(default=TIMEOUT)

    def __post_init__(self):
        mode = self.harmony_mode
        if isinstance(mode, str):
            mode = mode.lower()
        try:
            self.harmony_mode = HarmonyMode(mode)
        except ValueError:
            valid = [m.value for m in HarmonyMode]
            raise ValueError(f"harmony_mode must be one of {valid}, got {mode!r}") from None
        if self.bass_multiplier < 0:
            raise ValueError(f"bass_multiplier={self.bass_multiplier} must be >= 0")
        if self.extension_sensitivity <= 0:
            raise ValueError("extension_sensitivity must be strictly positive")
        if self.beam_width < 1:
            raise ValueError(f"beam_width={self.beam_width} must be at least 1")
        if self.workers < 1:
            raise ValueError(f"workers={self.workers} must be at least 1")
        for name in (
            "decision_threshold",
            "min_confidence_to_override",
            "bass_confidence_threshold",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name}={value} must lie in [0, 1]")
        if self.timeout is not None and self.timeout <= 0:
            self.timeout = None

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))
