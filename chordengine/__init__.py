import numpy as np
from dataclasses import replace
from typing import Any, Optional

from .analysis.refine import TimelineRefiner
from .config import AnalysisOptions, HarmonyMode
from .detection.key import KeyEstimator
from .detection.tracker import ChordTracker
from .errors import AlgorithmFaultError, AnalysisError, AnalysisTimeoutError, InvalidAudioError
from .features.chroma import FeatureExtractor
from .features.frontend import estimate_tempo, prepare_audio
from .pipeline import ChordPipeline
from .result import ChordCandidate, FrameFeatures, Key, Result, SegmentVerdict, TimelineEvent
from .validation.bass import BassValidator
from .validation.quality import QualityValidator

__all__ = [
    "analyze",
    "AnalysisOptions",
    "HarmonyMode",
    "Result",
    "Key",
    "TimelineEvent",
    "SegmentVerdict",
    "ChordCandidate",
    "FrameFeatures",
    "prepare_audio",
    "estimate_tempo",
    "FeatureExtractor",
    "KeyEstimator",
    "ChordTracker",
    "TimelineRefiner",
    "BassValidator",
    "QualityValidator",
    "ChordPipeline",
    "AnalysisError",
    "InvalidAudioError",
    "AlgorithmFaultError",
    "AnalysisTimeoutError",
]


def analyze(
    audio: np.ndarray,
    sample_rate: int,
    *,
    options: Optional[AnalysisOptions] = None,
    **kwargs: Any,
) -> Result:
    """
    detect the chords, key and tempo of a decoded audio buffer.

    this is the main entry point for the library. it runs the full
    pipeline:
      1. downmixes and resamples the audio, and estimates the tempo.
      2. extracts per-frame chroma, bass pitch class and energy.
      3. estimates the key and decodes a key-constrained chord path.
      4. refines the timeline and asks the bass and quality validators
         for a second opinion.

    Args:
        audio: the waveform, shaped (n,), (channels, n) or (n, channels).
        sample_rate: the sample rate of `audio` in Hz.
        options: analysis options; defaults to `AnalysisOptions()`.
        **kwargs: individual option fields overriding `options`
            (e.g., `harmony_mode="pro"`, `beam_width=4`).

    Raises:
        InvalidAudioError: the buffer, sample rate or an option is unusable.
        AlgorithmFaultError: an internal stage failed.
        AnalysisTimeoutError: the analysis ran past `options.timeout`.
    """
    options = options or AnalysisOptions()
    unknown = sorted(set(kwargs) - set(AnalysisOptions.field_names()))
    if unknown:
        raise InvalidAudioError(f"Unknown analysis option(s): {', '.join(unknown)}")
    try:
        options = replace(options, **kwargs) if kwargs else options
    except (TypeError, ValueError) as exc:
        raise InvalidAudioError(f"Invalid analysis options: {exc}") from exc
    return ChordPipeline(options).run(audio, sample_rate)
