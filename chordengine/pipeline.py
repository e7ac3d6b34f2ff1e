import concurrent.futures
import logging
import time
import numpy as np
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from . import config
from ._internal.utils import Deadline
from .analysis.descriptors import TimelineDescriptors, reestimate_key
from .analysis.refine import TimelineRefiner, annotate_modal_context, merge_duplicates
from .config import AnalysisOptions
from .detection.key import KeyEstimator
from .detection.tracker import ChordTracker
from .errors import AlgorithmFaultError, AnalysisError, AnalysisTimeoutError
from .features.beats import beat_grid
from .features.chroma import FeatureExtractor
from .features.frontend import estimate_tempo, prepare_audio
from .result import FrameFeatures, Key, Result, SegmentVerdict, TimelineEvent
from .validation.bass import BassValidator
from .validation.quality import QualityValidator

logger = logging.getLogger(__name__)


class StageTimings:
    """seconds spent per pipeline stage; no stage starts once the deadline has passed."""

    def __init__(self, deadline: Optional[Deadline] = None):
        self.deadline = deadline or Deadline()
        self._sections: Dict[str, float] = {}

    @contextmanager
    def track(self, name: str):
        """times the stage and turns any unexpected exception into an AlgorithmFaultError."""
        self.deadline.check()
        with stage_timer(name) as elapsed:
            try:
                yield
            except AnalysisError:
                raise
            except Exception as exc:
                raise AlgorithmFaultError(name) from exc
            finally:
                self._sections[name] = self._sections.get(name, 0.0) + elapsed()

    def snapshot(self) -> Dict[str, float]:
        return {key: round(value, 6) for key, value in self._sections.items()}


@contextmanager
def stage_timer(label: str):
    """logs how long a stage takes; yields a callable returning the time so far."""
    start = time.perf_counter()
    try:
        yield lambda: time.perf_counter() - start
    finally:
        logger.info("%s took %.3fs", label, time.perf_counter() - start)


def _is_silent(features: FrameFeatures) -> bool:
    return features.n_frames == 0 or not np.any(features.energy > config.SILENCE_ENERGY)


class ChordPipeline:
    """
    audio in, chord timeline out.

    stages run strictly one after another, each consuming the complete
    output of the one before:
      1. front end: downmix, resample, tempo
      2. frame features
      3. key
      4. chord tracking and timeline refinement (run again once if the
         chords clearly belong to another key)
      5. quality and bass second opinions
      6. statistics
    """

    def __init__(self, options: Optional[AnalysisOptions] = None):
        self.options = options or AnalysisOptions()

    def run(self, audio: Any, sample_rate: int) -> Result:
        timeout = self.options.timeout
        deadline = Deadline(timeout)
        if timeout is None:
            return self._run(audio, sample_rate, deadline)

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._run, audio, sample_rate, deadline)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            # the worker stops at its next stage or block boundary
            deadline.cancel()
            logger.error("chord analysis timed out after %gs", timeout)
            raise AnalysisTimeoutError(timeout) from None
        finally:
            # never wait for a stage that overran the deadline
            executor.shutdown(wait=False)

    def _run(self, audio: Any, sample_rate: int, deadline: Deadline) -> Result:
        opts = self.options
        timings = StageTimings(deadline)

        # bad input surfaces as InvalidAudioError, untouched by the stage wrapper
        with timings.track("front_end"):
            y, duration = prepare_audio(audio, sample_rate)
        sr = config.TARGET_SR

        with timings.track("tempo"):
            bpm = estimate_tempo(y, sr)
        with timings.track("features"):
            features = FeatureExtractor(sr=sr, workers=opts.workers, deadline=deadline).extract(y)

        if _is_silent(features):
            return self._degraded(duration, timings)

        with timings.track("key"):
            key = KeyEstimator().estimate(features)

        tracker = ChordTracker(bass_multiplier=opts.bass_multiplier, beam_width=opts.beam_width)
        refiner = TimelineRefiner(opts)
        with timings.track("tracking"):
            events = refiner.refine(tracker.track(features, key), features, key, bpm, duration)

        key_reestimated = False
        if opts.reestimate_key:
            with timings.track("key_reestimation"):
                better = reestimate_key(events, key)
                if better is not None:
                    key = better
                    key_reestimated = True
                    events = refiner.refine(
                        tracker.track(features, key), features, key, bpm, duration
                    )

        verdicts: List[SegmentVerdict] = []
        events, quality_overrides, bass_overrides = self._second_opinions(
            y, sr, events, key, duration, timings, verdicts
        )

        if not events:
            events = [TimelineEvent(time=0.0, label=key.label(), frame_index=0)]

        with timings.track("statistics"):
            stats = TimelineDescriptors().compute(events, key)
        stats.update(
            key_reestimated=key_reestimated,
            quality_overrides=quality_overrides,
            bass_overrides=bass_overrides,
            timings=timings.snapshot(),
        )
        logger.info(
            "analysed %.1fs: key %s, %.0f BPM, %d chords",
            duration, key.label(), bpm, len(events),
        )
        return Result(
            chords=events,
            key=key,
            bpm=bpm,
            duration=duration,
            beats=beat_grid(bpm, duration),
            verdicts=verdicts,
            stats=stats,
        )

    def _second_opinions(
        self,
        y: np.ndarray,
        sr: int,
        events: List[TimelineEvent],
        key: Key,
        duration: float,
        timings: StageTimings,
        verdicts: List[SegmentVerdict],
    ) -> Tuple[List[TimelineEvent], int, int]:
        quality_overrides = bass_overrides = 0
        if self.options.use_quality_validator and events:
            with timings.track("quality_validation"):
                validator = QualityValidator(self.options, deadline=timings.deadline)
                events, found = validator.validate(y, sr, events, key, duration)
            verdicts.extend(found)
            quality_overrides = sum(1 for v in found if v.overridden)
        if self.options.use_bass_validator and events:
            with timings.track("bass_validation"):
                validator = BassValidator(self.options, deadline=timings.deadline)
                events, found = validator.validate(y, sr, events, key, duration)
            verdicts.extend(found)
            bass_overrides = sum(1 for v in found if v.overridden)
        if quality_overrides or bass_overrides:
            events = annotate_modal_context(merge_duplicates(events), key)
        return events, quality_overrides, bass_overrides

    def _degraded(self, duration: float, timings: StageTimings) -> Result:
        """default tempo and key, one tonic chord for the whole input."""
        logger.warning(
            "no usable signal in %.2fs of audio, returning the default result", duration
        )
        key = Key(0, False, config.DEFAULT_KEY_CONFIDENCE, "default")
        bpm = config.DEFAULT_BPM
        return Result(
            chords=[TimelineEvent(time=0.0, label=key.label(), frame_index=0)],
            key=key,
            bpm=bpm,
            duration=duration,
            beats=beat_grid(bpm, duration),
            stats={
                "total_chords": 1,
                "key_reestimated": False,
                "quality_overrides": 0,
                "bass_overrides": 0,
                "timings": timings.snapshot(),
            },
        )
