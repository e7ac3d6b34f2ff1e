import logging
import time

import numpy as np
import pytest

import chordengine
from chordengine import AnalysisOptions, HarmonyMode, analyze
from chordengine._internal.utils import Deadline
from chordengine.config import env_number
from chordengine.detection.key import KeyEstimator
from chordengine.errors import AlgorithmFaultError, AnalysisTimeoutError, InvalidAudioError
from chordengine.features.chroma import FeatureExtractor
from chordengine.pipeline import StageTimings
from chordengine.profiles.vocabulary import base_triad, parse_root

from conftest import SR, midi_hz, sines

C_CHORD = [midi_hz(48), midi_hz(60), midi_hz(64), midi_hz(67)]
G_CHORD = [midi_hz(43), midi_hz(55), midi_hz(59), midi_hz(62)]


@pytest.fixture
def c_g_song():
    # C is deliberately louder than G so the loudest bass notes name C as
    # the tonic. with equal levels the key comes out as G major while the
    # chords still read C G C G, so the key assertion depends on this weighting.
    c = sines(C_CHORD, 2.0, amps=0.2)
    g = sines(G_CHORD, 2.0, amps=0.16)
    return np.concatenate([c, g, c, g])


def test_silence_gives_the_default_result():
    result = analyze(np.zeros(5 * 44100), 44100)
    assert result.to_dict() == {
        "chords": [{"t": 0.0, "label": "C"}],
        "key": {"root": 0, "minor": False, "confidence": 0.5},
        "bpm": 120.0,
        "duration": 5.0,
    }
    assert result.key.method == "default"


@pytest.mark.parametrize("n_samples", [0, 1000])
def test_too_little_audio_is_degraded(n_samples):
    result = analyze(np.zeros(n_samples), SR)
    assert [e.label for e in result.chords] == ["C"]
    assert result.bpm == 120.0
    assert result.duration == pytest.approx(n_samples / float(SR))


def test_short_noise_still_returns_a_timeline(rng):
    result = analyze(0.1 * rng.standard_normal(SR // 2), SR)
    assert len(result.chords) >= 1
    assert result.chords[0].time == 0.0


def test_alternating_chords(c_g_song):
    result = analyze(c_g_song, SR, workers=1)
    labels = [base_triad(e.label) for e in result.chords]
    assert labels == ["C", "G", "C", "G"]
    times = [e.time for e in result.chords]
    assert times == pytest.approx([0.0, 2.0, 4.0, 6.0], abs=0.25)
    assert times == sorted(times)
    assert (result.key.root, result.key.minor) == (0, False)
    assert result.duration == pytest.approx(8.0)
    assert all(parse_root(e.label) >= 0 for e in result.chords)


def test_stereo_input_matches_mono(c_g_song):
    mono = analyze(c_g_song, SR)
    stereo = analyze(np.stack([c_g_song, c_g_song], axis=1), SR)
    assert stereo.to_dict() == mono.to_dict()


def test_extended_output(c_g_song):
    result = analyze(c_g_song, SR, harmony_mode="basic")
    out = result.to_dict(extended=True)
    assert set(out) == {"chords", "key", "bpm", "duration", "beats", "verdicts", "stats"}
    assert out["beats"][0] == 0.0
    assert {v["validator"] for v in out["verdicts"]} == {"quality", "bass"}
    stats = out["stats"]
    assert stats["total_chords"] == len(result.chords)
    assert not stats["key_reestimated"]
    for stage in ("front_end", "tempo", "features", "key", "tracking", "statistics"):
        assert stage in stats["timings"]
    assert all("frame_index" in c for c in out["chords"])


def test_validators_can_be_switched_off(c_g_song):
    result = analyze(c_g_song, SR, use_quality_validator=False, use_bass_validator=False)
    assert result.verdicts == []
    assert result.stats["quality_overrides"] == 0
    assert result.stats["bass_overrides"] == 0


@pytest.mark.parametrize(
    "audio, sr, kwargs",
    [
        (np.zeros(1000), 0, {}),
        (np.array([0.0, np.nan]), SR, {}),
        (np.zeros(1000), SR, {"colour": "blue"}),
        (np.zeros(1000), SR, {"harmony_mode": "bebop"}),
        (np.zeros(1000), SR, {"harmony_mode": 3}),
        (np.zeros(1000), SR, {"beam_width": 0}),
    ],
)
def test_invalid_input(audio, sr, kwargs):
    with pytest.raises(InvalidAudioError):
        analyze(audio, sr, **kwargs)


def test_internal_failure_names_its_stage(monkeypatch, rng):
    def broken(self, features):
        raise RuntimeError("boom")

    monkeypatch.setattr(KeyEstimator, "estimate", broken)
    with pytest.raises(AlgorithmFaultError) as info:
        analyze(0.1 * rng.standard_normal(2 * SR), SR)
    assert info.value.stage == "key"
    assert isinstance(info.value.__cause__, RuntimeError)


def test_timeout(monkeypatch):
    def slow(self, y):
        time.sleep(1.0)
        raise AssertionError("should have timed out")

    monkeypatch.setattr(FeatureExtractor, "extract", slow)
    with pytest.raises(AnalysisTimeoutError) as info:
        analyze(np.zeros(SR), SR, timeout=0.1)
    assert info.value.timeout == pytest.approx(0.1)


def test_timeout_stops_the_remaining_stages(monkeypatch, rng):
    extract = FeatureExtractor.extract
    estimate = KeyEstimator.estimate
    key_calls = []

    def slow_extract(self, y):
        time.sleep(0.5)
        return extract(self, y)

    def spy_estimate(self, features):
        key_calls.append(time.monotonic())
        return estimate(self, features)

    monkeypatch.setattr(FeatureExtractor, "extract", slow_extract)
    monkeypatch.setattr(KeyEstimator, "estimate", spy_estimate)
    with pytest.raises(AnalysisTimeoutError):
        analyze(0.1 * rng.standard_normal(2 * SR), SR, timeout=0.1)
    # the abandoned worker must not carry on into key detection
    time.sleep(1.0)
    assert key_calls == []


def test_deadline():
    Deadline(None).check()
    Deadline(60.0).check()
    with pytest.raises(AnalysisTimeoutError) as info:
        Deadline(0.0).check()
    assert info.value.timeout == 0.0
    cancelled = Deadline(60.0)
    cancelled.cancel()
    assert cancelled.expired()
    with pytest.raises(AnalysisTimeoutError) as info:
        cancelled.check()
    assert info.value.timeout == 60.0


def test_stage_timings_refuse_to_start_after_the_deadline():
    deadline = Deadline(None)
    timings = StageTimings(deadline)
    with timings.track("key"):
        pass
    deadline.cancel()
    ran = []
    with pytest.raises(AnalysisTimeoutError):
        with timings.track("tracking"):
            ran.append("tracking")
    assert ran == []
    assert set(timings.snapshot()) == {"key"}


def test_errors_share_a_base():
    for exc in (InvalidAudioError, AlgorithmFaultError, AnalysisTimeoutError):
        assert issubclass(exc, chordengine.AnalysisError)
        assert issubclass(exc, RuntimeError)


def test_options_parsing():
    assert AnalysisOptions(harmony_mode="PRO").harmony_mode is HarmonyMode.PRO
    assert AnalysisOptions(timeout=0).timeout is None
    with pytest.raises(ValueError):
        AnalysisOptions(beam_width=0)
    with pytest.raises(ValueError):
        AnalysisOptions(decision_threshold=1.5)
    for mode in (3, None, "bebop"):
        with pytest.raises(ValueError):
            AnalysisOptions(harmony_mode=mode)
    assert AnalysisOptions(harmony_mode=HarmonyMode.BASIC).harmony_mode is HarmonyMode.BASIC
    assert "allow_bass_override" in AnalysisOptions.field_names()


def test_stage_timings_wrap_unexpected_errors():
    timings = StageTimings()
    with pytest.raises(AlgorithmFaultError) as info:
        with timings.track("tracking"):
            raise IndexError("bad frame")
    assert info.value.stage == "tracking"
    with pytest.raises(InvalidAudioError):
        with timings.track("front_end"):
            raise InvalidAudioError("bad audio")
    assert set(timings.snapshot()) == {"tracking", "front_end"}


def test_env_number_keeps_the_default_for_malformed_values(monkeypatch, caplog):
    monkeypatch.setenv("CHORDENGINE_WORKERS", "four")
    with caplog.at_level(logging.WARNING, logger="chordengine.config"):
        assert env_number("CHORDENGINE_WORKERS", 1, int) == 1
    assert "CHORDENGINE_WORKERS" in caplog.text

    monkeypatch.setenv("CHORDENGINE_TIMEOUT", "2.5")
    assert env_number("CHORDENGINE_TIMEOUT", 0.0, float) == 2.5
    monkeypatch.setenv("CHORDENGINE_TIMEOUT", " ")
    assert env_number("CHORDENGINE_TIMEOUT", 0.0, float) == 0.0
    monkeypatch.delenv("CHORDENGINE_TIMEOUT")
    assert env_number("CHORDENGINE_TIMEOUT", 0.0, float) == 0.0
