import pytest
from dataclasses import replace

from chordengine.detection.key import KeyEstimator
from chordengine.result import Key

C_MAJOR_MIX = {0: 0.3, 4: 0.2, 7: 0.25, 2: 0.05, 5: 0.05, 9: 0.1, 11: 0.05}
A_MINOR_MIX = {9: 0.3, 0: 0.2, 4: 0.25, 11: 0.05, 2: 0.05, 5: 0.1, 7: 0.05}


@pytest.fixture
def c_major(make_features):
    return make_features(
        [(C_MAJOR_MIX, 0, 30), (C_MAJOR_MIX, 7, 10), (C_MAJOR_MIX, 5, 10), (C_MAJOR_MIX, 0, 30)]
    )


@pytest.fixture
def a_minor(make_features):
    return make_features(
        [(A_MINOR_MIX, 9, 30), (A_MINOR_MIX, 4, 10), (A_MINOR_MIX, 2, 10), (A_MINOR_MIX, 9, 30)]
    )


def test_bass_histogram_picks_the_tonic(c_major):
    tonic = KeyEstimator().tonic_from_bass(c_major)
    assert tonic.root == 0
    assert tonic.confidence == pytest.approx(0.75)
    assert tonic.minor_hint is None


def test_c_major(c_major):
    key = KeyEstimator().estimate(c_major)
    assert (key.root, key.minor, key.method) == (0, False, "bass")
    assert 0.0 < key.confidence <= 1.0
    assert key.label() == "C"


def test_a_minor(a_minor):
    key = KeyEstimator().estimate(a_minor)
    assert (key.root, key.minor, key.method) == (9, True, "bass")
    assert key.label() == "Am"


@pytest.mark.parametrize("shift", range(12))
@pytest.mark.parametrize("fixture_name", ["c_major", "a_minor"])
def test_key_follows_transposition(request, fixture_name, shift):
    feats = request.getfixturevalue(fixture_name)
    estimator = KeyEstimator()
    base = estimator.estimate(feats)
    moved = estimator.estimate(feats.transposed(shift))
    assert moved.root == (base.root + shift) % 12
    assert moved.minor == base.minor
    assert moved.confidence == pytest.approx(base.confidence)


def test_profile_fallback_without_bass(make_features, triads):
    feats = make_features([(triads["C"], -1, 40)])
    key = KeyEstimator().estimate(feats)
    assert (key.root, key.minor, key.method) == (0, False, "profile")
    # (6.35 + 4.38 + 5.19) / 3 / 10
    assert key.confidence == pytest.approx(0.5307, abs=1e-3)


def test_profile_key_follows_transposition(make_features, triads):
    feats = make_features([(triads["C"], -1, 40)])
    key = KeyEstimator().estimate(feats.transposed(5))
    assert (key.root, key.minor) == (5, False)


def test_empty_features_give_the_default_key(make_features):
    feats = make_features([])
    assert KeyEstimator().estimate(feats) == Key(0, False, 0.5, "default")


def test_intro_frames_are_ignored(make_features, triads):
    feats = make_features([(triads["G"], 7, 20), (C_MAJOR_MIX, 0, 60)])
    feats = replace(feats, intro_skip_frames=20)
    tonic = KeyEstimator().tonic_from_bass(feats)
    assert tonic.root == 0
    assert tonic.confidence == pytest.approx(1.0)
