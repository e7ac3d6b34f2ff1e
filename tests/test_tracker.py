import numpy as np
import pytest

from chordengine.detection.tracker import ChordTracker, backtrack, collapse, transition_cost
from chordengine.profiles.templates import build_candidates
from chordengine.result import Key

C_MAJOR = Key(0, False, 0.9, "bass")
A_MINOR = Key(9, True, 0.9, "bass")


def _by_label(candidates):
    return {c.label: c for c in candidates}


def test_major_key_candidates():
    cands = build_candidates(C_MAJOR)
    labels = [c.label for c in cands]
    assert len(cands) == 17
    assert len(set(labels)) == len(labels)
    assert labels[0] == "C"
    by = _by_label(cands)
    assert not by["C"].borrowed and by["Cm"].borrowed
    assert not by["Dm"].borrowed and by["D"].borrowed
    # the diminished degree accepts either quality
    assert not by["B"].borrowed and not by["Bm"].borrowed
    for label in ("Bb", "Ab", "Eb", "Fm"):
        assert by[label].borrowed


def test_minor_key_candidates():
    cands = build_candidates(A_MINOR)
    labels = [c.label for c in cands]
    assert len(cands) == 15
    assert labels[:2] == ["A", "Am"]
    by = _by_label(cands)
    assert by["G#"].borrowed
    assert by["E"].borrowed and not by["Em"].borrowed
    assert by["A"].borrowed


def test_candidate_templates():
    by = _by_label(build_candidates(C_MAJOR))
    np.testing.assert_array_equal(np.flatnonzero(by["Am"].template), [0, 4, 9])
    assert by["G"].tones == [7, 11, 2]


def test_transition_costs():
    by = _by_label(build_candidates(C_MAJOR))
    assert transition_cost(by["C"], by["C"], C_MAJOR) == 0.0
    # 0.4 + 0.08 - 0.12 - 0.08 (a fifth up)
    assert transition_cost(by["C"], by["G"], C_MAJOR) == pytest.approx(0.28)
    # 0.4 + 0.08 - 0.12 - 0.15 (V -> I)
    assert transition_cost(by["G"], by["C"], C_MAJOR) == pytest.approx(0.21)
    # 0.4 + 0.08 + 0.05 - 0.12 - 0.12 (ii -> V)
    assert transition_cost(by["Dm"], by["G"], C_MAJOR) == pytest.approx(0.29)
    assert transition_cost(by["Bb"], by["Ab"], C_MAJOR) > transition_cost(by["F"], by["G"], C_MAJOR)


def test_transition_costs_are_never_negative():
    tracker = ChordTracker()
    for key in (C_MAJOR, A_MINOR):
        cost = tracker.transition_costs(build_candidates(key), key)
        assert np.all(cost >= 0)
        assert np.all(np.diag(cost) == 0)


def test_single_template_decodes_to_one_event(make_features, triads):
    feats = make_features([(triads["G"], -1, 50)])
    events = ChordTracker().track(feats, C_MAJOR)
    assert len(events) == 1
    assert events[0].label == "G"
    assert events[0].time == 0.0


def test_chord_changes_are_tracked(make_features, triads):
    feats = make_features([(triads[c], -1, 20) for c in ("C", "G", "Am", "F")])
    events = ChordTracker().track(feats, C_MAJOR)
    assert [e.label for e in events] == ["C", "G", "Am", "F"]
    assert [e.frame_index for e in events] == [0, 20, 40, 60]
    assert [e.time for e in events] == pytest.approx([0.0, 2.0, 4.0, 6.0])


def test_bass_breaks_a_template_tie(make_features):
    feats = make_features([({0: 0.4, 4: 0.4, 7: 0.1, 9: 0.1}, 9, 3)])
    cands = build_candidates(C_MAJOR)
    scores = ChordTracker().emission_scores(feats, cands)
    idx = {c.label: i for i, c in enumerate(cands)}
    assert np.all(scores[:, idx["Am"]] > scores[:, idx["C"]])


def test_dissimilar_candidates_are_rejected(make_features, triads):
    feats = make_features([(triads["C"], -1, 2)])
    cands = build_candidates(C_MAJOR)
    scores = ChordTracker().emission_scores(feats, cands)
    idx = {c.label: i for i, c in enumerate(cands)}
    # no shared tone with C-E-G
    assert np.all(np.isneginf(scores[:, idx["D"]]))
    assert np.all(np.isfinite(scores[:, idx["C"]]))


def test_backtrack_survives_corrupted_pointers():
    final = np.array([0.0, 5.0, 1.0])
    backptr = np.full((4, 3), -1, dtype=np.int64)
    backptr[2, 1] = 99
    backptr[1, 0] = 2
    states = backtrack(final, backptr)
    np.testing.assert_array_equal(states, [2, 0, 1, 1])


def test_beam_restarts_after_an_impossible_frame():
    emission = np.array([[1.0, 0.0], [-np.inf, -np.inf], [0.0, 1.0]])
    states = ChordTracker().decode(emission, np.zeros((2, 2)))
    np.testing.assert_array_equal(states, [0, 0, 1])


def test_narrow_beam_still_decodes(make_features, triads):
    feats = make_features([(triads[c], -1, 10) for c in ("C", "F", "G", "C")])
    events = ChordTracker(beam_width=1).track(feats, C_MAJOR)
    assert [e.label for e in events] == ["C", "F", "G", "C"]


def test_empty_input():
    tracker = ChordTracker()
    assert tracker.decode(np.zeros((0, 17)), np.zeros((17, 17))).shape == (0,)


def test_collapse_runs():
    cands = build_candidates(C_MAJOR)
    events = collapse([0, 0, 1, 1, 0], cands, hop=2205, sr=22050)
    assert [(e.frame_index, e.label) for e in events] == [(0, "C"), (2, "Cm"), (4, "C")]
    assert events[1].time == pytest.approx(0.2)
