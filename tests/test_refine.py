import pytest

from chordengine.analysis.descriptors import (
    TimelineDescriptors, best_fitting_key, count_modulations, diatonic_ratio, modal_context,
    reestimate_key,
)
from chordengine.analysis.refine import TimelineRefiner, annotate_modal_context, merge_duplicates
from chordengine.config import AnalysisOptions, HarmonyMode
from chordengine.detection.tracker import ChordTracker
from chordengine.profiles.vocabulary import parse_root
from chordengine.result import Key, TimelineEvent

C_MAJOR = Key(0, False, 0.9, "bass")
A_MINOR = Key(9, True, 0.9, "bass")


def _events(*pairs):
    return [TimelineEvent(time=fi * 0.1, label=label, frame_index=fi) for fi, label in pairs]


def _refine(events, feats, key=C_MAJOR, bpm=120.0, **options):
    duration = feats.n_frames * feats.hop / float(feats.sr)
    return TimelineRefiner(AnalysisOptions(**options)).refine(events, feats, key, bpm, duration)


@pytest.fixture
def progression(make_features, triads):
    feats = make_features([(triads[c], -1, 20) for c in ("C", "G", "Am", "F")])
    raw = ChordTracker().track(feats, C_MAJOR)
    return feats, raw


def test_progression_survives_refinement(progression):
    feats, raw = progression
    refined = _refine(raw, feats)
    assert [e.label for e in refined] == ["C", "G", "Am", "F"]
    assert [e.time for e in refined] == pytest.approx([0.0, 2.0, 4.0, 6.0])
    assert all(e.original_label == e.label for e in refined)


def test_refinement_is_idempotent(progression):
    feats, raw = progression
    once = _refine(raw, feats)
    twice = _refine(once, feats)
    assert [(e.time, e.label) for e in twice] == [(e.time, e.label) for e in once]


def test_times_are_monotonic_and_labels_parse(progression):
    feats, raw = progression
    duration = feats.n_frames * 0.1
    refined = _refine(raw, feats)
    times = [e.time for e in refined]
    assert times == sorted(times)
    assert all(0.0 <= t <= duration for t in times)
    assert all(0 <= parse_root(e.label) <= 11 for e in refined)


def test_inversion_from_the_bass(make_features):
    feats = make_features([({0: 0.3, 4: 0.4, 7: 0.3}, 4, 40)])
    refined = _refine(_events((0, "C")), feats)
    assert [e.label for e in refined] == ["C/E"]


def test_no_inversion_for_a_foreign_bass(make_features):
    feats = make_features([({0: 0.3, 4: 0.4, 7: 0.3}, 2, 40)])
    assert [e.label for e in _refine(_events((0, "C")), feats)] == ["C"]


def test_short_off_key_blip_is_dropped(make_features, triads):
    # past the opening window, so the blip is not respelled first
    feats = make_features(
        [(triads["C"], -1, 200), ({6: 1, 10: 1, 1: 1}, -1, 3), (triads["G"], -1, 57)]
    )
    events = _events((0, "C"), (200, "F#"), (203, "G"))
    assert [e.label for e in _refine(events, feats)] == ["C", "G"]


def test_opening_chords_are_made_diatonic(make_features, triads):
    feats = make_features([(triads["C"], -1, 40), (triads["G"], -1, 40)])
    events = _events((0, "Cm"), (40, "G"))
    assert [e.label for e in _refine(events, feats)] == ["C", "G"]


def test_duplicates_merge_after_respelling(make_features, triads):
    feats = make_features([(triads["C"], -1, 40), (triads["G"], -1, 40)])
    events = _events((0, "C"), (20, "C7"), (40, "G"))
    refined = _refine(events, feats)
    assert [(e.frame_index, e.label) for e in refined] == [(0, "C"), (40, "G")]


def test_dominant_seventh_by_harmony_mode(make_features):
    feats = make_features([({7: 0.3, 11: 0.25, 2: 0.25, 5: 0.2}, -1, 30)])
    events = _events((0, "G"))
    assert _refine(events, feats)[0].label == "G7"
    assert _refine(events, feats, harmony_mode=HarmonyMode.BASIC)[0].label == "G"
    assert _refine(events, feats, harmony_mode="pro")[0].label == "G7"


def test_ninth_in_pro_mode(make_features):
    feats = make_features([({7: 0.25, 11: 0.15, 2: 0.1, 5: 0.2, 9: 0.3}, -1, 30)])
    events = _events((0, "G"))
    assert _refine(events, feats)[0].label == "G7"
    assert _refine(events, feats, harmony_mode="pro")[0].label == "G9"


def test_suspended_fourth(make_features):
    feats = make_features([({0: 0.35, 5: 0.3, 7: 0.35}, -1, 30)])
    assert _refine(_events((0, "C")), feats)[0].label == "Csus4"


def test_major_seventh(make_features):
    feats = make_features([({5: 0.3, 9: 0.2, 0: 0.25, 4: 0.25}, -1, 30)])
    assert _refine(_events((0, "F")), feats)[0].label == "Fmaj7"


def test_merge_duplicates_keeps_the_first():
    events = _events((0, "C"), (5, "C"), (10, "G"), (15, "G"), (20, "C"))
    merged = merge_duplicates(events)
    assert [(e.frame_index, e.label) for e in merged] == [(0, "C"), (10, "G"), (20, "C")]


@pytest.mark.parametrize(
    "label, nxt, key, expected",
    [
        ("A7", "Dm", C_MAJOR, "secondary_dominant"),
        ("G7", "C", C_MAJOR, None),
        ("Bb", None, C_MAJOR, "borrowed_bVII"),
        ("Ab", None, C_MAJOR, "borrowed_bVI"),
        ("Fm", None, C_MAJOR, "borrowed_iv"),
        ("Eb", None, C_MAJOR, "borrowed_bIII"),
        ("Db", None, C_MAJOR, "neapolitan"),
        ("D", None, A_MINOR, "borrowed_IV_major"),
        ("Am", None, C_MAJOR, None),
    ],
)
def test_modal_context(label, nxt, key, expected):
    assert modal_context(label, nxt, key) == expected


def test_annotation_uses_the_next_chord():
    events = annotate_modal_context(_events((0, "E7"), (10, "Am")), C_MAJOR)
    assert events[0].modal_context == "secondary_dominant"
    assert events[1].modal_context is None


def test_key_reestimation():
    labels = ["F#", "C#", "D#m", "B", "F#", "C#", "D#m", "G#m"]
    events = [TimelineEvent(time=i, label=l, frame_index=i * 10) for i, l in enumerate(labels)]
    assert diatonic_ratio(labels, 0, False) == pytest.approx(0.25)
    better = reestimate_key(events, C_MAJOR)
    assert better is not None
    assert better.method == "reestimated"
    assert diatonic_ratio(labels, better.root, better.minor) == pytest.approx(1.0)
    assert better.confidence == pytest.approx(1.0)


def test_fitting_timeline_keeps_its_key():
    events = _events((0, "C"), (10, "F"), (20, "G"), (30, "Am"))
    assert reestimate_key(events, C_MAJOR) is None
    assert best_fitting_key([]) == (0, False, 1.0)


def test_modulation_count():
    first = ["C", "F", "G", "Am", "Dm", "G", "C"]
    last = ["E", "B", "F#m", "C#m", "E", "B", "F#m"]
    labels = first + first + last
    events = [TimelineEvent(time=i, label=l, frame_index=i) for i, l in enumerate(labels)]
    assert count_modulations(events, C_MAJOR) == 1
    assert count_modulations(events[:10], C_MAJOR) == 0


def test_descriptors():
    events = annotate_modal_context(
        _events((0, "C"), (10, "C/E"), (20, "A7"), (30, "Dm7"), (40, "Bb"), (50, "Gsus4")),
        C_MAJOR,
    )
    stats = TimelineDescriptors().compute(events, C_MAJOR)
    assert stats["total_chords"] == 6
    assert stats["inversions"] == 1
    assert stats["extensions"] == 3
    assert stats["secondary_dominants"] == 1
    assert stats["modal_borrowings"] == 1
    assert stats["modulations"] == 0
    assert stats["in_key_ratio"] == pytest.approx(1.0)
    assert stats["chord_histogram"]["C"] == 1
