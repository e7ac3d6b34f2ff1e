from typing import List, Tuple

import numpy as np

from ..result import ChordCandidate, Key
from .vocabulary import note_name, scale_of, to_pc

# (semitones above tonic, quality) of the modal-interchange chords
MAJOR_KEY_BORROWED: Tuple[Tuple[int, str], ...] = (
    (10, "major"),  # bVII
    (8, "major"),   # bVI
    (3, "major"),   # bIII
    (5, "minor"),   # iv
)
MINOR_KEY_BORROWED: Tuple[Tuple[int, str], ...] = (
    (7, "major"),   # V
    (5, "major"),   # IV
    (11, "major"),  # VII (leading tone)
    (0, "major"),   # picardy tonic
)

# triad quality expected on each scale degree; None accepts either
# (the diminished degree has no triad of its own in the vocabulary)
_MAJOR_KEY_DEGREES = ("major", "minor", "minor", "major", "major", "minor", None)
_MINOR_KEY_DEGREES = ("minor", None, "major", "minor", "minor", "major", "major")


def _make(root: int, quality: str, key: Key, borrowed: bool) -> ChordCandidate:
    label = note_name(root, key) + ("m" if quality == "minor" else "")
    return ChordCandidate(root=to_pc(root), quality=quality, label=label, borrowed=borrowed)


def build_candidates(key: Key) -> List[ChordCandidate]:
    """
    the chord vocabulary for one key.

    both qualities of every scale degree come first, in scale order; only
    the one matching the degree is diatonic, the other counts as borrowed.
    the key's fixed borrowed chords follow. labels are unique, the first
    occurrence wins, so the tonic triad is always candidate 0 or 1.
    """
    degrees = _MINOR_KEY_DEGREES if key.minor else _MAJOR_KEY_DEGREES
    out: List[ChordCandidate] = []
    seen = set()

    def add(cand: ChordCandidate):
        if cand.label not in seen:
            seen.add(cand.label)
            out.append(cand)

    for step, expected in zip(scale_of(key.minor), degrees):
        root = to_pc(key.root + step)
        for quality in ("major", "minor"):
            add(_make(root, quality, key, borrowed=expected is not None and quality != expected))

    for step, quality in MINOR_KEY_BORROWED if key.minor else MAJOR_KEY_BORROWED:
        add(_make(key.root + step, quality, key, borrowed=True))
    return out


def template_matrix(candidates: List[ChordCandidate]) -> np.ndarray:
    """(n_candidates, 12) binary triad templates."""
    if not candidates:
        return np.zeros((0, 12))
    return np.stack([c.template for c in candidates])
