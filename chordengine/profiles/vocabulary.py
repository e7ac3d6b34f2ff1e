import re
from typing import List, Optional, Tuple

NOTES_SHARP = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
NOTES_FLAT = ["C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B"]

MAJOR_SCALE = (0, 2, 4, 5, 7, 9, 11)
MINOR_SCALE = (0, 2, 3, 5, 7, 8, 10)

# triad suffix of each scale degree. the vocabulary has no diminished
# triad, so the diminished degree is spelled minor.
MAJOR_DEGREE_QUALITIES = ("", "m", "m", "", "", "m", "m")
MINOR_DEGREE_QUALITIES = ("m", "m", "", "m", "m", "", "")

# key roots spelled with flats
_FLAT_MAJOR_ROOTS = (5, 10, 3, 8, 1, 6, 11)
_FLAT_MINOR_ROOTS = (2, 7, 0, 5, 10, 3, 8)

_ROOT_RE = re.compile(r"^([A-G])(#|b)?")
_MINOR_RE = re.compile(r"m(?!aj)")


def to_pc(n: int) -> int:
    return int(n) % 12


def scale_of(minor: bool) -> Tuple[int, ...]:
    return MINOR_SCALE if minor else MAJOR_SCALE


def scale_pcs(root: int, minor: bool) -> List[int]:
    """the seven diatonic pitch classes of a key, tonic first."""
    return [to_pc(root + s) for s in scale_of(minor)]


def note_name(pc: int, key=None) -> str:
    """
    spell a pitch class the way the key would.

    flat keys (F, Bb, ... / Dm, Gm, ...) use flats; C major borrows flats
    for its usual modal-interchange roots (Bb, Eb, Ab).
    """
    pc = to_pc(pc)
    if key is None:
        return NOTES_SHARP[pc]
    if key.minor:
        use_flats = key.root in _FLAT_MINOR_ROOTS
    else:
        use_flats = key.root in _FLAT_MAJOR_ROOTS
    if key.root == 0 and not key.minor and pc in (10, 3, 8):
        use_flats = True
    return NOTES_FLAT[pc] if use_flats else NOTES_SHARP[pc]


def parse_root(label: Optional[str]) -> int:
    """pitch class of a label's leading root, -1 if it has none."""
    if not label or not isinstance(label, str):
        return -1
    m = _ROOT_RE.match(label)
    if not m:
        return -1
    note = m.group(1) + (m.group(2) or "")
    if note in NOTES_SHARP:
        return NOTES_SHARP.index(note)
    if note in NOTES_FLAT:
        return NOTES_FLAT.index(note)
    return -1


def root_name(label: str) -> str:
    m = _ROOT_RE.match(label or "")
    return m.group(0) if m else ""


def is_minor_label(label: str) -> bool:
    """a lowercase 'm' that is not the start of 'maj'."""
    return bool(_MINOR_RE.search(label.split("/")[0]))


def base_triad(label: str) -> str:
    """strip extensions and slash bass, keeping root and minor-ness."""
    root = root_name(label)
    return root + ("m" if is_minor_label(label) else "")


def chord_tones(label: str) -> List[int]:
    """intervals above the root that the label implies."""
    head = label.split("/")[0]
    if "sus2" in head:
        tones = [0, 2, 7]
    elif "sus4" in head:
        tones = [0, 5, 7]
    elif is_minor_label(head):
        tones = [0, 3, 7]
    else:
        tones = [0, 4, 7]
    if "maj7" in head:
        tones.append(11)
    elif "7" in head or re.search(r"(?<!add)9", head):
        tones.append(10)
    if "9" in head:
        tones.append(2)
    return tones


def has_seventh(label: str) -> bool:
    head = label.split("/")[0]
    return "7" in head or bool(re.search(r"(?<!add)9", head))


def in_key(pc: int, key_root: int, minor: bool) -> bool:
    """
    diatonic membership, widened by the degrees songs use most:
    the major V and leading tone in minor, II / bVI / bVII in major.
    """
    if to_pc(pc) in scale_pcs(key_root, minor):
        return True
    rel = to_pc(pc - key_root)
    if minor:
        return rel in (7, 11)
    return rel in (2, 10, 8)


def degree_quality(pc: int, key_root: int, minor: bool) -> Optional[str]:
    """triad suffix of a diatonic root, None if the root is not in the scale."""
    pcs = scale_pcs(key_root, minor)
    qualities = MINOR_DEGREE_QUALITIES if minor else MAJOR_DEGREE_QUALITIES
    pc = to_pc(pc)
    if pc in pcs:
        return qualities[pcs.index(pc)]
    return None


def nearest_diatonic(pc: int, key_root: int, minor: bool) -> int:
    best, best_dist = key_root, 99
    for d in scale_pcs(key_root, minor):
        dist = min(to_pc(pc - d), to_pc(d - pc))
        if dist < best_dist:
            best, best_dist = d, dist
    return best


def circle_of_fifths_distance(a: int, b: int) -> int:
    """steps between two pitch classes on the circle of fifths (0..6)."""
    # moving by a fifth is 7 semitones, and 7 is its own inverse mod 12
    dist = abs(to_pc(a * 7) - to_pc(b * 7))
    return 12 - dist if dist > 6 else dist
