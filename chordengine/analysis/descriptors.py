import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .. import config
from ..profiles.vocabulary import (
    has_seventh, in_key, is_minor_label, parse_root, scale_pcs, to_pc
)
from ..result import Key, TimelineEvent

logger = logging.getLogger(__name__)

# every (root, minor) pair, major first for each root
ALL_KEYS: Tuple[Tuple[int, bool], ...] = tuple(
    (root, minor) for root in range(12) for minor in (False, True)
)


def diatonic_ratio(labels: Sequence[str], key_root: int, minor: bool) -> float:
    """share of labels whose root counts as in key; 1.0 for no labels."""
    roots = [parse_root(label) for label in labels]
    roots = [r for r in roots if r >= 0]
    if not roots:
        return 1.0
    return sum(1 for r in roots if in_key(r, key_root, minor)) / float(len(roots))


def best_fitting_key(labels: Sequence[str]) -> Tuple[int, bool, float]:
    """the (root, minor) with the highest diatonic ratio; the first one wins ties."""
    best = (0, False, -1.0)
    for root, minor in ALL_KEYS:
        ratio = diatonic_ratio(labels, root, minor)
        if ratio > best[2]:
            best = (root, minor, ratio)
    return best


def reestimate_key(
    events: Sequence[TimelineEvent],
    key: Key,
    min_ratio: float = config.KEY_FIT_MIN_RATIO,
    improvement: float = config.KEY_FIT_IMPROVEMENT,
) -> Optional[Key]:
    """
    a better key for a timeline that does not fit its own, or None.

    only used when fewer than `min_ratio` of the chords are in key, and the
    replacement must beat the current ratio by more than `improvement`.
    """
    labels = [ev.label for ev in events]
    current = diatonic_ratio(labels, key.root, key.minor)
    if current >= min_ratio:
        return None
    root, minor, ratio = best_fitting_key(labels)
    if ratio - current > improvement:
        logger.info(
            "chords fit key %d/%s at %.2f only; re-estimated to %d/%s (%.2f)",
            key.root, "minor" if key.minor else "major", current,
            root, "minor" if minor else "major", ratio,
        )
        return Key(root=root, minor=minor, confidence=ratio, method="reestimated")
    return None


def count_modulations(events: Sequence[TimelineEvent], key: Key) -> int:
    """
    how many of the timeline's three sections move to a new key.

    a section modulates when it fits the running key below KEY_FIT_MIN_RATIO
    and some other key fits it better by more than KEY_FIT_IMPROVEMENT.
    """
    if len(events) < config.MODULATION_MIN_EVENTS:
        return 0
    labels = [ev.label for ev in events]
    third = len(labels) // 3
    sections = (labels[:third], labels[third : 2 * third], labels[2 * third :])
    count = 0
    last_root, last_minor = key.root, key.minor
    for section in sections:
        if not section:
            continue
        ratio = diatonic_ratio(section, last_root, last_minor)
        if ratio >= config.KEY_FIT_MIN_RATIO:
            continue
        best_ratio = ratio
        new_key = None
        for root, minor in ALL_KEYS:
            r = diatonic_ratio(section, root, minor)
            if r > best_ratio + config.KEY_FIT_IMPROVEMENT:
                best_ratio = r
                new_key = (root, minor)
        if new_key is not None:
            count += 1
            last_root, last_minor = new_key
    return count


def _is_dominant_seventh(label: str) -> bool:
    head = label.split("/")[0]
    return has_seventh(head) and "maj7" not in head and not is_minor_label(head)


def modal_context(label: str, next_label: Optional[str], key: Key) -> Optional[str]:
    root = parse_root(label)
    if root < 0:
        return None
    rel = to_pc(root - key.root)
    minor = is_minor_label(label)

    if _is_dominant_seventh(label) and next_label:
        # resolution a fifth down onto a diatonic root that is not the key's own V7
        target = to_pc(root + 5)
        if (
            parse_root(next_label) == target
            and target in scale_pcs(key.root, key.minor)
            and rel != 7
        ):
            return "secondary_dominant"

    if not key.minor:
        if rel == 8 and not minor:
            return "borrowed_bVI"
        if rel == 10 and not minor:
            return "borrowed_bVII"
        if rel == 5 and minor:
            return "borrowed_iv"
        if rel == 3 and not minor:
            return "borrowed_bIII"
    elif rel == 5 and not minor:
        return "borrowed_IV_major"

    if rel == 1 and not minor:
        return "neapolitan"
    return None


class TimelineDescriptors:
    """
    summary numbers for a refined chord timeline:
      - total_chords, inversions, extensions
      - modal_borrowings and secondary_dominants
      - modulations (three-section key-fit check)
      - in_key_ratio and the most common chords
    """

    def compute(self, events: Sequence[TimelineEvent], key: Key) -> Dict[str, Any]:
        labels: List[str] = [ev.label for ev in events]
        contexts = Counter(ev.modal_context for ev in events if ev.modal_context)
        heads = [label.split("/")[0] for label in labels]
        return {
            "total_chords": len(labels),
            "inversions": sum(1 for label in labels if "/" in label),
            "extensions": sum(
                1 for h in heads if any(tag in h for tag in ("7", "9", "sus", "add"))
            ),
            "modal_borrowings": sum(
                n for ctx, n in contexts.items() if ctx != "secondary_dominant"
            ),
            "secondary_dominants": contexts.get("secondary_dominant", 0),
            "modulations": count_modulations(events, key),
            "in_key_ratio": round(diatonic_ratio(labels, key.root, key.minor), 4),
            "chord_histogram": dict(Counter(labels).most_common()),
        }
