import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .._internal.utils import Deadline
from ..result import TimelineEvent

T = TypeVar("T")


def segment_spans(
    events: Sequence[TimelineEvent], duration: float
) -> List[Tuple[float, float]]:
    """(start, end) of every event: it lasts until the next event or the end of the audio."""
    spans = []
    for i, ev in enumerate(events):
        end = events[i + 1].time if i + 1 < len(events) else duration
        spans.append((float(ev.time), float(end)))
    return spans


def slice_seconds(y: np.ndarray, sr: int, start: float, end: float) -> np.ndarray:
    i0 = max(0, int(np.floor(start * sr)))
    i1 = min(y.shape[-1], int(np.floor(end * sr)))
    return y[i0:max(i0, i1)]


def map_segments(
    fn: Callable[..., T], items: Sequence, workers: int, deadline: Optional[Deadline] = None
) -> List[T]:
    """
    applies `fn` to every item, over a thread pool when `workers` > 1; order
    is kept. the deadline is checked before each item.
    """
    deadline = deadline or Deadline()

    def run(item):
        deadline.check()
        return fn(item)

    if workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(run, items))
    return [run(item) for item in items]
