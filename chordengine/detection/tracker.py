import logging
import numpy as np
import numba
from typing import List, Optional, Sequence

from .. import config
from ..profiles.templates import build_candidates, template_matrix
from ..profiles.vocabulary import circle_of_fifths_distance, scale_pcs, to_pc
from ..result import ChordCandidate, FrameFeatures, Key, TimelineEvent

logger = logging.getLogger(__name__)


@numba.njit(cache=True, nogil=True)
def _beam_viterbi(emission, cost, beam_width):
    """
    beam-pruned viterbi over (n_frames, n_states) emission scores.

    only the `beam_width` best finite states of the previous frame are
    considered as predecessors. when no previous state is finite the
    search restarts from state 0 with score 0.

    returns the final frame scores and the (n_frames, n_states) backpointers
    (-1 where no predecessor was recorded).
    """
    n_frames, n_states = emission.shape
    backptr = np.full((n_frames, n_states), -1, dtype=np.int64)
    dp = emission[0].copy()
    new_dp = np.empty(n_states)
    beam_idx = np.empty(n_states, dtype=np.int64)
    beam_score = np.empty(n_states)

    for i in range(1, n_frames):
        order = np.argsort(-dp, kind="mergesort")
        n_beam = 0
        for j in order:
            if n_beam >= beam_width:
                break
            if dp[j] > -np.inf:
                beam_idx[n_beam] = j
                beam_score[n_beam] = dp[j]
                n_beam += 1
        if n_beam == 0:
            beam_idx[0] = 0
            beam_score[0] = 0.0
            n_beam = 1

        for s in range(n_states):
            best_val = -np.inf
            best_j = beam_idx[0]
            for b in range(n_beam):
                val = beam_score[b] - cost[beam_idx[b], s]
                if val > best_val:
                    best_val = val
                    best_j = beam_idx[b]
            e = emission[i, s]
            new_dp[s] = best_val + e if e > -np.inf else -np.inf
            backptr[i, s] = best_j
        dp[:] = new_dp
    return dp, backptr


def backtrack(final_scores: np.ndarray, backptr: np.ndarray) -> np.ndarray:
    """
    best state path from the final scores and backpointers.

    a missing pointer (-1) keeps the current state; an out-of-range one
    falls back to state 0.
    """
    n_frames, n_states = backptr.shape
    states = np.zeros(n_frames, dtype=np.int64)
    if n_frames == 0:
        return states
    best = 0
    for s in range(1, n_states):
        if final_scores[s] > final_scores[best]:
            best = s
    states[-1] = best
    for i in range(n_frames - 1, 0, -1):
        ptr = int(backptr[i, states[i]])
        if ptr < 0:
            ptr = int(states[i])
        elif ptr >= n_states:
            ptr = 0
        states[i - 1] = ptr
    return states


def collapse(
    states: Sequence[int], candidates: Sequence[ChordCandidate], hop: int, sr: int
) -> List[TimelineEvent]:
    """one event at the first frame of every run of identical states."""
    events: List[TimelineEvent] = []
    prev = None
    for i, s in enumerate(states):
        if s != prev:
            label = candidates[int(s)].label
            events.append(TimelineEvent(time=i * hop / float(sr), label=label, frame_index=i))
            prev = s
    return events


class ChordTracker:
    """
    key-constrained chord decoding.

    every frame is scored against the triad templates of the key's
    vocabulary and the best path through them is found with a beam
    search, so a change of chord has to pay its transition cost.
    """

    def __init__(
        self,
        bass_multiplier: float = 1.2,
        beam_width: int = config.DEFAULT_BEAM_WIDTH,
    ):
        self.bass_multiplier = bass_multiplier
        self.beam_width = max(1, int(beam_width))

    def emission_scores(
        self, features: FrameFeatures, candidates: Sequence[ChordCandidate]
    ) -> np.ndarray:
        """(n_frames, n_candidates) emission scores; -inf marks a rejected candidate."""
        templates = template_matrix(list(candidates))
        chroma = features.chroma
        c_norm = np.linalg.norm(chroma, axis=1)
        c_norm[c_norm == 0] = 1.0
        t_norm = np.linalg.norm(templates, axis=1)
        t_norm[t_norm == 0] = 1.0
        sims = (chroma @ templates.T) / (c_norm[:, None] * t_norm[None, :])

        borrowed = np.array([c.borrowed for c in candidates], dtype=bool)
        scores = sims + np.where(borrowed, -config.BORROWED_PENALTY, config.DIATONIC_BONUS)[None, :]

        bass = features.bass_pc
        mult = self.bass_multiplier
        roots = np.array([c.root for c in candidates])
        tone_mask = templates.astype(bool)
        has_bass = bass >= 0
        safe_bass = np.where(has_bass, bass, 0)
        is_root = has_bass[:, None] & (safe_bass[:, None] == roots[None, :])
        is_tone = has_bass[:, None] & tone_mask[:, safe_bass].T
        bass_adj = np.where(
            is_root,
            config.BASS_ROOT_BONUS * mult,
            np.where(is_tone, config.BASS_TONE_BONUS * mult, -config.BASS_FOREIGN_PENALTY * mult),
        )
        scores = scores + np.where(has_bass[:, None], bass_adj, 0.0)

        low = features.energy < features.percentile(30)
        scores = scores - np.where(low, config.LOW_ENERGY_PENALTY, 0.0)[:, None]
        scores[sims < config.MIN_TEMPLATE_SIMILARITY] = -np.inf
        return scores

    def transition_costs(self, candidates: Sequence[ChordCandidate], key: Key) -> np.ndarray:
        n = len(candidates)
        cost = np.zeros((n, n))
        for i, a in enumerate(candidates):
            for j, b in enumerate(candidates):
                cost[i, j] = transition_cost(a, b, key)
        return cost

    def decode(
        self, emission: np.ndarray, cost: np.ndarray, beam_width: Optional[int] = None
    ) -> np.ndarray:
        if emission.shape[0] == 0:
            return np.zeros(0, dtype=np.int64)
        width = self.beam_width if beam_width is None else beam_width
        final, backptr = _beam_viterbi(
            np.ascontiguousarray(emission, dtype=np.float64),
            np.ascontiguousarray(cost, dtype=np.float64),
            int(width),
        )
        return backtrack(final, backptr)

    def track(self, features: FrameFeatures, key: Key) -> List[TimelineEvent]:
        candidates = build_candidates(key)
        if features.n_frames == 0:
            return []
        emission = self.emission_scores(features, candidates)
        cost = self.transition_costs(candidates, key)
        states = self.decode(emission, cost)
        events = collapse(states, candidates, features.hop, features.sr)
        logger.debug(
            "decoded %d frames over %d candidates into %d events",
            features.n_frames, len(candidates), len(events),
        )
        return events


def transition_cost(a: ChordCandidate, b: ChordCandidate, key: Key) -> float:
    """cost of moving from chord a to chord b inside `key`, never negative."""
    if a.label == b.label:
        return 0.0
    cost = config.TRANSITION_BASE + config.TRANSITION_PER_FIFTH * circle_of_fifths_distance(
        a.root, b.root
    )
    if a.quality != b.quality:
        cost += config.TRANSITION_QUALITY_CHANGE

    if not a.borrowed and not b.borrowed:
        cost -= config.TRANSITION_BOTH_DIATONIC
    elif a.borrowed and b.borrowed:
        cost += config.TRANSITION_BOTH_BORROWED
    else:
        cost += config.TRANSITION_ONE_BORROWED

    scale = scale_pcs(key.root, key.minor)
    tonic, supertonic, subdominant, dominant = scale[0], scale[1], scale[3], scale[4]
    if a.root == dominant and b.root == tonic:
        cost -= config.CADENCE_V_I
    elif a.root == subdominant and b.root == dominant:
        cost -= config.CADENCE_IV_V
    elif a.root == supertonic and b.root == dominant:
        cost -= config.CADENCE_II_V
    elif a.root == subdominant and b.root == tonic:
        cost -= config.CADENCE_IV_I

    if to_pc(b.root - a.root) == 7:
        cost -= config.FIFTH_UP_BONUS
    return max(0.0, cost)
