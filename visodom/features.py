"""Keypoints, descriptor matches and match filtering."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

# Matches farther than twice the best distance are rejected, but never below this.
MIN_DISTANCE_FLOOR = 30.0


@dataclass(frozen=True)
class KeyPoint:
    """A detected image feature."""

    x: float
    y: float
    size: float = 7.0
    angle: float = -1.0
    response: float = 0.0

    @property
    def pt(self) -> np.ndarray:
        return np.array([self.x, self.y])


@dataclass(frozen=True)
class DMatch:
    """A match between descriptor ``query_idx`` of one set and ``train_idx`` of another."""

    query_idx: int
    train_idx: int
    distance: float


def min_max_distance(matches: Iterable[DMatch]) -> tuple[float, float]:
    """Smallest and largest distance among the matches."""
    distances = [m.distance for m in matches]
    if not distances:
        raise ValueError("no matches")
    return min(distances), max(distances)


def filter_matches(matches: Sequence[DMatch]) -> list[DMatch]:
    """Keep matches within ``max(2 * min_distance, 30)``."""
    if not matches:
        return []
    min_dist, _ = min_max_distance(matches)
    threshold = max(2.0 * min_dist, MIN_DISTANCE_FLOOR)
    return [m for m in matches if m.distance <= threshold]