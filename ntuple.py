"""
N-tuple network value function.

Four disjoint 2x2 patterns cover the board. Every pattern is evaluated on the
eight symmetric variants of the board against one shared table, so each table
learns a quadrant shape once for the whole symmetry class.
"""

from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from game_2048 import Board, MAX_RANK
from weights import WeightStore


# Quadrants: top-left, top-right, bottom-left, bottom-right
PATTERNS: Tuple[Tuple[int, ...], ...] = (
    (0, 1, 4, 5),
    (2, 3, 6, 7),
    (8, 9, 12, 13),
    (10, 11, 14, 15),
)


def feature_index(board: Board, pattern: Sequence[int], size: int) -> Optional[int]:
    """
    Base-16 index of the ranks under a pattern.

    Ranks are capped at 15. Accumulation stops as soon as the index reaches the
    table size.

    Returns:
        Index into a table of the given size, or None if it does not fit
    """
    index = 0
    multiplier = 1
    for pos in pattern:
        index += min(board[pos], MAX_RANK) * multiplier
        multiplier *= 16
        if index >= size:
            break
    return index if index < size else None


def isomorphisms(board: Board) -> List[Board]:
    """The 8 dihedral variants: identity, 3 rotations, then each mirrored."""
    rotations = [board, board.rotate_clockwise(), board.reverse(), board.rotate_counterclockwise()]
    return rotations + [b.reflect_horizontal() for b in rotations]


class NTupleNetwork:
    """Pattern evaluator bound to a WeightStore (pattern i reads table i)."""

    def __init__(self, weights: WeightStore, patterns: Sequence[Sequence[int]] = PATTERNS):
        self.weights = weights
        self.patterns = [tuple(p) for p in patterns]

    def bound_tables(self) -> Iterator[Tuple[int, Tuple[int, ...], np.ndarray]]:
        """(table index, pattern, table) for every pattern that has a non-empty table."""
        for i in range(min(len(self.patterns), len(self.weights))):
            table = self.weights[i]
            if table.size == 0:
                continue
            yield i, self.patterns[i], table

    @staticmethod
    def evaluate_pattern(board: Board, pattern: Sequence[int], table: np.ndarray) -> float:
        index = feature_index(board, pattern, table.size)
        if index is None:
            return 0.0
        return float(table[index])

    def evaluate(self, board: Board) -> float:
        if len(self.weights) == 0:
            return 0.0

        variants = isomorphisms(board)
        value = 0.0
        for _, pattern, table in self.bound_tables():
            for variant in variants:
                value += self.evaluate_pattern(variant, pattern, table)
        return value
