"""
2048 Board Engine and Gymnasium Environment
This module provides the board representation used by the strategic TD(λ) agent:
rank grid, placements, slides with merge scoring, the dihedral symmetry transforms,
and the special-rule queries (two 8192 tiles, danger level).
"""

import numpy as np
import gymnasium as gym
from gymnasium import spaces
from dataclasses import dataclass
from typing import ClassVar, Dict, Any, List, Optional, Tuple, Union


# Returned by place/slide when the action does not change the board
ILLEGAL = -1

# Slide directions, in the order every scan over them uses
UP, RIGHT, DOWN, LEFT = 0, 1, 2, 3
DIRECTIONS = (UP, RIGHT, DOWN, LEFT)
DIRECTION_NAMES = ("UP", "RIGHT", "DOWN", "LEFT")

# Rank 13 is the 8192 tile; two of them end the game as a "win"
TARGET_RANK = 13
NEAR_TARGET_RANK = TARGET_RANK - 1

MAX_RANK = 15


class Board:
    """
    4x4 board of tile ranks.

    index (1-d form):
         (0)  (1)  (2)  (3)
         (4)  (5)  (6)  (7)
         (8)  (9) (10) (11)
        (12) (13) (14) (15)

    A cell holds 0 when empty, or k for a tile of value 2^k.
    place/slide mutate the board; every symmetry transform returns a new board.
    """

    def __init__(self, tiles: Optional[Union[np.ndarray, List]] = None):
        if tiles is None:
            self.tiles: np.ndarray = np.zeros((4, 4), dtype=np.int32)
        else:
            self.tiles = np.array(tiles, dtype=np.int32).reshape(4, 4)

    @classmethod
    def from_values(cls, values: Union[np.ndarray, List]) -> "Board":
        """
        Build a board from displayed tile values (0, 2, 4, 8, ...).

        Args:
            values: 16 values, flat or 4x4

        Returns:
            Board holding the log2 ranks of the values
        """
        flat = np.array(values, dtype=np.int64).reshape(-1)
        ranks = [int(v).bit_length() - 1 if v > 0 else 0 for v in flat]
        return cls(ranks)

    def copy(self) -> "Board":
        return Board(self.tiles)

    def __getitem__(self, pos: int) -> int:
        return int(self.tiles[pos // 4, pos % 4])

    def __setitem__(self, pos: int, rank: int) -> None:
        self.tiles[pos // 4, pos % 4] = rank

    def __iter__(self):
        return iter(self.tiles.reshape(-1).tolist())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Board):
            return NotImplemented
        return bool(np.array_equal(self.tiles, other.tiles))

    def __hash__(self) -> int:
        return hash(self.tiles.tobytes())

    def __repr__(self) -> str:
        return f"Board({self.tiles.tolist()})"

    def __str__(self) -> str:
        lines = ["+------------------------+"]
        for row in self.tiles.tolist():
            lines.append("|" + "".join(f"{(1 << t) if t else 0:>6}" for t in row) + "|")
        lines.append("+------------------------+")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def place(self, pos: int, tile: int) -> int:
        """
        Place a tile (rank 1 or 2) on an empty cell.

        Returns:
            0 if the placement is valid, ILLEGAL otherwise
        """
        if pos < 0 or pos >= 16 or self[pos] != 0:
            return ILLEGAL
        if tile != 1 and tile != 2:
            return ILLEGAL
        self[pos] = tile
        return 0

    def slide(self, direction: int) -> int:
        """
        Slide all tiles in a direction and merge equal neighbours.

        Args:
            direction: 0=up, 1=right, 2=down, 3=left

        Returns:
            Merge score, or ILLEGAL if the board would not change
        """
        op = direction & 0b11
        if op == UP:
            return self.slide_up()
        if op == RIGHT:
            return self.slide_right()
        if op == DOWN:
            return self.slide_down()
        return self.slide_left()

    @staticmethod
    def _merge_line(line: List[int]) -> Tuple[List[int], int]:
        """Compact a line toward its start, merging equal adjacent ranks once."""
        merged = []
        score = 0
        hold = 0
        for tile in line:
            if tile == 0:
                continue
            if hold:
                if tile == hold:
                    merged.append(hold + 1)
                    score += 1 << (hold + 1)
                    hold = 0
                else:
                    merged.append(hold)
                    hold = tile
            else:
                hold = tile
        if hold:
            merged.append(hold)
        return merged + [0] * (4 - len(merged)), score

    def slide_left(self) -> int:
        rows = []
        score = 0
        for row in self.tiles.tolist():
            merged, row_score = self._merge_line(row)
            rows.append(merged)
            score += row_score
        tiles = np.array(rows, dtype=np.int32)
        if np.array_equal(tiles, self.tiles):
            return ILLEGAL
        self.tiles = tiles
        return score

    def slide_right(self) -> int:
        mirrored = self.reflect_horizontal()
        score = mirrored.slide_left()
        if score != ILLEGAL:
            self.tiles = mirrored.reflect_horizontal().tiles
        return score

    def slide_up(self) -> int:
        rotated = self.rotate_clockwise()
        score = rotated.slide_right()
        if score != ILLEGAL:
            self.tiles = rotated.rotate_counterclockwise().tiles
        return score

    def slide_down(self) -> int:
        rotated = self.rotate_clockwise()
        score = rotated.slide_left()
        if score != ILLEGAL:
            self.tiles = rotated.rotate_counterclockwise().tiles
        return score

    def legal_slides(self) -> List[int]:
        """Directions whose slide would change the board, in scan order."""
        return [op for op in DIRECTIONS if self.copy().slide(op) != ILLEGAL]

    # ------------------------------------------------------------------
    # Symmetry transforms
    # ------------------------------------------------------------------

    def reflect_horizontal(self) -> "Board":
        return Board(self.tiles[:, ::-1])

    def reflect_vertical(self) -> "Board":
        return Board(self.tiles[::-1, :])

    def transpose(self) -> "Board":
        return Board(self.tiles.T)

    def rotate_clockwise(self) -> "Board":
        return self.transpose().reflect_horizontal()

    def rotate_counterclockwise(self) -> "Board":
        return self.transpose().reflect_vertical()

    def reverse(self) -> "Board":
        return self.reflect_horizontal().reflect_vertical()

    def rotate(self, clockwise_count: int = 1) -> "Board":
        turns = clockwise_count % 4
        if turns == 1:
            return self.rotate_clockwise()
        if turns == 2:
            return self.reverse()
        if turns == 3:
            return self.rotate_counterclockwise()
        return self.copy()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count_tile_value(self, rank: int) -> int:
        return int(np.count_nonzero(self.tiles == rank))

    def max_tile_value(self) -> int:
        return int(self.tiles.max())

    def empty_cells(self) -> int:
        return int(np.count_nonzero(self.tiles == 0))

    def has_two_target_ranks(self) -> bool:
        """Win condition of the special rule: two 8192 tiles on the board."""
        return self.count_tile_value(TARGET_RANK) >= 2

    def danger_level(self) -> float:
        """
        Coarse closeness to the win condition.

        Returns:
            1.0 (one 8192 and two 4096), 0.7 (one 8192 and one 4096),
            0.4 (three 4096), 0.0 otherwise
        """
        count_target = self.count_tile_value(TARGET_RANK)
        count_near = self.count_tile_value(NEAR_TARGET_RANK)

        if count_target >= 1 and count_near >= 2:
            return 1.0
        if count_target >= 1 and count_near >= 1:
            return 0.7
        if count_near >= 3:
            return 0.4
        return 0.0


@dataclass(frozen=True)
class Slide:
    """Slider action: move every tile in one direction."""

    direction: int
    kind: ClassVar[str] = "slide"

    def apply(self, board: Board) -> int:
        return board.slide(self.direction)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "direction": self.direction}

    def __str__(self) -> str:
        return "#" + "URDL"[self.direction & 0b11]


@dataclass(frozen=True)
class Place:
    """Placer action: drop a rank-1 or rank-2 tile on an empty cell."""

    position: int
    tile: int
    kind: ClassVar[str] = "place"

    def apply(self, board: Board) -> int:
        return board.place(self.position, self.tile)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "position": self.position, "tile": self.tile}

    def __str__(self) -> str:
        return f"{1 << self.tile}@{self.position}"


Action = Union[Slide, Place]


def action_from_dict(data: Dict[str, Any]) -> Action:
    if data["kind"] == Slide.kind:
        return Slide(int(data["direction"]))
    if data["kind"] == Place.kind:
        return Place(int(data["position"]), int(data["tile"]))
    raise ValueError(f"Unknown action kind: {data['kind']}")


class Game2048(gym.Env):
    """
    2048 Environment under the special rule, compatible with the Gymnasium API.

    - Actions: 0=up, 1=right, 2=down, 3=left
    - Observation: 4x4 grid of ranks (log2 of tile values)
    - Reward: merge score of the slide
    - Termination: no legal slide left, or two 8192 tiles on the board (win)
    """

    metadata = {"render_modes": ["human"], "render_fps": 4}

    def __init__(self, render_mode: Optional[str] = None, seed: Optional[int] = None):
        """
        Initialize the environment.

        Args:
            render_mode: Optional render mode ('human' or None)
            seed: Random seed for tile placement
        """
        super().__init__()

        self.render_mode = render_mode
        self._rng = np.random.RandomState(seed)

        self.board = Board()
        self.score: int = 0
        self.moves_made: int = 0

        self.action_space = spaces.Discrete(4)
        self.observation_space = spaces.Box(
            low=0,
            high=MAX_RANK,
            shape=(4, 4),
            dtype=np.int32
        )

        self._initialize_game()

    def _initialize_game(self) -> None:
        """Start from an empty board seeded with two tiles."""
        self.board = Board()
        self.score = 0
        self.moves_made = 0

        self._spawn_tile()
        self._spawn_tile()

    def _spawn_tile(self) -> None:
        """Place a rank-1 tile (90%) or rank-2 tile (10%) on a random empty cell."""
        empty_cells = np.flatnonzero(self.board.tiles.reshape(-1) == 0)

        if len(empty_cells) == 0:
            return

        pos = int(empty_cells[self._rng.choice(len(empty_cells))])
        tile = 1 if self._rng.randint(0, 10) else 2
        self.board.place(pos, tile)

    def _info(self, grid_changed: bool = False) -> Dict[str, Any]:
        return {
            "score": self.score,
            "moves": self.moves_made,
            "grid_changed": grid_changed,
            "win": self.board.has_two_target_ranks(),
            "max_tile": 1 << self.board.max_tile_value() if self.board.max_tile_value() else 0,
        }

    def step(self, action: int) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        """
        Execute one slide followed by a random placement.

        Args:
            action: 0=up, 1=right, 2=down, 3=left

        Returns:
            observation, reward, terminated, truncated, info
        """
        if not isinstance(action, (int, np.integer)):
            raise ValueError(f"Invalid action type: {type(action)}")

        if action < 0 or action >= self.action_space.n:
            raise ValueError(f"Invalid action: {action}")

        reward = self.board.slide(int(action))
        grid_changed = reward != ILLEGAL

        if grid_changed:
            self.score += reward
            self.moves_made += 1
            self._spawn_tile()
        else:
            reward = 0

        info = self._info(grid_changed)
        terminated = info["win"] or not self.board.legal_slides()

        return self.board.tiles.copy(), float(reward), terminated, False, info

    def reset(self, seed: Optional[int] = None, options: Optional[Dict] = None) -> Tuple[np.ndarray, Dict[str, Any]]:
        """
        Reset the environment to a fresh two-tile board.

        Args:
            seed: Random seed for reproducibility
            options: Unused

        Returns:
            Tuple of (observation, info)
        """
        if seed is not None:
            self._rng.seed(seed)

        self._initialize_game()

        return self.board.tiles.copy(), self._info()

    def render(self) -> Optional[str]:
        if self.render_mode == "human":
            output = f"Score: {self.score} | Moves: {self.moves_made}\n{self.board}"
            print(output)
            return output

        return None
