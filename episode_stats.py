"""
Episode records and rolling statistics for 2048 training runs.

A block report looks like:

    1000    avg = 27390, max = 38232, ops = 2415 (1705|8967)
            512     100.0%  (0.3%)
            1024    99.7%   (0.2%)
            2048    99.5%   (1.1%)

where 'ops' is moves per second overall (slider|placer), the first percentage
is the share of games that reached the tile, and the bracketed one the share
that ended with it as the largest tile.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterator, List, Optional

from game_2048 import Action, Board, Place, Slide, ILLEGAL, action_from_dict


logger = logging.getLogger(__name__)

PROGRESS_WINDOW = 100


@dataclass
class Move:
    action: Action
    reward: int
    elapsed: float


class Episode:
    """One game: the live board, every applied move and its timing."""

    def __init__(self):
        self.board = Board()
        self.score = 0
        self.moves: List[Move] = []
        self.open_flag = ""
        self.close_flag = ""
        self.opened_at = 0.0
        self.closed_at = 0.0
        self._turn_started = 0.0

    @property
    def state(self) -> Board:
        return self.board

    def open_episode(self, flag: str = "") -> None:
        self.open_flag = flag
        self.opened_at = time.perf_counter()
        self._turn_started = self.opened_at

    def close_episode(self, flag: str = "") -> None:
        self.close_flag = flag
        self.closed_at = time.perf_counter()

    def take_turns(self, play, evil):
        """The placer (evil) opens with two tiles, then slider and placer alternate."""
        self._turn_started = time.perf_counter()
        return play if max(self.step() + 1, 2) % 2 else evil

    def last_turns(self, play, evil):
        """The agent that made the most recent move."""
        return evil if max(self.step() + 1, 2) % 2 else play

    def apply_action(self, action: Optional[Action]) -> bool:
        """
        Apply an action to the board and record it.

        Returns:
            False for a missing or illegal action (nothing is recorded)
        """
        if action is None:
            return False
        reward = action.apply(self.board)
        if reward == ILLEGAL:
            return False
        self.moves.append(Move(action, reward, time.perf_counter() - self._turn_started))
        self.score += reward
        return True

    def step(self, kind: Optional[str] = None) -> int:
        if kind is None:
            return len(self.moves)
        return sum(1 for move in self.moves if move.action.kind == kind)

    def time(self, kind: Optional[str] = None) -> float:
        """Elapsed seconds for the whole episode, or for the moves of one kind."""
        if kind is None:
            if self.closed_at:
                return self.closed_at - self.opened_at
            return sum(move.elapsed for move in self.moves)
        return sum(move.elapsed for move in self.moves if move.action.kind == kind)

    def max_tile(self) -> int:
        """Largest rank on the board."""
        return self.board.max_tile_value()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "open": self.open_flag,
            "close": self.close_flag,
            "duration": self.time(),
            "moves": [
                {"action": move.action.to_dict(), "reward": move.reward, "elapsed": move.elapsed}
                for move in self.moves
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Episode":
        """Rebuild an episode by replaying its moves on an empty board."""
        episode = cls()
        episode.open_flag = data.get("open", "")
        episode.close_flag = data.get("close", "")
        for entry in data["moves"]:
            action = action_from_dict(entry["action"])
            reward = action.apply(episode.board)
            if reward == ILLEGAL:
                raise ValueError(f"Recorded move {action} is illegal on the replayed board")
            episode.moves.append(Move(action, reward, float(entry.get("elapsed", 0.0))))
            episode.score += reward
        episode.closed_at = float(data.get("duration", 0.0))
        return episode


def _per_second(steps: int, seconds: float) -> float:
    return steps / seconds if seconds > 0 else 0.0


class Statistics:
    """
    Rolling window of recent episodes.

    Args:
        total: Number of episodes to run
        block: Episodes per full report (defaults to total)
        limit: Episodes kept in memory (defaults to total)

    Note that total >= limit >= block.
    """

    def __init__(self, total: int, block: int = 0, limit: int = 0):
        self.total = total
        self.block = block if block else total
        self.limit = limit if limit else total
        self.count = 0
        self.data: Deque[Episode] = deque(maxlen=self.limit if self.limit else None)

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[Episode]:
        return iter(self.data)

    def is_finished(self) -> bool:
        return self.count >= self.total

    def step(self) -> int:
        return self.count

    def back(self) -> Episode:
        return self.data[-1]

    def open_episode(self, flag: str = "") -> Episode:
        self.count += 1
        self.data.append(Episode())
        self.data[-1].open_episode(flag)
        return self.data[-1]

    def close_episode(self, flag: str = "") -> None:
        self.data[-1].close_episode(flag)

        if self.count % PROGRESS_WINDOW == 0:
            self.show_progress()

        if self.block and self.count % self.block == 0:
            self.show()

    def summary(self, window: Optional[int] = None) -> Dict[str, Any]:
        """
        Aggregate the last `window` episodes (default: one block).

        Returns:
            count, avg, max, ops, slide_ops, place_ops and tiles, a list of
            (tile value, reached %, ended %) rows in ascending tile order
        """
        num = min(len(self.data), window if window else self.block)
        episodes = list(self.data)[len(self.data) - num:]

        ended = {}
        total_score = max_score = 0
        steps = slide_steps = place_steps = 0
        duration = slide_time = place_time = 0.0
        for ep in episodes:
            total_score += ep.score
            max_score = max(max_score, ep.score)
            rank = ep.max_tile()
            ended[rank] = ended.get(rank, 0) + 1
            steps += ep.step()
            slide_steps += ep.step(Slide.kind)
            place_steps += ep.step(Place.kind)
            duration += ep.time()
            slide_time += ep.time(Slide.kind)
            place_time += ep.time(Place.kind)

        tiles = []
        reached = num
        for rank in sorted(ended):
            value = (1 << rank) if rank else 0
            tiles.append((value, 100.0 * reached / num, 100.0 * ended[rank] / num))
            reached -= ended[rank]

        return {
            "count": num,
            "avg": total_score / num if num else 0.0,
            "max": max_score,
            "ops": _per_second(steps, duration),
            "slide_ops": _per_second(slide_steps, slide_time),
            "place_ops": _per_second(place_steps, place_time),
            "tiles": tiles,
        }

    def show(self, window: Optional[int] = None, tile_stats: bool = True) -> None:
        stats = self.summary(window)
        if stats["count"] == 0:
            return

        logger.info(
            f"{self.count}\tavg = {stats['avg']:.0f}, max = {stats['max']}, "
            f"ops = {stats['ops']:.0f} ({stats['slide_ops']:.0f}|{stats['place_ops']:.0f})"
        )
        if not tile_stats:
            return
        for value, reached, ended in stats["tiles"]:
            logger.info(f"\t{value}\t{reached:.1f}%\t({ended:.1f}%)")

    def show_progress(self, window: int = PROGRESS_WINDOW) -> None:
        if not self.data:
            return

        stats = self.summary(window)
        progress = 100.0 * self.count / self.total if self.total else 100.0
        logger.info(
            f"Progress {self.count}/{self.total} ({progress:.1f}%) "
            f"avg={stats['avg']:.0f} max={stats['max']}"
        )

    def save(self, path: str) -> None:
        """Write the retained episodes as JSON lines."""
        with open(path, "w") as f:
            for ep in self.data:
                f.write(json.dumps(ep.to_dict()) + "\n")
        logger.info(f"Statistics saved to {path} ({len(self.data)} episodes)")

    def load(self, path: str) -> None:
        """
        Append episodes from a JSON lines file written by save().

        Every record counts toward the episode count, including the ones
        the retention limit drops.
        """
        loaded = 0
        with open(path) as f:
            for line in f:
                if line.strip():
                    self.data.append(Episode.from_dict(json.loads(line)))
                    loaded += 1
        self.total = max(self.total, loaded)
        self.count = loaded
        logger.info(f"Statistics loaded from {path} ({loaded} episodes, {len(self.data)} kept)")
