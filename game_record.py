"""
Human-readable game records for the strategic agent.

Games are appended to win_games.log or normal_games.log inside a record
directory. This is a diagnostic sink only; nothing reads the files back.
"""

import os
from typing import List, Optional

from game_2048 import Board, TARGET_RANK, NEAR_TARGET_RANK


WIN_LOG = "win_games.log"
NORMAL_LOG = "normal_games.log"

# Board dumps: dangerous positions, big tiles, and a periodic snapshot
DUMP_DANGER = 0.3
DUMP_MIN_RANK = 8
DUMP_INTERVAL = 50


class GameRecorder:
    def __init__(self, record_dir: Optional[str] = None, record_every: int = 10):
        """
        Args:
            record_dir: Directory for the log files; None disables file output
            record_every: Flush normal games every this many games
        """
        self.record_dir = record_dir
        self.record_every = max(1, record_every)
        self.lines: List[str] = []

        if record_dir:
            os.makedirs(record_dir, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return bool(self.record_dir)

    def open_game(self, game_number: int) -> None:
        self.lines = [f"Game {game_number} started"]

    def note(self, message: str) -> None:
        self.lines.append(message)

    def record_step(self, move_number: int, board: Board) -> None:
        danger = board.danger_level()
        max_rank = board.max_tile_value()
        self.lines.append(
            f"Move {move_number}: 8192 x{board.count_tile_value(TARGET_RANK)} "
            f"4096 x{board.count_tile_value(NEAR_TARGET_RANK)} "
            f"max=2^{max_rank} danger={danger:.1f}"
        )

        if danger > DUMP_DANGER:
            tag = "[DANGER]"
        elif max_rank >= DUMP_MIN_RANK:
            tag = "[MILESTONE]"
        elif move_number % DUMP_INTERVAL == 0:
            tag = "[PERIODIC]"
        else:
            return
        self.lines.append(f"{tag} board:\n{board}")

    def close_game(self, move_count: int, outcome: str) -> None:
        self.lines.append(f"Game over after {move_count} moves")
        self.lines.append(f"Result: {outcome}")
        self.lines.append("")

    def flush(self, is_win: bool) -> None:
        """Append the current record to the win or normal log."""
        if not self.enabled:
            return

        path = os.path.join(self.record_dir, WIN_LOG if is_win else NORMAL_LOG)
        with open(path, "a") as f:
            f.write(f"=== {'Win game' if is_win else 'Normal game'} ===\n")
            f.write("\n".join(self.lines) + "\n")
            f.write("================================\n\n")
