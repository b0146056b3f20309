"""
Agents for the 2048 arena.

Every agent is configured by a "key=value key=value" option string and answers
one decision (take_action) plus the episode lifecycle hooks. Capabilities are
composed rather than inherited: the random agents own a random source, the
strategic slider owns a weight store, an N-tuple evaluator, a TD(λ) learner,
a random fallback and a game recorder.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import numpy as np

from game_2048 import Action, Board, Place, Slide, DIRECTIONS, ILLEGAL
from game_record import GameRecorder
from ntuple import NTupleNetwork
from td_learning import TDLearner
from weights import WeightStore


logger = logging.getLogger(__name__)

_MISSING = object()

SUMMARY_INTERVAL = 50


class AgentConfig:
    """
    Options parsed from "name=value" tokens.

    Values stay raw strings; the typed accessors parse on demand and raise
    KeyError only when the key is absent and no default is given.
    """

    def __init__(self, args: str = "", defaults: str = ""):
        self.options: Dict[str, str] = {}
        for text in ("name=unknown role=unknown", defaults, args):
            for pair in text.split():
                self.notify(pair)

    def notify(self, message: str) -> None:
        key, sep, value = message.partition("=")
        self.options[key] = value if sep else message

    def __contains__(self, key: str) -> bool:
        return key in self.options

    def __repr__(self) -> str:
        return " ".join(f"{k}={v}" for k, v in self.options.items())

    def get(self, key: str, default=_MISSING):
        if key in self.options:
            return self.options[key]
        if default is _MISSING:
            raise KeyError(f"Missing option: {key}")
        return default

    def get_float(self, key: str, default=_MISSING) -> float:
        value = self.get(key, default)
        return float(value)

    def get_int(self, key: str, default=_MISSING) -> int:
        value = self.get(key, default)
        return int(float(value))

    def get_bool(self, key: str, default=_MISSING) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        return value in ("1", "true")


class Agent(ABC):
    """Base interface: one decision per turn plus episode hooks."""

    def __init__(self, args: str = "", defaults: str = ""):
        self.config = AgentConfig(args, defaults)

    @property
    def name(self) -> str:
        return self.config.get("name")

    @property
    def role(self) -> str:
        return self.config.get("role")

    def open_episode(self, flag: str = "") -> None:
        pass

    def close_episode(self, flag: str = "") -> None:
        pass

    @abstractmethod
    def take_action(self, board: Board) -> Optional[Action]:
        """Return the next action, or None when there is nothing to do."""

    def check_for_win(self, board: Board) -> bool:
        return False

    def close(self) -> None:
        """Release resources at the end of a run."""


def _random_source(config: AgentConfig) -> np.random.RandomState:
    seed = config.get_int("seed") if "seed" in config else None
    return np.random.RandomState(seed)


class RandomPlacer(Agent):
    """
    Default environment: add a tile to a random empty cell.
    2-tile: 90%
    4-tile: 10%
    """

    def __init__(self, args: str = ""):
        super().__init__(args, defaults="name=place role=placer")
        self.rng = _random_source(self.config)
        self.space = np.arange(16)

    def take_action(self, board: Board) -> Optional[Action]:
        self.rng.shuffle(self.space)
        for pos in self.space:
            if board[int(pos)] != 0:
                continue
            tile = 1 if self.rng.randint(0, 10) else 2
            return Place(int(pos), tile)
        return None


class RandomSlider(Agent):
    """Pick a legal slide uniformly at random."""

    def __init__(self, args: str = ""):
        super().__init__(args, defaults="name=slide role=slider")
        self.rng = _random_source(self.config)
        self.opcode = np.array(DIRECTIONS)

    def take_action(self, board: Board) -> Optional[Action]:
        self.rng.shuffle(self.opcode)
        for op in self.opcode:
            if board.copy().slide(int(op)) != ILLEGAL:
                return Slide(int(op))
        return None


class StrategicSlider(Agent):
    """
    Learning slider for the "two 8192 tiles win" rule.

    Picks slides by N-tuple value plus danger penalty and survival bonus, and
    trains its weights with TD(λ), being rewarded for ending games without
    ever holding two 8192 tiles.

    Options:
        init      comma-separated table sizes, e.g. 65536,65536,65536,65536
        load      weight file to start from
        save      weight file written by close()
        alpha     learning rate (0)
        lambda    TD discount (0.9)
        decay     eligibility trace decay (0.8)
        learning  1/true to record and update (true)
        penalty   danger penalty factor (0.7)
        bonus     survival bonus per empty cell (1000)
        records   directory for win_games.log / normal_games.log (off)
        record_every  flush normal game records every N games (10)
        seed      seed of the random fallback slider
    """

    def __init__(self, args: str = ""):
        super().__init__(args, defaults="name=strategic role=slider")

        self.weights = WeightStore()
        if "init" in self.config:
            self.weights.init(self.config.get("init"))
        if "load" in self.config:
            self.weights.load(self.config.get("load"))

        self.network = NTupleNetwork(self.weights)
        self.learner = TDLearner(
            self.network,
            alpha=self.config.get_float("alpha", 0.0),
            lam=self.config.get_float("lambda", 0.9),
            decay=self.config.get_float("decay", 0.8),
            penalty=self.config.get_float("penalty", 0.7),
            bonus=self.config.get_float("bonus", 1000.0),
            learning=self.config.get_bool("learning", True),
        )
        fallback_args = f"seed={self.config.get('seed')}" if "seed" in self.config else ""
        self.fallback = RandomSlider(fallback_args)
        self.recorder = GameRecorder(
            self.config.get("records", None),
            self.config.get_int("record_every", 10),
        )

        self.game_count = 0
        self.move_count = 0

        # Learning summary accumulated over SUMMARY_INTERVAL games
        self.summary_wins = 0
        self.summary_losses = 0
        self.summary_steps = 0
        self.summary_danger = 0.0

    def open_episode(self, flag: str = "") -> None:
        self.game_count += 1
        self.move_count = 0
        self.recorder.open_game(self.game_count)
        self.learner.open_episode()

    def take_action(self, board: Board) -> Optional[Action]:
        self.move_count += 1
        self.recorder.record_step(self.move_count, board)

        choice = self.learner.select(board)
        if choice is None:
            return self.fallback.take_action(board)

        op, reward, after = choice
        action = Slide(op)
        self.learner.record(board, action, reward, after)
        return action

    def check_for_win(self, board: Board) -> bool:
        has_win = board.has_two_target_ranks()
        if has_win:
            self.recorder.note("[WIN] two 8192 tiles on the board")
            self.recorder.flush(is_win=True)
        return has_win

    def close_episode(self, flag: str = "") -> None:
        self._accumulate_summary(flag)

        final_reward = self.learner.close_episode(flag)
        if self.learner.learning:
            self.recorder.note(f"[FINAL TD] final reward={final_reward:.0f}")

        if self.game_count % SUMMARY_INTERVAL == 0:
            self.show_learning_summary()

        self.recorder.close_game(self.move_count, flag)
        if flag != "win" and self.game_count % self.recorder.record_every == 0:
            self.recorder.flush(is_win=False)

    def _accumulate_summary(self, flag: str) -> None:
        if flag == "win":
            self.summary_wins += 1
        else:
            self.summary_losses += 1
        self.summary_steps += self.move_count

        trajectory = self.learner.trajectory
        if trajectory:
            self.summary_danger += sum(step.state.danger_level() for step in trajectory) / len(trajectory)

    def show_learning_summary(self) -> None:
        games = self.summary_wins + self.summary_losses
        if self.learner.learning and games:
            avoid_rate = 100.0 * self.summary_losses / games
            logger.info(
                f"[Learning] games {self.game_count - games + 1}-{self.game_count}: "
                f"avg steps={self.summary_steps // games} "
                f"win avoidance={avoid_rate:.1f}% "
                f"avg danger={self.summary_danger / games:.3f} "
                f"alpha={self.learner.alpha} "
                f"td error={self.learner.recent_td_error:.2f}"
            )

        self.summary_wins = self.summary_losses = self.summary_steps = 0
        self.summary_danger = 0.0

    def close(self) -> None:
        if "save" in self.config:
            self.weights.save(self.config.get("save"))
