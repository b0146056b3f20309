"""
TD(λ) learning engine for the strategic 2048 agent.

The learner owns the per-episode trajectory and the eligibility traces that run
parallel to the N-tuple weight tables. Each recorded step triggers a one-step
TD update of the previous step; closing an episode replays the whole trajectory
backwards against a shaped terminal reward:

    "win"  (two 8192 tiles, forbidden)      -> -50000
    "lose" with exactly one 8192 tile       ->  10000
    "lose" with no 8192 but a 4096 or more  ->   5000
    "lose" otherwise                        ->   1000
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from game_2048 import Board, Slide, DIRECTIONS, ILLEGAL, TARGET_RANK, NEAR_TARGET_RANK
from ntuple import NTupleNetwork, feature_index


logger = logging.getLogger(__name__)

WIN_REWARD = -50000.0
ONE_TARGET_REWARD = 10000.0
NEAR_TARGET_REWARD = 5000.0
BASE_REWARD = 1000.0

# danger_level() is scaled by penalty * DANGER_SCALE when rating an afterstate
DANGER_SCALE = 10000.0

# Share of the error applied to each symmetric variant in update()
ISOMORPHIC_SHARE = 0.125

TD_REPORT_INTERVAL = 100


class Phase(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"


@dataclass
class GameStep:
    state: Board
    action: Slide
    reward: int
    next_state: Board
    evaluation: float


class TDLearner:
    """
    Action selection and TD(λ) weight updates over an NTupleNetwork.

    Note that `lam` is used both as the bootstrap discount of the one-step
    target and as the per-step discount of the terminal replay, while `decay`
    is the multiplicative eligibility trace decay.
    """

    def __init__(
        self,
        network: NTupleNetwork,
        alpha: float = 0.0,
        lam: float = 0.9,
        decay: float = 0.8,
        penalty: float = 0.7,
        bonus: float = 1000.0,
        learning: bool = True
    ):
        """
        Args:
            network: Pattern evaluator (its WeightStore is mutated in place)
            alpha: Learning rate
            lam: TD discount λ
            decay: Eligibility trace decay factor, in [0, 1]
            penalty: Danger penalty factor
            bonus: Survival bonus per empty cell
            learning: Whether trajectories are recorded and weights updated
        """
        self.network = network
        self.alpha = alpha
        self.lam = lam
        self.decay = decay
        self.penalty = penalty
        self.bonus = bonus
        self.learning = learning

        self.phase = Phase.IDLE
        self.trajectory: List[GameStep] = []
        self.traces: List[np.ndarray] = []
        self.initialize_traces()

        # TD error diagnostics
        self.total_td_error = 0.0
        self.td_update_count = 0
        self.recent_td_error = 0.0
        self.last_final_reward = 0.0

    # ------------------------------------------------------------------
    # Eligibility traces
    # ------------------------------------------------------------------

    def initialize_traces(self) -> None:
        self.traces = [np.zeros(table.size, dtype=np.float32) for table in self.network.weights]

    def reset_traces(self) -> None:
        if [t.size for t in self.traces] != self.network.weights.sizes:
            self.initialize_traces()
            return
        for trace in self.traces:
            trace.fill(0.0)

    def decay_traces(self) -> None:
        for trace in self.traces:
            trace *= self.decay

    # ------------------------------------------------------------------
    # Episode lifecycle
    # ------------------------------------------------------------------

    def open_episode(self) -> None:
        self.trajectory = []
        self.reset_traces()
        self.phase = Phase.RECORDING

    def close_episode(self, outcome: str) -> float:
        """
        Backward replay of the whole trajectory against the terminal reward.

        Args:
            outcome: "win" or "lose"; any other tag gives a zero terminal reward

        Returns:
            The terminal reward used (0.0 when nothing was recorded)
        """
        self.phase = Phase.FINALIZING
        final_reward = 0.0

        if self.learning and self.trajectory:
            final_reward = self.final_reward(outcome)
            n = len(self.trajectory)
            td_error = final_reward - self.trajectory[-1].evaluation

            for i in range(n - 1, -1, -1):
                step = self.trajectory[i]
                discounted_error = td_error * self.lam ** (n - 1 - i)
                self.update(step.state, discounted_error)
                if i > 0:
                    td_error = step.reward + self.lam * td_error

            logger.debug(f"Final TD update: length={n}, final reward={final_reward:.0f}")

        self.last_final_reward = final_reward
        self.trajectory = []
        self.phase = Phase.IDLE
        return final_reward

    def final_reward(self, outcome: str) -> float:
        if outcome == "win":
            return WIN_REWARD
        if outcome != "lose" or not self.trajectory:
            return 0.0

        final_state = self.trajectory[-1].next_state
        count_target = final_state.count_tile_value(TARGET_RANK)
        if count_target == 1:
            return ONE_TARGET_REWARD
        if count_target == 0 and final_state.max_tile_value() >= NEAR_TARGET_RANK:
            return NEAR_TARGET_REWARD
        return BASE_REWARD

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def action_value(self, after: Board, reward: int) -> float:
        """Merge reward + network value - danger penalty + survival bonus."""
        value = float(reward) + self.network.evaluate(after)
        danger_penalty = after.danger_level() * self.penalty * DANGER_SCALE
        survival = after.empty_cells() * self.bonus
        return value - danger_penalty + survival

    def select(self, before: Board) -> Optional[Tuple[int, int, Board]]:
        """
        Best legal slide; ties keep the first direction in up/right/down/left order.

        Returns:
            (direction, reward, afterstate), or None if no slide is legal
        """
        best = None
        best_value = -np.inf
        for op in DIRECTIONS:
            after = before.copy()
            reward = after.slide(op)
            if reward == ILLEGAL:
                continue
            value = self.action_value(after, reward)
            if value > best_value:
                best_value = value
                best = (op, reward, after)
        return best

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def record(self, state: Board, action: Slide, reward: int, next_state: Board) -> Optional[float]:
        """
        Append a step, TD-update the previous one, then decay every trace.

        Steps are only accepted between open_episode() and close_episode().

        Returns:
            The TD error of the previous step, or None if no update happened
        """
        if not self.learning:
            return None
        if self.phase != Phase.RECORDING:
            logger.warning(f"Ignoring step recorded while {self.phase.value}")
            return None

        current_value = self.network.evaluate(state)
        self.trajectory.append(GameStep(state.copy(), action, reward, next_state.copy(), current_value))

        td_error = None
        if len(self.trajectory) >= 2:
            prev = self.trajectory[-2]
            td_target = prev.reward + self.lam * current_value
            td_error = td_target - prev.evaluation
            self.update(prev.state, td_error)
            self._track_td_error(td_error)

        self.decay_traces()
        return td_error

    def _track_td_error(self, td_error: float) -> None:
        self.total_td_error += abs(td_error)
        self.td_update_count += 1

        if self.td_update_count % TD_REPORT_INTERVAL == 0:
            self.recent_td_error = self.total_td_error / TD_REPORT_INTERVAL
            logger.debug(f"[TD] avg error={self.recent_td_error:.2f} alpha={self.alpha}")
            self.total_td_error = 0.0
            self.td_update_count = 0

    def update(self, state: Board, td_error: float) -> None:
        """
        Apply a TD error to every pattern's feature on the state.

        The full error goes to the state itself; the horizontal mirror and the
        transpose each receive ISOMORPHIC_SHARE of it. The remaining symmetric
        variants are not updated.
        """
        if len(self.network.weights) == 0 or not self.traces:
            return

        mirrored = state.reflect_horizontal()
        transposed = state.transpose()
        for i, pattern, table in self.network.bound_tables():
            self.update_pattern(state, pattern, i, td_error)
            self.update_pattern(mirrored, pattern, i, td_error * ISOMORPHIC_SHARE)
            self.update_pattern(transposed, pattern, i, td_error * ISOMORPHIC_SHARE)

    def update_pattern(self, state: Board, pattern, table_index: int, td_error: float) -> None:
        table = self.network.weights[table_index]
        trace = self.traces[table_index]

        index = feature_index(state, pattern, table.size)
        if index is None or index >= trace.size:
            return

        trace[index] = 1.0
        table[index] += self.alpha * td_error * trace[index]
