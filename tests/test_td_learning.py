import numpy as np
import pytest

from game_2048 import Board, Slide, UP, RIGHT, DOWN, LEFT, TARGET_RANK, NEAR_TARGET_RANK
from ntuple import NTupleNetwork
from td_learning import TDLearner, GameStep, Phase, WIN_REWARD
from weights import WeightStore


def make_learner(sizes=(65536,), **kwargs):
    store = WeightStore()
    store.init(list(sizes))
    return TDLearner(NTupleNetwork(store), **kwargs)


def board_with(ranks):
    b = Board()
    for pos, rank in enumerate(ranks):
        b[pos] = rank
    return b


def step_to(next_state, reward=0, evaluation=0.0):
    return GameStep(Board(), Slide(LEFT), reward, next_state, evaluation)


class UpdateSpy:
    def __init__(self):
        self.calls = []

    def __call__(self, state, td_error):
        self.calls.append((state, td_error))


def test_open_episode_resets_traces_and_trajectory():
    learner = make_learner(sizes=(8, 8))
    learner.traces[0][:] = 0.5
    learner.trajectory.append(step_to(Board()))

    learner.open_episode()

    assert learner.phase == Phase.RECORDING
    assert learner.trajectory == []
    assert all((trace == 0.0).all() for trace in learner.traces)


def test_decay_scales_every_trace():
    learner = make_learner(sizes=(4,), decay=0.8)
    learner.traces[0][:] = [1.0, 0.5, 0.0, 0.25]
    learner.decay_traces()
    assert np.allclose(learner.traces[0], [0.8, 0.4, 0.0, 0.2])


def test_traces_follow_resized_weights():
    learner = make_learner(sizes=(4,))
    learner.network.weights.init([16])
    learner.open_episode()
    assert [t.size for t in learner.traces] == [4, 16]


def test_update_applies_full_error_and_two_shared_variants():
    learner = make_learner(alpha=0.1)
    state = board_with([1])

    learner.update(state, 8.0)

    table = learner.network.weights[0]
    # state and its transpose share index 1; the horizontal mirror moves the tile out (index 0)
    assert table[1] == pytest.approx(0.1 * 8.0 + 0.1 * 8.0 * 0.125)
    assert table[0] == pytest.approx(0.1 * 8.0 * 0.125)
    assert np.count_nonzero(table) == 2
    assert learner.traces[0][1] == 1.0
    assert learner.traces[0][0] == 1.0


def test_update_replaces_trace_instead_of_accumulating():
    learner = make_learner(alpha=1.0)
    learner.update(Board(), 1.0)
    learner.update(Board(), 1.0)
    assert learner.traces[0][0] == 1.0


def test_update_without_tables_is_noop():
    learner = make_learner(sizes=())
    learner.update(board_with([1]), 5.0)
    assert learner.network.evaluate(board_with([1])) == 0.0


def test_action_value_combines_reward_danger_and_survival():
    learner = make_learner(sizes=(), penalty=0.5, bonus=10.0)
    after = board_with([TARGET_RANK, NEAR_TARGET_RANK])
    # 0.7 * 0.5 * 10000 penalty, 14 empty cells
    assert learner.action_value(after, 4) == pytest.approx(4 - 3500 + 140)


def test_select_breaks_ties_by_scan_order():
    learner = make_learner(sizes=())
    b = Board()
    b[5] = 1
    direction, reward, after = learner.select(b)
    assert direction == UP
    assert reward == 0
    assert after[1] == 1


def test_select_prefers_merges_and_skips_illegal_moves():
    learner = make_learner(sizes=())
    b = Board([[1, 1, 0, 0], [0] * 4, [0] * 4, [0] * 4])
    direction, reward, after = learner.select(b)
    # up is illegal; right and left both merge, right is scanned first
    assert direction == RIGHT
    assert reward == 4
    assert after[3] == 2
    assert b[0] == 1


def test_select_returns_none_without_legal_moves():
    learner = make_learner(sizes=())
    locked = Board([[1 + (r + c) % 2 for c in range(4)] for r in range(4)])
    assert learner.select(locked) is None


def test_danger_penalty_steers_selection():
    b = Board([[NEAR_TARGET_RANK, NEAR_TARGET_RANK, 0, 0], [0] * 4, [0] * 4, [0, 0, 0, NEAR_TARGET_RANK]])

    # without a penalty the 8192 merge wins (right is scanned before left)
    greedy = make_learner(sizes=(), penalty=0.0, bonus=0.0)
    direction, reward, after = greedy.select(b)
    assert direction == RIGHT
    assert reward == 8192
    assert after.danger_level() == 0.7

    # a strong penalty prefers keeping three 4096 tiles (0.4) over 8192 + 4096 (0.7)
    careful = make_learner(sizes=(), penalty=5.0, bonus=0.0)
    direction, reward, after = careful.select(b)
    assert direction == UP
    assert reward == 0
    assert after.danger_level() == 0.4


def test_record_updates_previous_step():
    learner = make_learner(sizes=(), lam=0.5)
    spy = UpdateSpy()
    learner.update = spy
    learner.open_episode()

    first, second = board_with([1]), board_with([2])
    assert learner.record(first, Slide(LEFT), 4, second) is None
    assert spy.calls == []

    td_error = learner.record(second, Slide(UP), 8, board_with([3]))
    # target = 4 + 0.5 * V(second) = 4, previous evaluation 0
    assert td_error == pytest.approx(4.0)
    assert len(spy.calls) == 1
    assert spy.calls[0][0] == first
    assert spy.calls[0][1] == pytest.approx(4.0)
    assert len(learner.trajectory) == 2
    assert learner.trajectory[1].reward == 8


def test_record_decays_traces():
    learner = make_learner(decay=0.5)
    learner.open_episode()
    learner.record(Board(), Slide(LEFT), 0, board_with([1]))
    learner.record(board_with([1]), Slide(LEFT), 0, board_with([2]))
    # the second record visited index 0 of the previous (empty) state then decayed once
    assert learner.traces[0][0] == pytest.approx(0.5)


def test_record_stores_copies():
    learner = make_learner(sizes=())
    learner.open_episode()
    state = board_with([1])
    learner.record(state, Slide(LEFT), 0, board_with([2]))
    state[0] = 5
    assert learner.trajectory[0].state[0] == 1


def test_record_outside_an_episode_is_ignored(caplog):
    learner = make_learner(alpha=1.0)
    with caplog.at_level("WARNING", logger="td_learning"):
        assert learner.record(Board(), Slide(LEFT), 4, board_with([1])) is None
    assert learner.trajectory == []
    assert "idle" in caplog.text

    learner.open_episode()
    learner.record(Board(), Slide(LEFT), 4, board_with([1]))
    learner.close_episode("lose")
    assert learner.phase == Phase.IDLE
    assert learner.record(board_with([1]), Slide(LEFT), 0, board_with([2])) is None
    assert learner.trajectory == []


def test_learning_disabled_records_nothing():
    learner = make_learner(learning=False, alpha=1.0)
    learner.open_episode()
    assert learner.record(Board(), Slide(LEFT), 4, board_with([1])) is None
    assert learner.trajectory == []
    assert learner.close_episode("lose") == 0.0
    assert not learner.network.weights[0].any()


@pytest.mark.parametrize("final_ranks, outcome, expected", [
    ([TARGET_RANK, TARGET_RANK], "win", WIN_REWARD),
    ([TARGET_RANK], "lose", 10000.0),
    ([TARGET_RANK, NEAR_TARGET_RANK], "lose", 10000.0),
    ([NEAR_TARGET_RANK], "lose", 5000.0),
    ([TARGET_RANK, TARGET_RANK], "lose", 1000.0),
    ([11, 10], "lose", 1000.0),
    ([NEAR_TARGET_RANK], "place", 0.0),
])
def test_final_reward_tiers(final_ranks, outcome, expected):
    learner = make_learner(sizes=())
    learner.trajectory = [step_to(board_with(final_ranks))]
    assert learner.final_reward(outcome) == expected


def test_final_reward_without_trajectory():
    learner = make_learner(sizes=())
    assert learner.final_reward("lose") == 0.0


def test_close_episode_replays_backwards():
    learner = make_learner(sizes=(), lam=0.5)
    spy = UpdateSpy()
    learner.update = spy
    s0, s1 = board_with([1]), board_with([2])
    learner.trajectory = [
        GameStep(s0, Slide(LEFT), 4, s1, 0.0),
        GameStep(s1, Slide(UP), 8, board_with([3]), 2.0),
    ]

    final_reward = learner.close_episode("lose")

    assert final_reward == 1000.0
    assert [call[0] for call in spy.calls] == [s1, s0]
    assert spy.calls[0][1] == pytest.approx(998.0)
    # 8 + 0.5 * 998 = 507, discounted once more by 0.5
    assert spy.calls[1][1] == pytest.approx(253.5)
    assert learner.trajectory == []
    assert learner.phase == Phase.IDLE


def test_close_episode_with_unknown_tag_still_replays():
    learner = make_learner(sizes=())
    spy = UpdateSpy()
    learner.update = spy
    learner.trajectory = [GameStep(Board(), Slide(LEFT), 0, board_with([1]), 3.0)]
    assert learner.close_episode("draw") == 0.0
    assert spy.calls[0][1] == pytest.approx(-3.0)


def test_win_moves_weights_down():
    learner = make_learner(alpha=0.01)
    learner.open_episode()
    learner.record(Board(), Slide(LEFT), 0, board_with([1]))
    learner.close_episode("win")
    assert learner.network.weights[0][0] < 0


def test_td_error_diagnostics_are_per_instance():
    a = make_learner(sizes=())
    b = make_learner(sizes=())
    a.open_episode()
    for i in range(101):
        a.record(board_with([1]), Slide(LEFT), 2, board_with([1]))
    assert a.recent_td_error == pytest.approx(2.0)
    assert a.td_update_count == 0
    assert b.recent_td_error == 0.0
    assert b.td_update_count == 0
