"""
Training script for the strategic 2048 agent (TD(λ) + N-tuple network)

The slider is rewarded for scoring high while never holding two 8192 tiles at
once. Runs a single training stage, or the full staged curriculum.

Usage:
    python train_td.py --total 1000 --slide "init=65536,65536,65536,65536 alpha=0.1 save=weights.w"
    python train_td.py --curriculum --work-dir runs/strategic
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from agents import Agent, AgentConfig, RandomPlacer, StrategicSlider
from episode_stats import Statistics
from game_2048 import Game2048


logger = logging.getLogger("train_td")

# One stage per entry; {prev} and {out} are replaced by weight file paths
CURRICULUM: List[Dict[str, Any]] = [
    {
        "name": "stage1",
        "total": 10000,
        "slide": "init=65536,65536,65536,65536 alpha=0.1 lambda=0.9 learning=1 penalty=0.7 bonus=1000 save={out}",
    },
    {
        "name": "stage2",
        "total": 8000,
        "slide": "load={prev} alpha=0.05 lambda=0.9 learning=1 penalty=0.5 bonus=500 save={out}",
    },
    {
        "name": "stage3",
        "total": 5000,
        "slide": "load={prev} alpha=0.01 lambda=0.9 learning=1 penalty=0.8 bonus=300 save={out}",
    },
    {
        "name": "final_test",
        "total": 1000,
        "block": 100,
        "slide": "load={prev} alpha=0 learning=0",
    },
]


def setup_logging(log_dir: str = "logs") -> logging.Logger:
    """
    Setup logging to both console and file.

    Args:
        log_dir: Directory to store log files

    Returns:
        Configured logger
    """
    os.makedirs(log_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"training_{timestamp}.log")

    # Handlers live on the root logger so the library modules' loggers reach them
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(message)s'))

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logger.info(f"Logging to: {log_file}")

    return logger


def play_episode(stat: Statistics, play: Agent, evil: Agent) -> str:
    """
    Play one game between the slider (play) and the placer (evil).

    Returns:
        "win" if the slider reached the two-8192 state, "lose" otherwise
    """
    play.open_episode("~:" + evil.name)
    evil.open_episode(play.name + ":~")
    game = stat.open_episode(play.name + ":" + evil.name)

    outcome = "lose"
    while True:
        who = game.take_turns(play, evil)
        move = who.take_action(game.state)
        if not game.apply_action(move):
            break
        if who.check_for_win(game.state):
            outcome = "win"
            break

    stat.close_episode(outcome)
    play.close_episode(outcome)
    evil.close_episode(outcome)
    return outcome


def run(
    total: int,
    block: int = 0,
    limit: int = 0,
    slide_args: str = "",
    place_args: str = "",
    load_stats: Optional[str] = None,
    save_stats: Optional[str] = None,
    summary: bool = False,
    progress_bar: bool = True
) -> Dict[str, Any]:
    """
    Run one training (or testing) stage.

    Args:
        total: Number of episodes
        block: Episodes per statistics report
        limit: Episodes retained for statistics
        slide_args: Options for the strategic slider
        place_args: Options for the random placer
        load_stats: JSON lines statistics file to continue from
        save_stats: Where to write the statistics at the end
        summary: Report over every retained episode at the end
        progress_bar: Show a tqdm bar over episodes

    Returns:
        Training history with per-episode scores, max tiles, lengths and outcomes
    """
    stat = Statistics(total, block, limit)
    if load_stats:
        stat.load(load_stats)

    play = StrategicSlider(slide_args)
    evil = RandomPlacer(place_args)

    logger.info(f"Slider options: {play.config}")
    logger.info(f"Placer options: {evil.config}")
    logger.info(f"Weight tables: {play.weights.sizes}")

    history: Dict[str, List] = {'scores': [], 'max_tiles': [], 'lengths': [], 'outcomes': []}

    with tqdm(total=total, initial=stat.step(), desc="Training", disable=not progress_bar) as bar:
        while not stat.is_finished():
            outcome = play_episode(stat, play, evil)
            game = stat.back()
            history['scores'].append(game.score)
            history['max_tiles'].append((1 << game.max_tile()) if game.max_tile() else 0)
            history['lengths'].append(game.step())
            history['outcomes'].append(outcome)
            bar.update(1)

    if summary:
        stat.show(window=len(stat))

    if save_stats:
        stat.save(save_stats)

    play.close()
    evil.close()

    wins = history['outcomes'].count("win")
    if history['outcomes']:
        logger.info(f"Win avoidance: {100.0 * (1 - wins / len(history['outcomes'])):.1f}% ({wins} wins)")

    return history


def evaluate(agent: StrategicSlider, num_episodes: int = 10, seed: Optional[int] = None) -> Dict[str, float]:
    """
    Greedy evaluation in the Gymnasium environment.

    Moves come straight from the learner's select(), so nothing is recorded
    and the weights are only read.

    Args:
        agent: Strategic slider to evaluate
        num_episodes: Number of evaluation episodes
        seed: Seed for tile placement

    Returns:
        Evaluation statistics
    """
    env = Game2048(seed=seed)
    scores = []
    max_tiles = []
    wins = 0

    for _ in range(num_episodes):
        env.reset()
        done = False
        info = {"score": 0, "win": False, "max_tile": 0}

        while not done:
            choice = agent.learner.select(env.board)
            if choice is None:
                break
            _, _, done, _, info = env.step(choice[0])

        scores.append(info["score"])
        max_tiles.append(info["max_tile"])
        wins += int(info["win"])

    return {
        'avg_score': float(np.mean(scores)),
        'std_score': float(np.std(scores)),
        'max_score': int(np.max(scores)),
        'median_max_tile': int(np.median(max_tiles)),
        'max_tile': int(np.max(max_tiles)),
        'win_rate': wins / num_episodes
    }


def plot_training_curves(history: Dict[str, List], save_path: str = "plots/training_curves.png") -> None:
    """Plot score, max tile and episode length curves."""
    directory = os.path.dirname(save_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))

    window = 100

    def moving_average(data, window):
        if len(data) < window:
            return data
        return np.convolve(data, np.ones(window)/window, mode='valid')

    axes[0].plot(moving_average(history['scores'], window))
    axes[0].set_title('Episode Score')
    axes[0].set_xlabel('Episode')
    axes[0].set_ylabel('Score')
    axes[0].grid(True)

    axes[1].plot(moving_average(history['max_tiles'], window))
    axes[1].axhline(y=8192, color='r', linestyle='--', label='8192')
    axes[1].set_title('Max Tile')
    axes[1].set_xlabel('Episode')
    axes[1].set_ylabel('Max Tile Value')
    axes[1].legend()
    axes[1].grid(True)

    axes[2].plot(moving_average(history['lengths'], window))
    axes[2].set_title('Episode Length')
    axes[2].set_xlabel('Episode')
    axes[2].set_ylabel('Moves')
    axes[2].grid(True)

    plt.tight_layout()
    plt.savefig(save_path, dpi=150)
    plt.close(fig)
    logger.info(f"Training curves saved to {save_path}")


def run_curriculum(work_dir: str, place_args: str = "", stages: Optional[List[Dict[str, Any]]] = None,
                   progress_bar: bool = True) -> Dict[str, Dict[str, List]]:
    """
    Run every curriculum stage, each one loading the weights of the previous.

    Returns:
        Training history per stage name
    """
    os.makedirs(work_dir, exist_ok=True)
    stages = CURRICULUM if stages is None else stages

    histories = {}
    prev = None
    for stage in stages:
        out = os.path.join(work_dir, f"{stage['name']}.w")
        slide_args = stage["slide"].format(prev=prev, out=out)

        logger.info(f"\n{'='*60}")
        logger.info(f"Stage {stage['name']}: {stage['total']} episodes")
        logger.info(f"{'='*60}")

        histories[stage["name"]] = run(
            total=stage["total"],
            block=stage.get("block", 1000),
            limit=stage.get("limit", 1000),
            slide_args=slide_args,
            place_args=place_args,
            save_stats=os.path.join(work_dir, f"{stage['name']}_stats.jsonl"),
            progress_bar=progress_bar
        )
        if "save=" in slide_args:
            prev = out

    return histories


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Train the strategic 2048 agent with TD(λ)')
    parser.add_argument('--total', type=int, default=1000,
                        help='Number of episodes (default: 1000)')
    parser.add_argument('--block', type=int, default=0,
                        help='Episodes per statistics report (default: total)')
    parser.add_argument('--limit', type=int, default=0,
                        help='Episodes kept for statistics (default: total)')
    parser.add_argument('--slide', type=str, default='',
                        help='Slider options, e.g. "init=65536,65536,65536,65536 alpha=0.1 save=w.bin"')
    parser.add_argument('--place', type=str, default='',
                        help='Placer options, e.g. "seed=42"')
    parser.add_argument('--load', type=str, default=None,
                        help='Statistics file to continue from')
    parser.add_argument('--save', type=str, default=None,
                        help='Statistics file to write')
    parser.add_argument('--summary', action='store_true',
                        help='Report over all retained episodes at the end')
    parser.add_argument('--curriculum', action='store_true',
                        help='Run the staged training curriculum')
    parser.add_argument('--work-dir', type=str, default='training_runs',
                        help='Directory for curriculum weights and statistics')
    parser.add_argument('--eval', type=int, default=0,
                        help='Greedy evaluation episodes after training')
    parser.add_argument('--plot', type=str, default=None,
                        help='Save training curves to this PNG file')
    parser.add_argument('--log-dir', type=str, default='logs',
                        help='Directory for log files')
    parser.add_argument('--seed', type=int, default=None,
                        help='Seed for the random placer')

    args = parser.parse_args()

    setup_logging(args.log_dir)

    place_args = args.place
    if args.seed is not None and "seed=" not in place_args:
        place_args = f"{place_args} seed={args.seed}".strip()

    if args.curriculum:
        work_dir = os.path.join(args.work_dir, datetime.now().strftime("training_%Y%m%d_%H%M%S"))
        histories = run_curriculum(work_dir, place_args)
        history = histories[CURRICULUM[-1]["name"]]
        eval_args = f"load={os.path.join(work_dir, CURRICULUM[-2]['name'] + '.w')} learning=0"
    else:
        history = run(
            total=args.total,
            block=args.block,
            limit=args.limit,
            slide_args=args.slide,
            place_args=place_args,
            load_stats=args.load,
            save_stats=args.save,
            summary=args.summary
        )
        eval_args = eval_slide_args(args.slide)

    if args.plot:
        plot_training_curves(history, args.plot)

    if args.eval > 0:
        agent = StrategicSlider(eval_args)
        stats = evaluate(agent, num_episodes=args.eval, seed=args.seed)
        logger.info(f"\n{'='*50}")
        logger.info(f"Final Evaluation ({args.eval} episodes)")
        logger.info(f"{'='*50}")
        logger.info(f"Average Score: {stats['avg_score']:.2f} ± {stats['std_score']:.2f}")
        logger.info(f"Max Score: {stats['max_score']}")
        logger.info(f"Median Max Tile: {stats['median_max_tile']}")
        logger.info(f"Best Max Tile: {stats['max_tile']}")
        logger.info(f"Win rate (two 8192): {stats['win_rate'] * 100:.1f}%")

        with open(os.path.join(args.log_dir, 'final_stats.json'), 'w') as f:
            json.dump(stats, f, indent=2)


def eval_slide_args(slide_args: str) -> str:
    """Slider options for evaluating the weights a training run saved."""
    config = AgentConfig(slide_args)
    if "save" in config:
        return f"load={config.get('save')} learning=0"
    kept = [f"{k}={v}" for k, v in config.options.items() if k not in ("name", "role", "save", "learning")]
    return " ".join(kept + ["learning=0"])


if __name__ == "__main__":
    main()
