import argparse
import logging
import os
import pathlib

import pandas as pd

from .errors import PremStandingsError
from .features import load_team_stats
from .simulator import (
    DEFAULT_HOME_ADVANTAGE,
    DEFAULT_SIMULATIONS,
    estimate_strengths,
    expected_points_table,
    plan_season,
    probability_summary,
    simulate_batch,
    validate_config,
)

logger = logging.getLogger(__name__)

SEED_ENV = "PREMSTANDINGS_SEED"


def write_outputs(
    batch: pd.DataFrame, summary: pd.DataFrame, out_dir: str | pathlib.Path
) -> tuple[pathlib.Path, pathlib.Path]:
    """Write the simulation batch and probability summary as CSV files."""
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    batch_path = out_dir / "standings_simulations.csv"
    summary_path = out_dir / "team_probabilities.csv"
    batch.to_csv(batch_path, index=False)
    summary.to_csv(summary_path, index=False)
    logger.info("Saved simulation results to %s", out_dir)
    return batch_path, summary_path


def _default_seed() -> int | None:
    value = os.getenv(SEED_ENV)
    return int(value) if value else None


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description=(
            "Simulate Premier League seasons from team xG and report title, "
            "top-four, mid-table and relegation odds. Attack and defense "
            "strengths are taken relative to the league-average xG and xGA."
        )
    )
    parser.add_argument(
        "--file", default="data/combined_features.csv", help="team features CSV"
    )
    parser.add_argument(
        "--simulations",
        type=int,
        default=DEFAULT_SIMULATIONS,
        help="number of simulated seasons",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help=f"random seed for repeatable simulations (default: ${SEED_ENV})",
    )
    parser.add_argument(
        "--home-advantage",
        type=float,
        default=DEFAULT_HOME_ADVANTAGE,
        help="multiplier on the home side's scoring rate (default: 1.15)",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="worker processes for the simulation (-1 uses every core)",
    )
    parser.add_argument(
        "--single-round-robin",
        action="store_true",
        help="play each pair once instead of home and away",
    )
    parser.add_argument(
        "--season",
        type=int,
        default=None,
        help="season to simulate when the file covers several (default: latest)",
    )
    parser.add_argument("--out-dir", default="outputs", help="directory for the CSV outputs")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    try:
        seed = args.seed if args.seed is not None else _default_seed()
    except ValueError:
        parser.error(f"${SEED_ENV} must be an integer")

    try:
        validate_config(args.simulations, args.home_advantage, args.jobs)
        team_stats = load_team_stats(args.file, season=args.season)
        strengths, mean_xg, _ = estimate_strengths(team_stats)
        plan = plan_season(
            strengths,
            mean_xg,
            home_advantage=args.home_advantage,
            double_round_robin=not args.single_round_robin,
        )
        batch = simulate_batch(plan, n_sims=args.simulations, seed=seed, n_jobs=args.jobs)
        summary = probability_summary(batch, n_sims=args.simulations)
    except PremStandingsError as exc:
        parser.exit(1, f"{parser.prog}: error: {exc}\n")

    write_outputs(batch, summary, args.out_dir)

    expected = expected_points_table(plan).set_index("team")["expected_points"]
    print(
        f"{'Pos':>3}  {'Team':20s} {'xPts':>5} {'Title':>7} {'Top 4':>7} "
        f"{'Mid':>7} {'Releg':>7} {'AvgPos':>6}"
    )
    for pos, row in enumerate(summary.itertuples(index=False), start=1):
        print(
            f"{pos:>3d}  {row.team:20s} {expected[row.team]:5.1f} "
            f"{row.title_prob:7.2%} {row.top4_prob:7.2%} "
            f"{row.midtable_prob:7.2%} {row.relegation_prob:7.2%} {row.avg_rank:6.2f}"
        )


if __name__ == "__main__":
    main()
