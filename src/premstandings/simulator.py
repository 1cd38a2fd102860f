from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import poisson

from .errors import (
    InvalidConfigurationError,
    MissingFeatureError,
    StrengthConsistencyError,
)

logger = logging.getLogger(__name__)

DEFAULT_HOME_ADVANTAGE = 1.15
DEFAULT_SIMULATIONS = 10_000

# Finishing-position bands used in the probability summary
TOP_PLACES = 4
MIDTABLE_PLACES = (5, 10)
# Positions 18-20 of a twenty-club league; smaller leagues have no drop zone
RELEGATION_RANK = 18

REQUIRED_COLUMNS = ("team", "avg_xG", "avg_xGA")

STANDINGS_COLUMNS = [
    "team",
    "total_points",
    "goals_scored",
    "goals_against",
    "goal_diff",
    "rank",
]
SUMMARY_COLUMNS = [
    "team",
    "title_prob",
    "top4_prob",
    "midtable_prob",
    "relegation_prob",
    "avg_rank",
]

# Seasons handed to a worker at once when running in parallel
_CHUNK_SIZE = 500


def _neutral_default(values: pd.Series) -> pd.Series:
    """Replace missing, non-finite or non-positive strengths with ``1.0``."""
    values = pd.to_numeric(values, errors="coerce").astype(float)
    usable = np.isfinite(values) & (values > 0)
    return values.where(usable, 1.0)


def _league_mean(team_stats: pd.DataFrame, column: str) -> float:
    values = pd.to_numeric(team_stats[column], errors="coerce").astype(float)
    values = values[np.isfinite(values)]
    mean = float(values.mean()) if not values.empty else math.nan
    if not math.isfinite(mean) or mean <= 0:
        raise MissingFeatureError(
            f"Column '{column}' is missing or zero for every team; "
            "cannot derive league-average strengths"
        )
    return mean


def estimate_strengths(
    team_stats: pd.DataFrame,
) -> tuple[pd.DataFrame, float, float]:
    """Return attack/defense strengths derived from aggregated xG.

    ``team_stats`` needs one row per team with ``team``, ``avg_xG`` and
    ``avg_xGA`` columns. Any other column is passed through untouched. The
    league means are taken over the teams with a usable value, and

    * ``attack_strength = avg_xG / league_mean_xG``
    * ``defense_strength = league_mean_xGA / avg_xGA``

    A team whose inputs are missing or produce a non-finite or non-positive
    ratio gets the neutral strength ``1.0``. The returned tuple holds the
    augmented table, the league mean xG and the league mean xGA.
    """

    missing = [c for c in REQUIRED_COLUMNS if c not in team_stats.columns]
    if missing:
        raise MissingFeatureError(
            "Team table is missing required column(s): " + ", ".join(missing)
        )

    duplicated = team_stats["team"][team_stats["team"].duplicated()]
    if not duplicated.empty:
        raise InvalidConfigurationError(
            "Team names must be unique; duplicated: "
            + ", ".join(sorted(map(str, duplicated.unique())))
        )

    mean_xg = _league_mean(team_stats, "avg_xG")
    mean_xga = _league_mean(team_stats, "avg_xGA")

    table = team_stats.copy().reset_index(drop=True)
    xg = pd.to_numeric(table["avg_xG"], errors="coerce").astype(float)
    xga = pd.to_numeric(table["avg_xGA"], errors="coerce").astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        attack = xg / mean_xg
        defense = mean_xga / xga
    table["attack_strength"] = _neutral_default(attack)
    table["defense_strength"] = _neutral_default(defense)

    neutral = table.loc[
        (table["attack_strength"] != attack) | (table["defense_strength"] != defense),
        "team",
    ].tolist()
    if neutral:
        logger.warning(
            "Using neutral strength for teams with unusable xG: %s",
            ", ".join(map(str, neutral)),
        )

    return table, mean_xg, mean_xga


def strength_map(strengths: pd.DataFrame) -> dict[str, dict[str, float]]:
    """Return ``{team: {"attack": ..., "defense": ...}}`` from a strength table."""
    return {
        row["team"]: {
            "attack": float(row["attack_strength"]),
            "defense": float(row["defense_strength"]),
        }
        for _, row in strengths.iterrows()
    }


def _check_strength(team: str, attack: float, defense: float) -> None:
    for name, value in (("attack", attack), ("defense", defense)):
        if not math.isfinite(value) or value < 0:
            raise StrengthConsistencyError(
                f"{team} has invalid {name} strength {value!r}"
            )


def validate_config(
    n_sims: int,
    home_advantage: float = DEFAULT_HOME_ADVANTAGE,
    n_jobs: int = 1,
) -> None:
    """Raise :class:`InvalidConfigurationError` for unusable settings."""
    if isinstance(n_sims, bool) or not isinstance(n_sims, (int, np.integer)):
        raise InvalidConfigurationError(
            f"n_sims must be a positive integer, got {n_sims!r}"
        )
    if n_sims <= 0:
        raise InvalidConfigurationError(
            f"n_sims must be a positive integer, got {n_sims}"
        )
    try:
        home_advantage = float(home_advantage)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(
            f"home_advantage must be a number, got {home_advantage!r}"
        ) from None
    if not math.isfinite(home_advantage) or home_advantage <= 0:
        raise InvalidConfigurationError(
            f"home_advantage must be a positive finite number, got {home_advantage}"
        )
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, (int, np.integer)) or n_jobs == 0:
        raise InvalidConfigurationError(
            f"n_jobs must be a non-zero integer, got {n_jobs!r}"
        )


def _match_rates(
    home_attack,
    home_defense,
    away_attack,
    away_defense,
    league_mean_xg: float,
    home_advantage: float,
):
    """Return the Poisson goal rates of the home and away sides.

    Works element-wise on arrays as well as on scalars.
    """
    lambda_home = home_advantage * home_attack * away_defense * league_mean_xg
    lambda_away = away_attack * home_defense * league_mean_xg
    return lambda_home, lambda_away


def _points(hs: np.ndarray, as_: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return home and away points (3 win, 1 draw, 0 loss) per scoreline."""
    home_pts = np.where(hs > as_, 3, np.where(hs == as_, 1, 0))
    away_pts = np.where(as_ > hs, 3, np.where(hs == as_, 1, 0))
    return home_pts, away_pts


def match_points(home_goals: int, away_goals: int) -> tuple[int, int]:
    """Return points for home and away sides from a scoreline."""
    home_pts, away_pts = _points(np.asarray(home_goals), np.asarray(away_goals))
    return int(home_pts), int(away_pts)


def simulate_match(
    home_team: str,
    away_team: str,
    strengths: Mapping[str, Mapping[str, float]],
    league_mean_xg: float,
    home_advantage: float = DEFAULT_HOME_ADVANTAGE,
    rng: np.random.Generator | None = None,
) -> dict:
    """Draw one scoreline from independent Poisson goal counts.

    ``strengths`` maps each team to its ``attack`` and ``defense``
    multipliers (see :func:`strength_map`).
    """
    if rng is None:
        rng = np.random.default_rng()

    home = strengths[home_team]
    away = strengths[away_team]
    _check_strength(home_team, home["attack"], home["defense"])
    _check_strength(away_team, away["attack"], away["defense"])

    mu_home, mu_away = _match_rates(
        home["attack"],
        home["defense"],
        away["attack"],
        away["defense"],
        league_mean_xg,
        home_advantage,
    )
    hs = int(rng.poisson(mu_home))
    as_ = int(rng.poisson(mu_away))
    home_points, away_points = match_points(hs, as_)
    return {
        "home_team": home_team,
        "away_team": away_team,
        "home_goals": hs,
        "away_goals": as_,
        "home_points": home_points,
        "away_points": away_points,
    }


def _fixture_indices(
    n_teams: int, double_round_robin: bool = True
) -> tuple[np.ndarray, np.ndarray]:
    if double_round_robin:
        return np.nonzero(~np.eye(n_teams, dtype=bool))
    return np.triu_indices(n_teams, k=1)


def build_fixtures(
    teams: Sequence[str], double_round_robin: bool = True
) -> pd.DataFrame:
    """Return every fixture of one season.

    The double round-robin pairs each team with every other team twice, once
    at home and once away: ``n * (n - 1)`` fixtures, 380 for twenty clubs.
    With ``double_round_robin=False`` each pair meets once and the team that
    comes first in ``teams`` is at home: ``n * (n - 1) / 2`` fixtures.
    """
    teams = list(teams)
    home_idx, away_idx = _fixture_indices(len(teams), double_round_robin)
    return pd.DataFrame(
        {
            "home_team": [teams[i] for i in home_idx],
            "away_team": [teams[j] for j in away_idx],
        }
    )


@dataclass(frozen=True, eq=False)
class SeasonPlan:
    """Fixture list and Poisson rates shared by every simulated season."""

    teams: tuple[str, ...]
    home_idx: np.ndarray
    away_idx: np.ndarray
    lambda_home: np.ndarray
    lambda_away: np.ndarray
    name_order: np.ndarray

    @property
    def n_fixtures(self) -> int:
        return len(self.home_idx)


def plan_season(
    strengths: pd.DataFrame,
    league_mean_xg: float,
    home_advantage: float = DEFAULT_HOME_ADVANTAGE,
    double_round_robin: bool = True,
) -> SeasonPlan:
    """Precompute fixtures and goal rates from a strength table."""
    teams = tuple(str(t) for t in strengths["team"])
    attack = strengths["attack_strength"].to_numpy(dtype=float)
    defense = strengths["defense_strength"].to_numpy(dtype=float)
    for team, a, d in zip(teams, attack, defense):
        _check_strength(team, a, d)

    home_idx, away_idx = _fixture_indices(len(teams), double_round_robin)
    lambda_home, lambda_away = _match_rates(
        attack[home_idx],
        defense[home_idx],
        attack[away_idx],
        defense[away_idx],
        league_mean_xg,
        home_advantage,
    )

    # Alphabetical position of every team, the last ranking key
    name_order = np.empty(len(teams), dtype=int)
    name_order[np.argsort(np.array(teams, dtype=object), kind="stable")] = np.arange(len(teams))

    return SeasonPlan(teams, home_idx, away_idx, lambda_home, lambda_away, name_order)


def _draw_scores(
    plan: SeasonPlan, rng: np.random.Generator
) -> tuple[np.ndarray, np.ndarray]:
    return rng.poisson(plan.lambda_home), rng.poisson(plan.lambda_away)


def _tally(
    plan: SeasonPlan, hs: np.ndarray, as_: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return points, goals for, goals against and rank per team."""
    n = len(plan.teams)
    home_pts, away_pts = _points(hs, as_)

    def _sum(idx: np.ndarray, values: np.ndarray) -> np.ndarray:
        return np.bincount(idx, weights=values, minlength=n)

    points = (_sum(plan.home_idx, home_pts) + _sum(plan.away_idx, away_pts)).astype(int)
    gf = (_sum(plan.home_idx, hs) + _sum(plan.away_idx, as_)).astype(int)
    ga = (_sum(plan.home_idx, as_) + _sum(plan.away_idx, hs)).astype(int)

    # lexsort uses the last key as primary: points, goal difference, goals
    # scored (all descending), then team name
    order = np.lexsort((plan.name_order, -gf, -(gf - ga), -points))
    rank = np.empty(n, dtype=int)
    rank[order] = np.arange(1, n + 1)
    return points, gf, ga, rank


def _standings_frame(
    plan: SeasonPlan,
    points: np.ndarray,
    gf: np.ndarray,
    ga: np.ndarray,
    rank: np.ndarray,
) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "team": plan.teams,
            "total_points": points,
            "goals_scored": gf,
            "goals_against": ga,
            "goal_diff": gf - ga,
            "rank": rank,
        }
    )
    return df.sort_values("rank").reset_index(drop=True)[STANDINGS_COLUMNS]


def simulate_fixtures(
    plan: SeasonPlan, rng: np.random.Generator | None = None
) -> pd.DataFrame:
    """Play every fixture of ``plan`` once and return the match results."""
    if rng is None:
        rng = np.random.default_rng()
    hs, as_ = _draw_scores(plan, rng)
    home_pts, away_pts = _points(hs, as_)
    return pd.DataFrame(
        {
            "home_team": [plan.teams[i] for i in plan.home_idx],
            "away_team": [plan.teams[j] for j in plan.away_idx],
            "home_goals": hs,
            "away_goals": as_,
            "home_points": home_pts,
            "away_points": away_pts,
        }
    )


def season_table(results: pd.DataFrame, plan: SeasonPlan) -> pd.DataFrame:
    """Aggregate match results for the fixtures of ``plan`` into standings."""
    index = {team: i for i, team in enumerate(plan.teams)}
    home_idx = results["home_team"].map(index).to_numpy()
    away_idx = results["away_team"].map(index).to_numpy()
    if not (np.array_equal(home_idx, plan.home_idx) and np.array_equal(away_idx, plan.away_idx)):
        raise StrengthConsistencyError("Results do not match the planned fixtures")
    hs = results["home_goals"].to_numpy()
    as_ = results["away_goals"].to_numpy()
    return _standings_frame(plan, *_tally(plan, hs, as_))


def simulate_season(
    plan: SeasonPlan,
    rng: np.random.Generator | int | np.random.SeedSequence | None = None,
) -> pd.DataFrame:
    """Simulate one season and return its standings sorted by rank.

    ``rng`` may be a generator, an integer seed or a seed sequence.
    Ranking order: total points, goal difference and goals scored (all
    descending), then team name ascending.
    """
    rng = np.random.default_rng(rng)
    hs, as_ = _draw_scores(plan, rng)
    return _standings_frame(plan, *_tally(plan, hs, as_))


def _simulate_chunk(
    plan: SeasonPlan, seeds: Sequence[np.random.SeedSequence]
) -> np.ndarray:
    """Return an array of shape ``(len(seeds), 4, n_teams)``."""
    out = np.empty((len(seeds), 4, len(plan.teams)), dtype=int)
    for i, seed in enumerate(seeds):
        rng = np.random.default_rng(seed)
        hs, as_ = _draw_scores(plan, rng)
        out[i] = np.stack(_tally(plan, hs, as_))
    return out


def simulate_batch(
    plan: SeasonPlan,
    n_sims: int = DEFAULT_SIMULATIONS,
    seed: int | np.random.SeedSequence | None = None,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Simulate ``n_sims`` independent seasons.

    Every season draws from its own stream spawned from ``seed``, so the
    batch is identical for any ``n_jobs``. The result holds one row per team
    per season with a 1-based ``sim_id``, rows ordered by season then rank.
    """
    validate_config(n_sims, n_jobs=n_jobs)

    root = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    children = root.spawn(n_sims)
    logger.info(
        "Running %d simulated seasons (%d fixtures each)", n_sims, plan.n_fixtures
    )

    chunks = [children[i : i + _CHUNK_SIZE] for i in range(0, n_sims, _CHUNK_SIZE)]
    if n_jobs == 1:
        parts = [_simulate_chunk(plan, chunk) for chunk in chunks]
    else:
        parts = Parallel(n_jobs=n_jobs)(
            delayed(_simulate_chunk)(plan, chunk) for chunk in chunks
        )
    seasons = np.concatenate(parts)
    if len(seasons) != n_sims:
        raise StrengthConsistencyError(
            f"Simulated {len(seasons)} seasons but {n_sims} were requested"
        )

    points, gf, ga, rank = (seasons[:, k, :] for k in range(4))
    n_teams = len(plan.teams)
    order = np.argsort(rank, axis=1)

    def _by_rank(values: np.ndarray) -> np.ndarray:
        return np.take_along_axis(values, order, axis=1).ravel()

    teams = np.array(plan.teams, dtype=object)
    batch = pd.DataFrame(
        {
            "sim_id": np.repeat(np.arange(1, n_sims + 1), n_teams),
            "team": teams[order].ravel(),
            "total_points": _by_rank(points),
            "goals_scored": _by_rank(gf),
            "goals_against": _by_rank(ga),
            "goal_diff": _by_rank(gf - ga),
            "rank": _by_rank(rank),
        }
    )
    logger.info("Simulation complete")
    return batch


def probability_summary(
    batch: pd.DataFrame, n_sims: int | None = None
) -> pd.DataFrame:
    """Return finishing-position probabilities for each team.

    ``title_prob`` counts first places, ``top4_prob`` ranks up to
    :data:`TOP_PLACES`, ``midtable_prob`` ranks within
    :data:`MIDTABLE_PLACES` and ``relegation_prob`` ranks from
    :data:`RELEGATION_RANK` down. ``avg_rank`` is the expected
    finishing position. Rows are sorted by ``avg_rank``.

    When ``n_sims`` is given the batch must contain exactly that many
    seasons; a partial batch is never summarised.
    """
    seasons = batch["sim_id"].nunique()
    if n_sims is not None and seasons != n_sims:
        raise StrengthConsistencyError(
            f"Batch holds {seasons} seasons but {n_sims} were requested"
        )
    if seasons == 0:
        raise StrengthConsistencyError("Cannot summarise an empty batch")

    n_teams = batch["team"].nunique()
    ranks = np.arange(1, n_teams + 1)
    counts = pd.crosstab(batch["team"], batch["rank"]).reindex(
        columns=ranks, fill_value=0
    )
    incomplete = counts.index[counts.sum(axis=1) != seasons].tolist()
    if incomplete:
        raise StrengthConsistencyError(
            "Teams missing from some simulated seasons: "
            + ", ".join(map(str, incomplete))
        )

    def _share(mask: np.ndarray) -> pd.Series:
        return counts.loc[:, ranks[mask]].sum(axis=1) / seasons

    low, high = MIDTABLE_PLACES
    summary = pd.DataFrame(
        {
            "team": counts.index,
            "title_prob": _share(ranks == 1).to_numpy(),
            "top4_prob": _share(ranks <= TOP_PLACES).to_numpy(),
            "midtable_prob": _share((ranks >= low) & (ranks <= high)).to_numpy(),
            "relegation_prob": _share(ranks >= RELEGATION_RANK).to_numpy(),
            "avg_rank": (counts.to_numpy() @ ranks) / seasons,
        }
    )
    return summary.sort_values(["avg_rank", "team"]).reset_index(drop=True)[
        SUMMARY_COLUMNS
    ]


def simulate_standings(
    team_stats: pd.DataFrame,
    n_sims: int = DEFAULT_SIMULATIONS,
    home_advantage: float = DEFAULT_HOME_ADVANTAGE,
    seed: int | None = None,
    n_jobs: int = 1,
    double_round_robin: bool = True,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Estimate strengths, simulate ``n_sims`` seasons and summarise them.

    Parameters
    ----------
    team_stats : pd.DataFrame
        One row per team with ``team``, ``avg_xG`` and ``avg_xGA``.
    n_sims : int, default 10000
        Number of simulated seasons.
    home_advantage : float, default 1.15
        Multiplier applied to the home side's scoring rate.
    seed : int | None, optional
        Root seed. Identical seeds and inputs give identical output.
    n_jobs : int, default 1
        Worker processes used for the seasons (``-1`` for all cores).
    double_round_robin : bool, default True
        Play every pair home and away (380 fixtures for twenty clubs) rather
        than once.

    Returns
    -------
    tuple[pd.DataFrame, pd.DataFrame]
        The simulation batch and the probability summary.
    """
    validate_config(n_sims, home_advantage, n_jobs)
    strengths, mean_xg, _ = estimate_strengths(team_stats)
    plan = plan_season(strengths, mean_xg, home_advantage, double_round_robin)
    batch = simulate_batch(plan, n_sims=n_sims, seed=seed, n_jobs=n_jobs)
    return batch, probability_summary(batch, n_sims=n_sims)


def match_outcome_probs(
    lambda_home: float, lambda_away: float, max_goals: int = 10
) -> tuple[float, float, float]:
    """Return home win, draw and away win probabilities for Poisson rates."""
    goals = np.arange(max_goals + 1)
    probs = np.outer(poisson.pmf(goals, lambda_home), poisson.pmf(goals, lambda_away))
    home = np.tril(probs, -1).sum()
    draw = np.trace(probs)
    away = np.triu(probs, 1).sum()
    total = home + draw + away
    if total < 1.0:
        tail = 1.0 - total
        home += tail / 3
        draw += tail / 3
        away += tail / 3
    return float(home), float(draw), float(away)


def expected_points_table(plan: SeasonPlan, max_goals: int = 10) -> pd.DataFrame:
    """Return the analytic expected points of every team over ``plan``."""
    expected = np.zeros(len(plan.teams))
    for h, a, lam, mu in zip(
        plan.home_idx, plan.away_idx, plan.lambda_home, plan.lambda_away
    ):
        p_home, p_draw, p_away = match_outcome_probs(lam, mu, max_goals)
        expected[h] += 3 * p_home + p_draw
        expected[a] += 3 * p_away + p_draw
    df = pd.DataFrame({"team": plan.teams, "expected_points": expected})
    return df.sort_values(
        ["expected_points", "team"], ascending=[False, True]
    ).reset_index(drop=True)
