import os
import sys
import numpy as np
import pandas as pd
import pytest
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
from premstandings import (
    build_fixtures,
    estimate_strengths,
    expected_points_table,
    match_outcome_probs,
    plan_season,
    probability_summary,
    simulate_batch,
    simulate_match,
    simulate_season,
    simulate_standings,
    InvalidConfigurationError,
    MissingFeatureError,
    StrengthConsistencyError,
)
from premstandings.simulator import (
    match_points,
    season_table,
    simulate_fixtures,
    strength_map,
)


def _league(n_teams=20, seed=7):
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        {
            "team": [f"Team {i:02d}" for i in range(n_teams)],
            "avg_xG": rng.uniform(0.8, 2.2, n_teams),
            "avg_xGA": rng.uniform(0.8, 2.2, n_teams),
            "points": rng.integers(20, 90, n_teams),
        }
    )


def _neutral_strengths(teams):
    return pd.DataFrame(
        {"team": teams, "attack_strength": 1.0, "defense_strength": 1.0}
    )


def test_estimate_strengths_ratios():
    df = pd.DataFrame(
        {"team": ["A", "B"], "avg_xG": [2.0, 1.0], "avg_xGA": [1.0, 2.0]}
    )
    strengths, mean_xg, mean_xga = estimate_strengths(df)
    assert mean_xg == pytest.approx(1.5)
    assert mean_xga == pytest.approx(1.5)
    a = strengths.set_index("team")
    assert a.loc["A", "attack_strength"] == pytest.approx(2.0 / 1.5)
    assert a.loc["A", "defense_strength"] == pytest.approx(1.5 / 1.0)
    assert a.loc["B", "defense_strength"] == pytest.approx(1.5 / 2.0)


def test_estimate_strengths_neutral_default_for_missing_values():
    df = pd.DataFrame(
        {
            "team": ["A", "B", "C", "D"],
            "avg_xG": [1.5, np.nan, 1.2, np.inf],
            "avg_xGA": [1.1, 1.4, 0.0, np.nan],
        }
    )
    strengths, mean_xg, _ = estimate_strengths(df)
    s = strengths.set_index("team")
    assert s.loc["B", "attack_strength"] == 1.0
    assert s.loc["D", "attack_strength"] == 1.0
    assert s.loc["C", "defense_strength"] == 1.0
    assert s.loc["D", "defense_strength"] == 1.0
    for col in ("attack_strength", "defense_strength"):
        assert np.isfinite(strengths[col]).all()
        assert (strengths[col] > 0).all()
    assert mean_xg == pytest.approx(1.35)


def test_estimate_strengths_keeps_pass_through_columns():
    strengths, _, _ = estimate_strengths(_league())
    assert "points" in strengths.columns


def test_missing_xg_column_raises():
    with pytest.raises(MissingFeatureError, match="avg_xG"):
        estimate_strengths(_league().drop(columns="avg_xG"))


def test_zero_xga_for_every_team_raises():
    df = _league()
    df["avg_xGA"] = 0.0
    with pytest.raises(MissingFeatureError, match="avg_xGA"):
        estimate_strengths(df)


def test_duplicate_teams_rejected():
    df = pd.concat([_league(3), _league(3).iloc[[0]]], ignore_index=True)
    with pytest.raises(InvalidConfigurationError, match="Team 00"):
        estimate_strengths(df)


def test_simulate_standings_missing_column_fails_before_simulating(monkeypatch):
    import premstandings.simulator as sim

    def _fail(*args, **kwargs):
        raise AssertionError("simulation should not start")

    monkeypatch.setattr(sim, "simulate_batch", _fail)
    with pytest.raises(MissingFeatureError):
        simulate_standings(_league().drop(columns="avg_xG"), n_sims=10)


@pytest.mark.parametrize("n_sims", [0, -5, 2.5, True, "10"])
def test_invalid_simulation_count(n_sims):
    with pytest.raises(InvalidConfigurationError):
        simulate_standings(_league(), n_sims=n_sims)


@pytest.mark.parametrize("home_adv", [np.nan, np.inf, -1.0, 0.0])
def test_invalid_home_advantage(home_adv):
    with pytest.raises(InvalidConfigurationError):
        simulate_standings(_league(), n_sims=10, home_advantage=home_adv)


def test_match_points_rule():
    assert match_points(2, 1) == (3, 0)
    assert match_points(0, 0) == (1, 1)
    assert match_points(1, 4) == (0, 3)


def test_simulate_match_returns_valid_result():
    strengths = {"A": {"attack": 1.2, "defense": 0.9}, "B": {"attack": 0.8, "defense": 1.1}}
    rng = np.random.default_rng(1)
    for _ in range(50):
        res = simulate_match("A", "B", strengths, 1.4, rng=rng)
        assert res["home_goals"] >= 0 and res["away_goals"] >= 0
        assert (res["home_points"], res["away_points"]) == match_points(
            res["home_goals"], res["away_goals"]
        )


def test_simulate_match_rejects_invalid_strength():
    strengths = {"A": {"attack": np.nan, "defense": 1.0}, "B": {"attack": 1.0, "defense": 1.0}}
    with pytest.raises(StrengthConsistencyError, match="A"):
        simulate_match("A", "B", strengths, 1.4, rng=np.random.default_rng(0))


def test_plan_season_rejects_negative_strength():
    strengths = _neutral_strengths(["A", "B"])
    strengths.loc[1, "defense_strength"] = -0.5
    with pytest.raises(StrengthConsistencyError, match="B"):
        plan_season(strengths, 1.5)


def test_strength_map_matches_table():
    strengths, _, _ = estimate_strengths(_league(4))
    mapping = strength_map(strengths)
    assert set(mapping) == set(strengths["team"])
    assert mapping["Team 00"]["attack"] == strengths.loc[0, "attack_strength"]


def test_build_fixtures_counts():
    teams = [f"T{i}" for i in range(20)]
    double = build_fixtures(teams)
    single = build_fixtures(teams, double_round_robin=False)
    assert len(double) == 380
    assert len(single) == 190
    assert not (double["home_team"] == double["away_team"]).any()
    assert not double.duplicated().any()
    pairs = {frozenset(p) for p in single.itertuples(index=False)}
    assert len(pairs) == 190


def test_points_conservation():
    strengths, mean_xg, _ = estimate_strengths(_league())
    plan = plan_season(strengths, mean_xg)
    rng = np.random.default_rng(3)
    for _ in range(5):
        results = simulate_fixtures(plan, rng)
        table = season_table(results, plan)
        draws = (results["home_goals"] == results["away_goals"]).sum()
        decisive = len(results) - draws
        assert table["total_points"].sum() == 3 * decisive + 2 * draws


def test_season_ranks_are_permutation():
    strengths, mean_xg, _ = estimate_strengths(_league())
    plan = plan_season(strengths, mean_xg)
    table = simulate_season(plan, 11)
    assert sorted(table["rank"]) == list(range(1, 21))
    assert (table["goal_diff"] == table["goals_scored"] - table["goals_against"]).all()


def test_simulate_season_matches_fixture_results():
    strengths, mean_xg, _ = estimate_strengths(_league(6))
    plan = plan_season(strengths, mean_xg)
    direct = simulate_season(plan, 5)
    via_results = season_table(simulate_fixtures(plan, np.random.default_rng(5)), plan)
    pd.testing.assert_frame_equal(direct, via_results)


def test_ranking_tie_breaks():
    plan = plan_season(_neutral_strengths(["Zeta", "Alpha", "Mid"]), 1.5)
    fixtures = build_fixtures(plan.teams)
    results = fixtures.assign(home_goals=1, away_goals=1, home_points=1, away_points=1)
    table = season_table(results, plan)
    # Everything level: alphabetical order decides
    assert table["team"].tolist() == ["Alpha", "Mid", "Zeta"]

    scores = {
        ("Zeta", "Alpha"): (3, 0),
        ("Alpha", "Zeta"): (0, 0),
        ("Mid", "Alpha"): (1, 0),
        ("Alpha", "Mid"): (0, 0),
    }
    rows = []
    for home, away in fixtures.itertuples(index=False):
        hs, as_ = scores.get((home, away), (0, 0))
        rows.append({"home_team": home, "away_team": away, "home_goals": hs, "away_goals": as_})
    table = season_table(pd.DataFrame(rows), plan).set_index("team")
    # Zeta and Mid both have 6 points; Zeta's goal difference is better
    assert table.loc["Zeta", "rank"] == 1
    assert table.loc["Mid", "rank"] == 2
    assert table.loc["Alpha", "rank"] == 3


def test_batch_shape_and_ids():
    strengths, mean_xg, _ = estimate_strengths(_league(8))
    plan = plan_season(strengths, mean_xg)
    batch = simulate_batch(plan, n_sims=30, seed=1)
    assert len(batch) == 30 * 8
    assert batch["sim_id"].min() == 1 and batch["sim_id"].max() == 30
    for _, season in batch.groupby("sim_id"):
        assert season["rank"].tolist() == list(range(1, 9))


def test_batch_seasons_match_single_season_runs():
    strengths, mean_xg, _ = estimate_strengths(_league(6))
    plan = plan_season(strengths, mean_xg)
    batch = simulate_batch(plan, n_sims=3, seed=99)
    children = np.random.SeedSequence(99).spawn(3)
    third = simulate_season(plan, children[2])
    from_batch = batch[batch["sim_id"] == 3].drop(columns="sim_id").reset_index(drop=True)
    pd.testing.assert_frame_equal(from_batch, third, check_dtype=False)


def test_summary_properties():
    batch, summary = simulate_standings(_league(), n_sims=400, seed=2)
    assert len(summary) == 20
    for col in ("title_prob", "top4_prob", "midtable_prob", "relegation_prob"):
        assert summary[col].between(0, 1).all()
    assert (summary["top4_prob"] >= summary["title_prob"]).all()
    assert summary["avg_rank"].between(1, 20).all()
    assert summary["avg_rank"].is_monotonic_increasing
    assert np.isclose(summary["title_prob"].sum(), 1.0)
    assert np.isclose(summary["top4_prob"].sum(), 4.0)
    assert np.isclose(summary["midtable_prob"].sum(), 6.0)
    assert np.isclose(summary["relegation_prob"].sum(), 3.0)


def test_simulation_is_repeatable():
    _, first = simulate_standings(_league(), n_sims=200, seed=123)
    _, second = simulate_standings(_league(), n_sims=200, seed=123)
    pd.testing.assert_frame_equal(first, second, check_exact=True)


def test_different_seeds_differ():
    first, _ = simulate_standings(_league(), n_sims=50, seed=1)
    second, _ = simulate_standings(_league(), n_sims=50, seed=2)
    assert not first.equals(second)


def test_parallel_matches_sequential():
    sequential, seq_summary = simulate_standings(_league(), n_sims=1200, seed=5)
    parallel, par_summary = simulate_standings(_league(), n_sims=1200, seed=5, n_jobs=2)
    pd.testing.assert_frame_equal(sequential, parallel)
    pd.testing.assert_frame_equal(seq_summary, par_summary)


def test_stronger_team_wins_title_more_often():
    strengths = pd.DataFrame(
        {
            "team": ["A", "B"],
            "attack_strength": [2.0, 0.5],
            "defense_strength": [1.0, 1.0],
        }
    )
    plan = plan_season(strengths, league_mean_xg=1.5, home_advantage=1.0)
    batch = simulate_batch(plan, n_sims=20_000, seed=42)
    summary = probability_summary(batch, n_sims=20_000).set_index("team")
    assert summary.loc["A", "title_prob"] > 0.5
    assert summary.loc["A", "avg_rank"] < summary.loc["B", "avg_rank"]


def test_identical_teams_average_rank_is_central():
    teams = [f"Club {i:02d}" for i in range(20)]
    plan = plan_season(_neutral_strengths(teams), league_mean_xg=1.4)
    batch = simulate_batch(plan, n_sims=10_000, seed=8)
    summary = probability_summary(batch)
    assert np.allclose(summary["avg_rank"], 10.5, atol=0.35)


def test_summary_rejects_partial_batch():
    strengths, mean_xg, _ = estimate_strengths(_league(6))
    plan = plan_season(strengths, mean_xg)
    batch = simulate_batch(plan, n_sims=50, seed=4)
    partial = batch[batch["sim_id"] < 50]
    with pytest.raises(StrengthConsistencyError):
        probability_summary(partial, n_sims=50)
    with pytest.raises(StrengthConsistencyError):
        probability_summary(batch.drop(index=batch.index[0]))


def test_single_round_robin_plays_each_pair_once():
    strengths, mean_xg, _ = estimate_strengths(_league(10))
    plan = plan_season(strengths, mean_xg, double_round_robin=False)
    assert plan.n_fixtures == 45
    results = simulate_fixtures(plan, np.random.default_rng(0))
    assert season_table(results, plan)["total_points"].sum() <= 45 * 3


def test_match_outcome_probs():
    home, draw, away = match_outcome_probs(1.4, 1.4)
    assert np.isclose(home + draw + away, 1.0)
    assert np.isclose(home, away)
    home, _, away = match_outcome_probs(2.5, 0.7)
    assert home > away


def test_expected_points_identical_teams():
    teams = ["A", "B", "C", "D"]
    plan = plan_season(_neutral_strengths(teams), league_mean_xg=1.3, home_advantage=1.0)
    table = expected_points_table(plan)
    p_win, p_draw, _ = match_outcome_probs(1.3, 1.3)
    expected = 2 * (len(teams) - 1) * (3 * p_win + p_draw)
    assert np.allclose(table["expected_points"], expected)


def test_relegation_band_needs_twenty_clubs():
    two = pd.DataFrame({"team": ["A", "B"], "avg_xG": [2.0, 0.5], "avg_xGA": [1.0, 1.0]})
    _, summary = simulate_standings(two, n_sims=200, home_advantage=1.0, seed=1)
    assert (summary["relegation_prob"] == 0).all()
    assert summary["top4_prob"].tolist() == [1.0, 1.0]

    plan = plan_season(_neutral_strengths([f"Club {i}" for i in range(6)]), 1.4)
    summary = probability_summary(simulate_batch(plan, n_sims=300, seed=3))
    assert (summary["relegation_prob"] == 0).all()
    assert np.allclose(summary["top4_prob"] + summary["midtable_prob"], 1.0)


def test_relegation_band_in_larger_league():
    _, summary = simulate_standings(_league(24), n_sims=200, seed=6)
    # Ranks 18 to 24 are all in the drop zone
    assert np.isclose(summary["relegation_prob"].sum(), 7.0)
    assert np.isclose(summary["midtable_prob"].sum(), 6.0)


def test_plan_rates_match_single_match_rates():
    strengths, mean_xg, _ = estimate_strengths(_league(5))
    plan = plan_season(strengths, mean_xg, home_advantage=1.2)
    mapping = strength_map(strengths)
    for h, a, lam, mu in zip(plan.home_idx, plan.away_idx, plan.lambda_home, plan.lambda_away):
        home, away = mapping[plan.teams[h]], mapping[plan.teams[a]]
        assert np.isclose(lam, 1.2 * home["attack"] * away["defense"] * mean_xg)
        assert np.isclose(mu, away["attack"] * home["defense"] * mean_xg)


def test_fixture_points_follow_match_rule():
    strengths, mean_xg, _ = estimate_strengths(_league(8))
    results = simulate_fixtures(plan_season(strengths, mean_xg), np.random.default_rng(12))
    for row in results.itertuples(index=False):
        assert (row.home_points, row.away_points) == match_points(row.home_goals, row.away_goals)
