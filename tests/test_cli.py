import subprocess
import sys
import os
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]


def _write_teams(path, drop=None):
    df = pd.DataFrame(
        {
            "team": [f"Club {i}" for i in range(6)],
            "season": 2024,
            "points": [70, 62, 55, 48, 40, 33],
            "avg_xG": [2.0, 1.8, 1.5, 1.3, 1.1, 0.9],
            "avg_xGA": [0.9, 1.0, 1.2, 1.4, 1.6, 1.8],
        }
    )
    if drop:
        df = df.drop(columns=drop)
    df.to_csv(path, index=False)
    return path


def _run(args, **kwargs):
    return subprocess.run(
        [sys.executable, "main.py", *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
        **kwargs,
    )


def test_cli_writes_outputs(tmp_path):
    teams = _write_teams(tmp_path / "teams.csv")
    out = tmp_path / "out"
    result = _run(
        ["--file", str(teams), "--simulations", "50", "--seed", "1", "--out-dir", str(out)]
    )
    assert result.returncode == 0, result.stderr
    summary = pd.read_csv(out / "team_probabilities.csv")
    batch = pd.read_csv(out / "standings_simulations.csv")
    assert list(summary.columns) == [
        "team",
        "title_prob",
        "top4_prob",
        "midtable_prob",
        "relegation_prob",
        "avg_rank",
    ]
    assert len(batch) == 50 * 6
    assert "Club 0" in result.stdout


def test_cli_seed_from_environment(tmp_path):
    teams = _write_teams(tmp_path / "teams.csv")
    env = os.environ.copy()
    env["PREMSTANDINGS_SEED"] = "7"
    outputs = []
    for name in ("a", "b"):
        out = tmp_path / name
        result = _run(
            ["--file", str(teams), "--simulations", "20", "--out-dir", str(out)], env=env
        )
        assert result.returncode == 0, result.stderr
        outputs.append((out / "team_probabilities.csv").read_text())
    assert outputs[0] == outputs[1]


def test_cli_rejects_zero_simulations(tmp_path):
    teams = _write_teams(tmp_path / "teams.csv")
    out = tmp_path / "out"
    result = _run(["--file", str(teams), "--simulations", "0", "--out-dir", str(out)])
    assert result.returncode != 0
    assert "n_sims" in result.stderr
    assert not out.exists()


def test_cli_reports_missing_column(tmp_path):
    teams = _write_teams(tmp_path / "teams.csv", drop="avg_xG")
    out = tmp_path / "out"
    result = _run(["--file", str(teams), "--simulations", "10", "--out-dir", str(out)])
    assert result.returncode != 0
    assert "avg_xG" in result.stderr
    assert not out.exists()


def test_features_module_cli(tmp_path):
    raw = tmp_path / "raw"
    raw.mkdir()
    (raw / "E0_2021.csv").write_text(
        "Date,HomeTeam,AwayTeam,FTHG,FTAG\n"
        "12/09/2020,Arsenal,Fulham,3,0\n"
        "19/09/2020,Fulham,Arsenal,1,1\n",
        encoding="utf-8",
    )
    env = os.environ.copy()
    env["PYTHONPATH"] = str(ROOT / "src")
    subprocess.run(
        [
            sys.executable,
            "-m",
            "premstandings.features",
            "--raw-dir",
            str(raw),
            "--xg-dir",
            str(tmp_path / "understat"),
            "--out-dir",
            str(tmp_path / "data"),
            "--mock-xg",
        ],
        check=True,
        cwd=ROOT,
        env=env,
        capture_output=True,
    )
    combined = pd.read_csv(tmp_path / "data" / "combined_features.csv")
    assert set(combined["team"]) == {"Arsenal", "Fulham"}
    assert combined["avg_xG"].notna().all()
