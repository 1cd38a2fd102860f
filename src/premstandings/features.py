"""Build per-team-season features from match results and xG files."""

from __future__ import annotations

import argparse
import json
import logging
import pathlib

import numpy as np
import pandas as pd

from .errors import MissingFeatureError, MissingInputError
from .simulator import REQUIRED_COLUMNS

logger = logging.getLogger(__name__)

RAW_DIR = "data/raw"
XG_DIR = "data/raw/understat"
OUT_DIR = "data"

# football-data.co.uk headers, compared case-insensitively
MATCH_COLUMNS = ("date", "hometeam", "awayteam", "fthg", "ftag")
XG_COLUMNS = ["team", "avg_xG", "avg_xGA", "xg_matches"]

PREMIER_LEAGUE_TEAMS = [
    "Arsenal",
    "Aston Villa",
    "Bournemouth",
    "Brentford",
    "Brighton",
    "Chelsea",
    "Crystal Palace",
    "Everton",
    "Fulham",
    "Ipswich",
    "Leicester",
    "Liverpool",
    "Manchester City",
    "Manchester United",
    "Newcastle",
    "Nottingham Forest",
    "Southampton",
    "Tottenham",
    "West Ham",
    "Wolves",
]


def _parse_dates(values: pd.Series) -> pd.Series:
    """Parse dates written as ``dd/mm/yyyy``, ``dd/mm/yy`` or ISO."""
    values = values.astype(str).str.strip()
    parsed = pd.to_datetime(values, format="%d/%m/%Y", errors="coerce")
    for fmt in ("%d/%m/%y", "%Y-%m-%d"):
        missing = parsed.isna()
        if not missing.any():
            break
        parsed.loc[missing] = pd.to_datetime(
            values[missing], format=fmt, errors="coerce"
        )
    return parsed


def season_of(dates: pd.Series) -> pd.Series:
    """Return the starting year of the season each date belongs to.

    Seasons start in August, so a match in May 2021 belongs to 2020.
    """
    return (dates.dt.year - (dates.dt.month < 8).astype(int)).astype(int)


def load_match_files(raw_dir: str | pathlib.Path = RAW_DIR) -> pd.DataFrame:
    """Read every ``E0_*.csv`` file in ``raw_dir`` into one match table.

    Unreadable files are skipped with a warning. Rows without teams, date or
    final score are dropped.
    """
    files = sorted(pathlib.Path(raw_dir).glob("E0_*.csv"))
    if not files:
        raise MissingInputError(
            f"No E0_*.csv match files found in {raw_dir}; download them first"
        )

    frames: list[pd.DataFrame] = []
    for path in files:
        logger.info("Loading match file %s", path.name)
        try:
            df = pd.read_csv(path, encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            logger.warning("Skipping unreadable match file %s: %s", path.name, exc)
            continue
        df.columns = [str(c).strip().lower() for c in df.columns]
        frames.append(df)

    if not frames:
        raise MissingInputError(f"None of the match files in {raw_dir} could be read")

    raw = pd.concat(frames, ignore_index=True)
    missing = [c for c in MATCH_COLUMNS if c not in raw.columns]
    if missing:
        raise MissingFeatureError(
            "Match files are missing column(s): "
            + ", ".join(missing)
            + " (expected Date, HomeTeam, AwayTeam, FTHG, FTAG)"
        )

    matches = pd.DataFrame(
        {
            "date": _parse_dates(raw["date"]),
            "home_team": raw["hometeam"].astype("string").str.strip(),
            "away_team": raw["awayteam"].astype("string").str.strip(),
            "home_goals": pd.to_numeric(raw["fthg"], errors="coerce"),
            "away_goals": pd.to_numeric(raw["ftag"], errors="coerce"),
        }
    )
    matches = matches.dropna().reset_index(drop=True)
    matches["home_team"] = matches["home_team"].astype(str)
    matches["away_team"] = matches["away_team"].astype(str)
    matches["home_goals"] = matches["home_goals"].astype(int)
    matches["away_goals"] = matches["away_goals"].astype(int)
    matches["season"] = season_of(matches["date"])
    return matches


def team_season_stats(matches: pd.DataFrame) -> pd.DataFrame:
    """Aggregate match results into one row per team and season."""
    home = pd.DataFrame(
        {
            "team": matches["home_team"],
            "season": matches["season"],
            "goals_for": matches["home_goals"],
            "goals_against": matches["away_goals"],
        }
    )
    away = pd.DataFrame(
        {
            "team": matches["away_team"],
            "season": matches["season"],
            "goals_for": matches["away_goals"],
            "goals_against": matches["home_goals"],
        }
    )
    rows = pd.concat([home, away], ignore_index=True)
    rows["win"] = (rows["goals_for"] > rows["goals_against"]).astype(int)
    rows["draw"] = (rows["goals_for"] == rows["goals_against"]).astype(int)
    rows["loss"] = (rows["goals_for"] < rows["goals_against"]).astype(int)

    stats = rows.groupby(["team", "season"], as_index=False).agg(
        matches=("goals_for", "size"),
        goals_for=("goals_for", "sum"),
        goals_against=("goals_against", "sum"),
        wins=("win", "sum"),
        draws=("draw", "sum"),
        losses=("loss", "sum"),
    )
    stats["goal_diff"] = stats["goals_for"] - stats["goals_against"]
    stats["points"] = 3 * stats["wins"] + stats["draws"]
    stats = stats.sort_values(
        ["season", "points", "team"], ascending=[True, False, True]
    ).reset_index(drop=True)
    return stats[
        [
            "team",
            "season",
            "matches",
            "goals_for",
            "goals_against",
            "goal_diff",
            "wins",
            "draws",
            "losses",
            "points",
        ]
    ]


def _read_xg_file(path: pathlib.Path) -> pd.DataFrame:
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, encoding="utf-8-sig")
    with open(path, "r", encoding="utf-8-sig") as f:
        payload = json.load(f)
    if isinstance(payload, dict) and "history" in payload:
        payload = payload["history"]
    if not isinstance(payload, list):
        raise ValueError("expected a list of matches or a 'history' array")
    return pd.DataFrame(payload)


def load_xg_files(xg_dir: str | pathlib.Path = XG_DIR) -> pd.DataFrame:
    """Return average xG and xGA per team from Understat-style files.

    Each file is named after the team (``manchester_city.json``) and holds
    one row per match with ``xG`` and ``xGA`` columns. JSON files may wrap
    the rows in a ``history`` array.
    """
    xg_dir = pathlib.Path(xg_dir)
    files = sorted(
        p for p in xg_dir.glob("*") if p.suffix.lower() in {".json", ".csv"}
    ) if xg_dir.is_dir() else []
    if not files:
        logger.warning("No xG files found in %s; skipping xG features", xg_dir)
        return pd.DataFrame(columns=XG_COLUMNS)

    rows: list[dict] = []
    for path in files:
        try:
            df = _read_xg_file(path)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable xG file %s: %s", path.name, exc)
            continue
        df.columns = [str(c).strip().lower() for c in df.columns]
        xg = pd.to_numeric(df["xg"], errors="coerce") if "xg" in df else pd.Series(dtype=float)
        xga = pd.to_numeric(df["xga"], errors="coerce") if "xga" in df else pd.Series(dtype=float)
        rows.append(
            {
                "team": path.stem.replace("_", " "),
                "avg_xG": xg.mean() if xg.notna().any() else np.nan,
                "avg_xGA": xga.mean() if xga.notna().any() else np.nan,
                "xg_matches": int(xg.notna().sum()),
            }
        )
    return pd.DataFrame(rows, columns=XG_COLUMNS)


def generate_mock_xg(
    out_dir: str | pathlib.Path = XG_DIR,
    teams: list[str] | None = None,
    matches_per_team: int = 5,
    seed: int = 42,
) -> list[pathlib.Path]:
    """Write synthetic Understat-style JSON files so the pipeline runs offline."""
    teams = list(teams) if teams is not None else list(PREMIER_LEAGUE_TEAMS)
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2024-08-10", periods=matches_per_team, freq="7D")

    paths: list[pathlib.Path] = []
    for number, team in enumerate(teams, start=1):
        history = [
            {
                "h_team": str(rng.choice(teams)),
                "a_team": str(rng.choice(teams)),
                "h_goals": int(rng.integers(0, 5)),
                "a_goals": int(rng.integers(0, 5)),
                "xG": round(float(rng.uniform(0.5, 3.0)), 2),
                "xGA": round(float(rng.uniform(0.5, 3.0)), 2),
                "date": date.strftime("%Y-%m-%d"),
                "result": str(rng.choice(["w", "d", "l"])),
            }
            for date in dates
        ]
        path = out_dir / f"{team.lower().replace(' ', '_')}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"id": str(number), "title": team, "history": history}, f, indent=2)
        paths.append(path)
    logger.info("Wrote %d mock xG files to %s", len(paths), out_dir)
    return paths


# football-data.co.uk short names -> Understat-style names, lower case
TEAM_ALIASES = {
    "man city": "manchester city",
    "man united": "manchester united",
    "nott'm forest": "nottingham forest",
    "newcastle united": "newcastle",
    "wolverhampton wanderers": "wolves",
    "tottenham hotspur": "tottenham",
    "west ham united": "west ham",
    "brighton & hove albion": "brighton",
    "leicester city": "leicester",
    "ipswich town": "ipswich",
    "sheffield weds": "sheffield wednesday",
    "sheffield utd": "sheffield united",
}


def _team_key(teams: pd.Series) -> pd.Series:
    keys = teams.astype(str).str.strip().str.lower()
    return keys.replace(TEAM_ALIASES)


def combine_features(stats: pd.DataFrame, xg: pd.DataFrame) -> pd.DataFrame:
    """Attach xG averages to team-season stats by normalised team name."""
    right = xg.assign(_key=_team_key(xg["team"]))
    duplicated = right.loc[right["_key"].duplicated(), "team"].tolist()
    if duplicated:
        logger.warning("Duplicate xG entries ignored for: %s", ", ".join(duplicated))
        right = right.drop_duplicates("_key")

    combined = stats.assign(_key=_team_key(stats["team"])).merge(
        right[["_key", "avg_xG", "avg_xGA", "xg_matches"]], on="_key", how="left"
    )
    combined = combined.drop(columns="_key")

    missing = combined.loc[combined["avg_xG"].isna(), "team"].unique().tolist()
    if missing:
        logger.warning("xG missing for teams: %s", ", ".join(missing))
    return combined


def build_features(
    raw_dir: str | pathlib.Path = RAW_DIR,
    xg_dir: str | pathlib.Path = XG_DIR,
    out_dir: str | pathlib.Path = OUT_DIR,
) -> pd.DataFrame:
    """Run the feature pipeline and write its three CSV files to ``out_dir``."""
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    stats = team_season_stats(load_match_files(raw_dir))
    stats.to_csv(out_dir / "team_season_stats.csv", index=False)
    logger.info("Saved team-season stats -> %s", out_dir / "team_season_stats.csv")

    xg = load_xg_files(xg_dir)
    xg.to_csv(out_dir / "xg_team_summary.csv", index=False)
    logger.info("Saved xG team summary -> %s", out_dir / "xg_team_summary.csv")

    combined = combine_features(stats, xg)
    combined.to_csv(out_dir / "combined_features.csv", index=False)
    logger.info("Saved combined features -> %s", out_dir / "combined_features.csv")
    return combined


def load_team_stats(
    path: str | pathlib.Path = "data/combined_features.csv",
    season: int | None = None,
) -> pd.DataFrame:
    """Load the team table consumed by the simulator.

    Rows without points are dropped and team names trimmed. When the file
    covers several seasons only ``season`` is kept, the latest by default.
    """
    path = pathlib.Path(path)
    if not path.exists():
        raise MissingInputError(f"{path} not found; build the features first")

    df = pd.read_csv(path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise MissingFeatureError(
            f"{path} is missing required column(s): " + ", ".join(missing)
        )
    if "points" in df.columns:
        df = df[df["points"].notna()]
    df = df.assign(team=df["team"].astype(str).str.strip())

    if "season" in df.columns and not df.empty:
        if season is None:
            season = int(df["season"].max())
        df = df[df["season"] == season]
        if df.empty:
            raise MissingInputError(f"No rows for season {season} in {path}")
    return df.reset_index(drop=True)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Build per-team-season features from match and xG files"
    )
    parser.add_argument("--raw-dir", default=RAW_DIR, help="directory with E0_*.csv files")
    parser.add_argument("--xg-dir", default=XG_DIR, help="directory with team xG files")
    parser.add_argument("--out-dir", default=OUT_DIR, help="directory for the output CSVs")
    parser.add_argument(
        "--mock-xg",
        action="store_true",
        help="write synthetic xG files to --xg-dir before building",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    if args.mock_xg:
        generate_mock_xg(args.xg_dir)
    combined = build_features(args.raw_dir, args.xg_dir, args.out_dir)

    latest = combined["season"].max()
    top = combined[combined["season"] == latest].head(5)
    print(f"Top 5 by points in {latest}:")
    for _, row in top.iterrows():
        print(f"{row['team']:20s} {row['points']:3d} {row['goal_diff']:+4d}")


if __name__ == "__main__":
    main()
