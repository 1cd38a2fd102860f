"""Regression models that predict season points from team features."""

from __future__ import annotations

import argparse
import logging
import pathlib

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor

from .errors import InvalidConfigurationError, MissingFeatureError, MissingInputError

logger = logging.getLogger(__name__)

FEATURE_COLUMNS = [
    "wins",
    "draws",
    "losses",
    "goal_diff",
    "goals_for",
    "goals_against",
    "avg_xG",
    "avg_xGA",
]
TARGET_COLUMN = "points"
MODEL_NAMES = ("boosted", "forest")
# Weights of the boosted and forest predictions in the ensemble
ENSEMBLE_WEIGHTS = (0.7, 0.3)
MODEL_DIR = "models"


def model_frame(data: pd.DataFrame) -> pd.DataFrame:
    """Return the complete rows usable for training or prediction."""
    needed = ["team", "season", *FEATURE_COLUMNS, TARGET_COLUMN]
    missing = [c for c in needed if c not in data.columns]
    if missing:
        raise MissingFeatureError(
            "Feature table is missing column(s): " + ", ".join(missing)
        )
    frame = data[needed].copy()
    for col in [*FEATURE_COLUMNS, TARGET_COLUMN]:
        frame[col] = pd.to_numeric(frame[col], errors="coerce")
    frame = frame.dropna().reset_index(drop=True)
    if frame.empty:
        raise InvalidConfigurationError("No complete rows to model; is xG missing?")
    return frame


def split_latest_season(data: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Train on earlier seasons and hold out the latest one."""
    frame = model_frame(data)
    seasons = frame["season"].unique()
    if len(seasons) < 2:
        raise InvalidConfigurationError(
            "At least two seasons are needed to train and test the models"
        )
    latest = frame["season"].max()
    train = frame[frame["season"] < latest].reset_index(drop=True)
    test = frame[frame["season"] == latest].reset_index(drop=True)
    return train, test


def train_models(train: pd.DataFrame, seed: int = 42) -> dict:
    """Fit the gradient-boosted and random forest points models."""
    X = train[FEATURE_COLUMNS].to_numpy(dtype=float)
    y = train[TARGET_COLUMN].to_numpy(dtype=float)

    models = {
        "boosted": GradientBoostingRegressor(
            n_estimators=200,
            max_depth=4,
            learning_rate=0.1,
            subsample=0.8,
            random_state=seed,
        ),
        "forest": RandomForestRegressor(n_estimators=500, random_state=seed),
    }
    for name, model in models.items():
        logger.info("Training %s model on %d team-seasons", name, len(train))
        model.fit(X, y)
    return models


def predict_points(
    models: dict,
    data: pd.DataFrame,
    weights: tuple[float, float] = ENSEMBLE_WEIGHTS,
) -> pd.DataFrame:
    """Return predicted points and rank for each row of ``data``.

    ``weights`` are the shares of the boosted and forest predictions and are
    normalised to sum to one.
    """
    weights = np.asarray(weights, dtype=float)
    if weights.shape != (2,) or (weights < 0).any() or weights.sum() <= 0:
        raise InvalidConfigurationError(
            f"Ensemble weights must be two non-negative numbers, got {weights.tolist()}"
        )
    weights = weights / weights.sum()

    X = data[FEATURE_COLUMNS].to_numpy(dtype=float)
    preds = np.column_stack([models[name].predict(X) for name in MODEL_NAMES])
    pred_df = pd.DataFrame(
        {"team": data["team"].to_numpy(), "predicted_points": np.round(preds @ weights, 1)}
    )
    pred_df = pred_df.sort_values(
        ["predicted_points", "team"], ascending=[False, True]
    ).reset_index(drop=True)
    pred_df["rank"] = range(1, len(pred_df) + 1)
    return pred_df


def save_models(models: dict, model_dir: str | pathlib.Path = MODEL_DIR) -> list[pathlib.Path]:
    model_dir = pathlib.Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in MODEL_NAMES:
        path = model_dir / f"{name}_model.joblib"
        joblib.dump(models[name], path)
        paths.append(path)
    logger.info("Saved trained models to %s", model_dir)
    return paths


def load_models(model_dir: str | pathlib.Path = MODEL_DIR) -> dict:
    model_dir = pathlib.Path(model_dir)
    models = {}
    for name in MODEL_NAMES:
        path = model_dir / f"{name}_model.joblib"
        if not path.exists():
            raise MissingInputError(f"{path} not found; train the models first")
        models[name] = joblib.load(path)
    return models


def predict_standings(
    features_path: str | pathlib.Path = "data/combined_features.csv",
    *,
    model_dir: str | pathlib.Path = MODEL_DIR,
    out_dir: str | pathlib.Path = "outputs",
    seed: int = 42,
) -> pd.DataFrame:
    """Train on past seasons, predict the latest and write the results."""
    features_path = pathlib.Path(features_path)
    if not features_path.exists():
        raise MissingInputError(f"{features_path} not found; build the features first")

    train, test = split_latest_season(pd.read_csv(features_path))
    models = train_models(train, seed=seed)
    save_models(models, model_dir)

    pred_df = predict_points(models, test)
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    pred_df.to_csv(out_dir / "final_predictions.csv", index=False)
    logger.info("Saved final predictions -> %s", out_dir / "final_predictions.csv")
    return pred_df


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Predict final standings with points regression models"
    )
    parser.add_argument(
        "--file", default="data/combined_features.csv", help="combined features CSV"
    )
    parser.add_argument("--model-dir", default=MODEL_DIR, help="where to save the models")
    parser.add_argument("--out-dir", default="outputs", help="where to write predictions")
    parser.add_argument("--seed", type=int, default=42, help="random seed for the models")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    pred_df = predict_standings(
        args.file, model_dir=args.model_dir, out_dir=args.out_dir, seed=args.seed
    )
    print(f"{'Pos':>3}  {'Team':20s} {'Points':>6}")
    for _, row in pred_df.iterrows():
        print(f"{row['rank']:>3d}  {row['team']:20s} {row['predicted_points']:6.1f}")


if __name__ == "__main__":
    main()
