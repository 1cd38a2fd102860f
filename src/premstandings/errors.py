"""Exceptions raised by the standings pipeline."""

from __future__ import annotations


class PremStandingsError(Exception):
    """Base class for all package errors."""


class MissingFeatureError(PremStandingsError, KeyError):
    """Required input columns are absent or unusable for the whole league."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class InvalidConfigurationError(PremStandingsError, ValueError):
    """A simulation or model setting is out of range."""


class StrengthConsistencyError(PremStandingsError, AssertionError):
    """A strength value or simulated batch violates an internal invariant."""


class MissingInputError(PremStandingsError, FileNotFoundError):
    """An input file produced by an earlier stage does not exist."""
