# -*- coding: utf-8 -*-
"""Configuration object shared by the builder, the pruner and the estimator."""

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .exceptions import InvalidConfigurationError

SELECTION_RULES = ("min", "1se")


def _is_integer(value) -> bool:
    if isinstance(value, (bool, str)):
        return False
    try:
        return int(value) == value
    except (TypeError, ValueError, OverflowError):
        return False


def _is_number(value) -> bool:
    if isinstance(value, (bool, str)):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


@dataclass(frozen=True)
class TreeConfig:
    """
    Stopping, pruning and cross-validation parameters for one fit.

    Parameters
    ----------
    maxdepth : int, default=30
        Maximum depth of any node (the root has depth 0).
    minbucket : int, default=7
        Minimum number of observations in every leaf.
    min_gain : float, default=0.0
        Minimal SSE improvement required to accept a split.  Improvements must
        also be strictly positive.
    k_folds : int, default=10
        Number of cross-validation folds used to choose the pruning level.
    seed : int or None, default=None
        Seed for the fold assignment.
    selection : {"min", "1se"}, default="min"
        ``"min"`` keeps the α with the lowest cross-validated error;
        ``"1se"`` keeps the largest α within one standard error of it.
    n_jobs : int or None, default=None
        Number of joblib workers for the folds (``None`` runs them in-process).
    """

    maxdepth: int = 30
    minbucket: int = 7
    min_gain: float = 0.0
    k_folds: int = 10
    seed: Optional[int] = None
    selection: str = "min"
    n_jobs: Optional[int] = None

    def validate(self, n_samples: Optional[int] = None) -> "TreeConfig":
        if not _is_integer(self.maxdepth) or self.maxdepth <= 0:
            raise InvalidConfigurationError(f"maxdepth must be a positive integer, got {self.maxdepth!r}")
        if not _is_integer(self.minbucket) or self.minbucket <= 0:
            raise InvalidConfigurationError(f"minbucket must be a positive integer, got {self.minbucket!r}")
        if not _is_integer(self.k_folds) or self.k_folds < 2:
            raise InvalidConfigurationError(f"k_folds must be an integer >= 2, got {self.k_folds!r}")
        if not _is_number(self.min_gain) or not self.min_gain >= 0:
            raise InvalidConfigurationError(f"min_gain must be non-negative, got {self.min_gain!r}")
        if self.selection not in SELECTION_RULES:
            raise InvalidConfigurationError(
                f"selection must be one of {SELECTION_RULES}, got {self.selection!r}")
        if n_samples is not None and 2 * self.minbucket > n_samples:
            raise InvalidConfigurationError(
                f"minbucket={self.minbucket} exceeds half the dataset size (n={n_samples})")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
