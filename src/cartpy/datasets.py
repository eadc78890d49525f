# -*- coding: utf-8 -*-
"""
cartpy.datasets
===============

Thin pandas loader turning a table of observations (for instance one row per
country‑year) into the clean numeric matrix the tree engine expects.  Rows can
be filtered with a pandas query string or a predicate over the columns, so the
same table can feed several fits on different subsets.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
import os
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .exceptions import InsufficientDataError

logger = logging.getLogger(__name__)

RowFilter = Union[str, Callable[[pd.DataFrame], "pd.Series"]]


@dataclass(frozen=True)
class Dataset:
    features: np.ndarray
    target: np.ndarray
    feature_names: List[str]

    @property
    def n_samples(self) -> int:
        return int(self.features.shape[0])


def load_table(source: Union[str, "os.PathLike[str]", pd.DataFrame], target: str,
               features: Optional[Sequence[str]] = None, where: Optional[RowFilter] = None,
               **read_csv_kwargs) -> Dataset:
    """
    Load a CSV file (or use a DataFrame) as a feature matrix and target vector.

    Parameters
    ----------
    source : path or DataFrame
        CSV file read with :func:`pandas.read_csv`, or an existing frame.
    target : str
        Name of the target column.
    features : sequence of str, optional
        Feature columns in the desired order.  Defaults to every numeric
        column other than ``target``.
    where : str or callable, optional
        Row filter: a :meth:`pandas.DataFrame.query` expression, or a callable
        returning a boolean mask for the frame.

    Returns
    -------
    Dataset
        Rows with a missing value in any selected column are dropped.

    Raises
    ------
    ValueError
        Unknown, repeated or non-numeric columns, or the target listed among
        the features.
    InsufficientDataError
        No complete row is left after filtering.
    """
    if isinstance(source, pd.DataFrame):
        df = source
    else:
        df = pd.read_csv(source, **read_csv_kwargs)

    if target not in df.columns:
        raise ValueError(f"target column {target!r} not found")
    if where is not None:
        if isinstance(where, str):
            df = df.query(where)
        else:
            df = df.loc[np.asarray(where(df), dtype=bool)]

    if features is None:
        cols = [c for c in df.columns if c != target and pd.api.types.is_numeric_dtype(df[c])]
    else:
        cols = list(features)
        missing = [c for c in cols if c not in df.columns]
        if missing:
            raise ValueError(f"feature columns not found: {missing}")
        if target in cols:
            raise ValueError(f"target column {target!r} cannot also be a feature")
        if len(set(cols)) != len(cols):
            raise ValueError(f"feature columns must be unique, got {cols}")
    non_numeric = [c for c in cols + [target] if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"columns must be numeric: {non_numeric}")

    table = df[cols + [target]]
    complete = table.dropna()
    dropped = len(table) - len(complete)
    if dropped:
        logger.info("dropped %d of %d rows with missing values", dropped, len(table))
    if complete.empty:
        raise InsufficientDataError("no complete observations left after filtering")

    return Dataset(features=complete[cols].to_numpy(dtype=float),
                   target=complete[target].to_numpy(dtype=float),
                   feature_names=[str(c) for c in cols])
