# -*- coding: utf-8 -*-
"""
cartpy.pruning
==============

Minimal cost‑complexity pruning and the k‑fold cross‑validation used to pick
the pruning level.

The pruning path is computed by weakest‑link collapse: for every internal node
``t`` the link strength is

    g(t) = (R(t) - R(T_t)) / (|T_t| - 1)

where ``R(t)`` is the SSE of ``t`` as a leaf, ``R(T_t)`` the SSE of the leaves
below it and ``|T_t|`` their number.  The nodes with the smallest ``g`` are
collapsed together and that ``g`` becomes the next α, so the path is strictly
increasing in α and strictly decreasing in size, ending at the root‑only tree.

Cross‑validation evaluates every fold's own pruning path on a common grid
derived from the full‑data path: ``sqrt(alpha_i * alpha_{i+1})`` for each step
and ``inf`` for the final root‑only step.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .config import TreeConfig
from .exceptions import CrossValidationCancelled, InsufficientDataError, InvalidConfigurationError
from .tree import Tree, check_features

logger = logging.getLogger(__name__)

_TIE_RTOL = 1e-10


# -----------------------------------------------------------------------------
# Pruning path
# -----------------------------------------------------------------------------
class _WeakestLinks:
    """
    Array form of a tree and of its weakest‑link collapse order.

    Nodes are stored by pre‑order position, so every subtree is the contiguous
    slice ``[i, end[i])``.  ``collapse_step[i]`` is the first path step at
    which internal node ``i`` is a leaf; original leaves hold ``-1`` and nodes
    removed together with an ancestor keep ``_NEVER``.
    """

    _NEVER = np.iinfo(np.int64).max

    def __init__(self, tree: Tree):
        self.tree = tree
        nodes = list(tree.iter_nodes())
        pos = {node.node_id: i for i, node in enumerate(nodes)}
        n_nodes = len(nodes)

        self.node_ids = np.array([node.node_id for node in nodes], dtype=np.int64)
        self.value = np.array([node.value for node in nodes], dtype=float)
        self.impurity = np.array([node.impurity for node in nodes], dtype=float)
        self.left = np.full(n_nodes, -1, dtype=np.int64)
        self.right = np.full(n_nodes, -1, dtype=np.int64)
        self.parent = np.full(n_nodes, -1, dtype=np.int64)
        self.feature = np.zeros(n_nodes, dtype=np.int64)
        self.threshold = np.full(n_nodes, np.inf)
        for i, node in enumerate(nodes):
            if not node.is_leaf:
                l, r = pos[node.left.node_id], pos[node.right.node_id]
                self.left[i], self.right[i] = l, r
                self.parent[l] = self.parent[r] = i
                self.feature[i] = node.split.feature_index
                self.threshold[i] = node.split.threshold

        internal = self.left >= 0
        end = np.arange(1, n_nodes + 1, dtype=np.int64)
        r_sub = np.where(internal, 0.0, self.impurity)
        n_leaves = np.where(internal, 0, 1).astype(np.int64)
        # children follow their parent in pre-order
        for i in range(n_nodes - 1, -1, -1):
            if internal[i]:
                l, r = self.left[i], self.right[i]
                r_sub[i] = r_sub[l] + r_sub[r]
                n_leaves[i] = n_leaves[l] + n_leaves[r]
                end[i] = end[r]

        self.collapse_step = np.where(internal, self._NEVER, -1).astype(np.int64)
        self.alphas: List[float] = [0.0]
        self.step_leaves: List[int] = [int(n_leaves[0])]
        self.step_error: List[float] = [float(r_sub[0])]

        active = internal.copy()
        while active[0]:
            with np.errstate(divide="ignore", invalid="ignore"):
                g = np.where(active, np.maximum(self.impurity - r_sub, 0.0) / (n_leaves - 1), np.inf)
            alpha = float(g.min())
            if alpha <= self.alphas[-1]:
                step = len(self.alphas) - 1
            else:
                step = len(self.alphas)
                self.alphas.append(alpha)
                self.step_leaves.append(0)
                self.step_error.append(0.0)
            # ascending positions visit ancestors before descendants
            for w in np.flatnonzero(g <= alpha + _TIE_RTOL * abs(alpha)):
                if not active[w]:
                    continue
                active[w:end[w]] = False
                self.collapse_step[w] = step
                d_err = self.impurity[w] - r_sub[w]
                d_leaves = n_leaves[w] - 1
                r_sub[w] = self.impurity[w]
                n_leaves[w] = 1
                p = self.parent[w]
                while p >= 0:
                    r_sub[p] += d_err
                    n_leaves[p] -= d_leaves
                    p = self.parent[p]
            self.step_leaves[step] = int(n_leaves[0])
            self.step_error[step] = float(r_sub[0])

    def tree_at(self, step: int) -> Tree:
        collapsed = self.node_ids[self.collapse_step <= step]
        return self.tree.collapse(collapsed.tolist())

    def predict_steps(self, X, steps: Sequence[int]) -> np.ndarray:
        """Predictions of the trees at ``steps``, shape ``(len(steps), n_rows)``.

        Each row is routed once through the unpruned tree; the tree at step
        ``s`` answers with the first node on that route collapsed by ``s``.
        """
        X = check_features(X, self.tree.n_features)
        rows = np.arange(X.shape[0])
        at = np.zeros(X.shape[0], dtype=np.int64)
        route = [at]
        while True:
            internal = self.left[at] >= 0
            if not internal.any():
                break
            go_left = X[rows, self.feature[at]] <= self.threshold[at]
            at = np.where(internal, np.where(go_left, self.left[at], self.right[at]), at)
            route.append(at)
        route = np.stack(route, axis=1)
        first_collapse = np.minimum.accumulate(self.collapse_step[route], axis=1)

        out = np.empty((len(steps), X.shape[0]), dtype=float)
        for k, step in enumerate(steps):
            depth = (first_collapse > step).sum(axis=1)
            out[k] = self.value[route[rows, depth]]
        return out


class PruningStep:
    """``tree`` is optimal for every α in ``[alpha, next step's alpha)``.

    The tree is only built when first accessed.
    """

    __slots__ = ("alpha", "n_leaves", "error", "_links", "_index", "_tree")

    def __init__(self, alpha: float, n_leaves: int, error: float, links: _WeakestLinks, index: int):
        self.alpha = alpha
        self.n_leaves = n_leaves
        self.error = error
        self._links = links
        self._index = index
        self._tree: Optional[Tree] = None

    @property
    def tree(self) -> Tree:
        if self._tree is None:
            self._tree = self._links.tree_at(self._index)
        return self._tree

    def __repr__(self) -> str:
        return f"PruningStep(alpha={self.alpha:.6g}, n_leaves={self.n_leaves})"


def _path_from(links: _WeakestLinks) -> List[PruningStep]:
    return [PruningStep(alpha, leaves, error, links, i)
            for i, (alpha, leaves, error) in enumerate(zip(links.alphas, links.step_leaves, links.step_error))]


def pruning_path(tree: Tree) -> List[PruningStep]:
    """
    Compute the nested sequence of cost‑complexity optimal subtrees.

    Link strengths, subtree errors and leaf counts are kept in arrays and
    only the ancestors of a collapsed node are updated after each step.

    Returns
    -------
    list of PruningStep
        Starts with the tree itself at ``alpha=0`` (or its zero‑cost
        collapse) and ends with the root‑only tree.  α values are strictly
        increasing and leaf counts strictly decreasing.  ``error`` is the
        training SSE of each step.
    """
    steps = _path_from(_WeakestLinks(tree))
    logger.debug("pruning path: %d steps from %d leaves", len(steps), steps[0].n_leaves)
    return steps


def _step_at(alphas: np.ndarray, alpha: float) -> int:
    return int(np.searchsorted(alphas, alpha, side="right")) - 1


def prune_tree(tree: Tree, alpha: float) -> Tree:
    """
    Return the subtree of ``tree`` that is optimal for complexity ``alpha``.

    A root‑only tree is returned unchanged.
    """
    if alpha < 0:
        raise InvalidConfigurationError(f"alpha must be non-negative, got {alpha!r}")
    if tree.root.is_leaf:
        return tree
    path = pruning_path(tree)
    alphas = np.array([s.alpha for s in path])
    return path[_step_at(alphas, alpha)].tree


def alpha_grid(path: Sequence[PruningStep]) -> np.ndarray:
    """Geometric means of adjacent path α values, ``inf`` for the last step."""
    alphas = np.array([s.alpha for s in path], dtype=float)
    return np.append(np.sqrt(alphas[:-1] * alphas[1:]), np.inf)


# -----------------------------------------------------------------------------
# Cross-validation
# -----------------------------------------------------------------------------
def fold_assignments(n_samples: int, k_folds: int, seed: Optional[int] = None) -> np.ndarray:
    """Assign each row to one of ``k_folds`` folds of near‑equal size."""
    rng = np.random.default_rng(seed)
    return rng.permutation(np.arange(n_samples) % k_folds)


@dataclass(frozen=True, eq=False)
class CVCurve:
    """
    Cross‑validated error for every step of the full‑data pruning path.

    Attributes
    ----------
    alphas : ndarray
        α of each full‑data path step.
    grid : ndarray
        α at which fold trees were evaluated for each step.
    n_leaves : ndarray of int
        Leaves of the full‑data tree at each step.
    train_error : ndarray
        Training MSE of the full‑data tree at each step.
    fold_errors : ndarray of shape (k_folds, n_steps)
        Held‑out MSE per fold; rows of failed folds are ``NaN``.
    failures : dict
        Fold index to error message for folds that could not be evaluated.
    """

    alphas: np.ndarray
    grid: np.ndarray
    n_leaves: np.ndarray
    train_error: np.ndarray
    fold_errors: np.ndarray
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def cv_error(self) -> np.ndarray:
        return self.fold_errors.mean(axis=0)

    @property
    def cv_std(self) -> np.ndarray:
        k = self.fold_errors.shape[0]
        return self.fold_errors.std(axis=0, ddof=1) / np.sqrt(k)

    @property
    def failed_folds(self) -> List[int]:
        return sorted(self.failures)

    def best_index(self, rule: str = "min") -> int:
        """
        Index of the selected step.

        ``"min"`` picks the lowest mean error, ``"1se"`` the largest α whose
        error is within one standard error of that minimum.  Ties go to the
        larger α (smaller tree).
        """
        err = self.cv_error
        if np.isnan(err).any():
            raise InsufficientDataError(
                f"cross-validated error is undefined (failed folds: {self.failed_folds})", curve=self)
        i_min = int(np.argmin(err))
        if rule == "min":
            limit = err[i_min] + _TIE_RTOL * max(abs(err[i_min]), 1.0)
        elif rule == "1se":
            limit = err[i_min] + self.cv_std[i_min]
        else:
            raise InvalidConfigurationError(f"unknown selection rule {rule!r}")
        return int(np.flatnonzero(err <= limit).max())

    def to_frame(self) -> pd.DataFrame:
        """Complexity table with one row per pruning step."""
        return pd.DataFrame({
            "alpha": self.alphas,
            "grid_alpha": self.grid,
            "n_splits": self.n_leaves - 1,
            "n_leaves": self.n_leaves,
            "train_error": self.train_error,
            "cv_error": self.cv_error,
            "cv_std": self.cv_std,
        })

    @classmethod
    def single_leaf(cls, tree: Tree, k_folds: int) -> "CVCurve":
        """Curve of a tree that cannot be pruned further (zero error everywhere)."""
        return cls(alphas=np.zeros(1), grid=np.array([np.inf]),
                   n_leaves=np.array([tree.n_leaves]),
                   train_error=np.array([tree.resubstitution_error / tree.root.n_samples]),
                   fold_errors=np.zeros((k_folds, 1)))


@dataclass
class _FoldResult:
    fold: int
    errors: Optional[np.ndarray]
    error: Optional[InsufficientDataError] = None


def _evaluate_fold(fold: int, X: np.ndarray, y: np.ndarray, train_idx: np.ndarray,
                   test_idx: np.ndarray, config: TreeConfig, grid: np.ndarray,
                   feature_names: Sequence[str]) -> _FoldResult:
    if test_idx.size == 0:
        return _FoldResult(fold, None, InsufficientDataError(f"fold {fold} holds no observations"))
    if train_idx.size < 2 * config.minbucket:
        return _FoldResult(fold, None, InsufficientDataError(
            f"fold {fold}: {train_idx.size} training rows, need at least {2 * config.minbucket}"))

    links = _WeakestLinks(Tree.grow(X[train_idx], y[train_idx], config, feature_names))
    path_alphas = np.asarray(links.alphas)
    at_grid = np.array([_step_at(path_alphas, beta) for beta in grid], dtype=np.int64)
    steps, inverse = np.unique(at_grid, return_inverse=True)

    resid = y[test_idx] - links.predict_steps(X[test_idx], steps)
    step_errors = np.mean(resid ** 2, axis=1)
    return _FoldResult(fold, step_errors[inverse.ravel()])


def cross_validate(X: np.ndarray, y: np.ndarray, path: Sequence[PruningStep], config: TreeConfig,
                   feature_names: Optional[Sequence[str]] = None, cancel=None,
                   verbose: int = 0) -> CVCurve:
    """
    Estimate the held‑out error of every step of ``path``.

    Parameters
    ----------
    X, y : ndarray
        The data the full tree was grown on.
    path : sequence of PruningStep
        Pruning path of the full‑data tree.
    config : TreeConfig
        Supplies ``k_folds``, ``seed``, ``n_jobs`` and the stopping rules
        for the fold trees.
    feature_names : sequence of str, optional
    cancel : object with ``is_set()``, optional
        Checked between folds; when set, :class:`CrossValidationCancelled`
        is raised.
    verbose : int, default=0
        Forwarded to :class:`joblib.Parallel`.

    Returns
    -------
    CVCurve
        Folds that are too small are recorded in ``failures`` and their
        rows are ``NaN``.
    """
    n = X.shape[0]
    k = int(config.k_folds)
    if feature_names is None:
        feature_names = path[0].tree.feature_names
    grid = alpha_grid(path)
    folds = fold_assignments(n, k, config.seed)

    tasks = (delayed(_evaluate_fold)(f, X, y, np.flatnonzero(folds != f), np.flatnonzero(folds == f),
                                     config, grid, feature_names)
             for f in range(k))
    results = Parallel(n_jobs=config.n_jobs, return_as="generator", verbose=verbose)(tasks)

    fold_errors = np.full((k, grid.size), np.nan)
    failures: Dict[int, str] = {}
    for done, res in enumerate(results, start=1):
        if res.error is not None:
            logger.warning("%s", res.error)
            failures[res.fold] = str(res.error)
        else:
            fold_errors[res.fold] = res.errors
        logger.info("cross-validation: fold %d/%d done", done, k)
        if done < k and cancel is not None and cancel.is_set():
            raise CrossValidationCancelled(f"cross-validation cancelled after {done} of {k} folds")

    return CVCurve(
        alphas=np.array([s.alpha for s in path]),
        grid=grid,
        n_leaves=np.array([s.n_leaves for s in path]),
        train_error=np.array([s.error / n for s in path]),
        fold_errors=fold_errors,
        failures=failures,
    )
