# -*- coding: utf-8 -*-
"""
cartpy.tree
===========

This module implements the growing half of a CART regression tree: the node
data model, the greedy split search, the recursive builder and an immutable
``Tree`` wrapper offering prediction, pre‑order traversal and variable
importance.

Splits minimise the sum of squared errors (SSE) of the two children.  Numeric
thresholds are evaluated at midpoints between distinct sorted values and every
child must keep at least ``minbucket`` observations.  Growing is fully
deterministic: ties are broken by the lowest feature index, then the lowest
threshold.

Pruning lives in :mod:`cartpy.pruning`; it never mutates a ``Tree`` but
returns new ones that share the untouched sub‑structure.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, replace
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np

from .config import TreeConfig
from .exceptions import FeatureDimensionMismatchError

logger = logging.getLogger(__name__)

# Improvements below this fraction of the parent SSE are rounding noise.
_GAIN_RTOL = 1e-10


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def default_feature_names(n_features: int) -> List[str]:
    return [f"feature_{j}" for j in range(n_features)]


def check_feature_names(feature_names: Optional[Sequence[str]], n_features: int) -> List[str]:
    """Return the column names, ``feature_j`` by default; names must be unique."""
    if feature_names is None:
        return default_feature_names(n_features)
    names = [str(name) for name in feature_names]
    if len(names) != n_features:
        raise FeatureDimensionMismatchError("feature_names length must match X.shape[1]")
    duplicates = sorted(name for name, count in Counter(names).items() if count > 1)
    if duplicates:
        raise ValueError(f"feature_names must be unique, got duplicates {duplicates}")
    return names


def check_features(X, n_features: Optional[int] = None) -> np.ndarray:
    """Return ``X`` as a finite 2‑D float array, checking its column count."""
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError(f"features must be a 2-D array, got shape {X.shape}")
    if n_features is not None and X.shape[1] != n_features:
        raise FeatureDimensionMismatchError(
            f"X has {X.shape[1]} features, but the tree was fitted with {n_features}")
    if not np.isfinite(X).all():
        raise ValueError("features must be finite; missing values are not supported")
    return X


def check_target(y, n_samples: int) -> np.ndarray:
    y = np.asarray(y, dtype=float).ravel()
    if y.shape[0] != n_samples:
        raise ValueError(f"target has {y.shape[0]} values but features have {n_samples} rows")
    if not np.isfinite(y).all():
        raise ValueError("target must be finite")
    return y


# -----------------------------------------------------------------------------
# Node
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Split:
    """Left branch is ``x[feature_index] <= threshold``."""

    feature_index: int
    threshold: float
    improvement: float


@dataclass(frozen=True, eq=False)
class Node:
    """A node of a regression tree.

    Attributes
    ----------
    node_id : int
        Pre‑order position in the fully grown tree.  Pruned copies keep the
        ids of the nodes they were derived from.
    depth : int
        Distance from the root (the root has depth 0).
    indices : ndarray of int
        Training rows routed to this node.
    value : float
        Mean target over ``indices``; the prediction when the node is a leaf.
    impurity : float
        Sum of squared deviations of the target from ``value``.
    split : Split or None
        Splitting rule for internal nodes; ``None`` for leaves.
    left, right : Node or None
        Children of an internal node.
    """

    node_id: int
    depth: int
    indices: np.ndarray
    value: float
    impurity: float
    split: Optional[Split] = None
    left: Optional["Node"] = None
    right: Optional["Node"] = None

    @property
    def is_leaf(self) -> bool:
        return self.split is None

    @property
    def n_samples(self) -> int:
        return int(self.indices.shape[0])

    @property
    def feature_index(self) -> Optional[int]:
        return None if self.split is None else self.split.feature_index

    @property
    def threshold(self) -> Optional[float]:
        return None if self.split is None else self.split.threshold

    def as_leaf(self) -> "Node":
        if self.is_leaf:
            return self
        return replace(self, split=None, left=None, right=None)


# -----------------------------------------------------------------------------
# Split search
# -----------------------------------------------------------------------------
def find_best_split(X: np.ndarray, y: np.ndarray, indices: np.ndarray,
                    minbucket: int, min_gain: float = 0.0) -> Optional[Split]:
    """
    Find the SSE‑minimising binary split of the rows in ``indices``.

    Each feature is sorted once and every boundary between distinct values is
    scored from prefix sums, so the scan is linear per feature after sorting.

    Parameters
    ----------
    X : ndarray of shape (n_samples, n_features)
    y : ndarray of shape (n_samples,)
    indices : ndarray of int
        Rows belonging to the node.
    minbucket : int
        Minimum number of rows on each side of the split.
    min_gain : float, default=0.0
        Splits improving the SSE by less than this are rejected.

    Returns
    -------
    Split or None
        ``None`` when no candidate respects ``minbucket`` or improves the SSE.
    """
    n = int(indices.shape[0])
    if n < 2 * minbucket:
        return None
    yy = y[indices]
    # centring keeps the prefix-sum formula well conditioned
    yc = yy - yy.mean()
    sse_parent = float(np.dot(yc, yc))
    if sse_parent <= 0.0:
        return None

    # position i puts sorted rows 0..i on the left
    positions = np.arange(minbucket - 1, n - minbucket)
    best: Optional[Split] = None
    best_gain = _GAIN_RTOL * sse_parent

    for j in range(X.shape[1]):
        col = X[indices, j]
        order = np.argsort(col, kind="mergesort")
        v = col[order]
        yk = yc[order]
        pos = positions[v[positions] != v[positions + 1]]
        if pos.size == 0:
            continue

        sy = np.cumsum(yk)
        sy2 = np.cumsum(yk * yk)
        SY = sy[-1]
        SY2 = sy2[-1]

        n_left = pos + 1.0
        n_right = n - n_left
        sse_left = sy2[pos] - sy[pos] ** 2 / n_left
        sse_right = (SY2 - sy2[pos]) - (SY - sy[pos]) ** 2 / n_right
        gains = sse_parent - (sse_left + sse_right)

        # argmax returns the first maximum, i.e. the lowest threshold
        k = int(np.argmax(gains))
        gain = float(gains[k])
        if gain > best_gain:
            i = int(pos[k])
            thr = 0.5 * (v[i] + v[i + 1])
            if thr >= v[i + 1]:  # adjacent floats
                thr = v[i]
            best = Split(feature_index=j, threshold=float(thr), improvement=gain)
            best_gain = gain

    if best is None or best.improvement < min_gain:
        return None
    return best


# -----------------------------------------------------------------------------
# Builder
# -----------------------------------------------------------------------------
class _Builder:
    """Grows a tree top‑down, numbering nodes in pre‑order."""

    def __init__(self, X: np.ndarray, y: np.ndarray, config: TreeConfig):
        self.X = X
        self.y = y
        self.maxdepth = int(config.maxdepth)
        self.minbucket = int(config.minbucket)
        self.min_gain = float(config.min_gain)
        self._next_id = 0

    def build(self, indices: np.ndarray, depth: int = 0) -> Node:
        node_id = self._next_id
        self._next_id += 1

        yy = self.y[indices]
        value = float(yy.mean())
        constant = bool(np.ptp(yy) == 0.0)
        impurity = 0.0 if constant else float(((yy - value) ** 2).sum())
        node = Node(node_id=node_id, depth=depth, indices=indices, value=value, impurity=impurity)

        if depth >= self.maxdepth or indices.shape[0] < 2 * self.minbucket or constant:
            return node
        split = find_best_split(self.X, self.y, indices, self.minbucket, self.min_gain)
        if split is None:
            return node

        go_left = self.X[indices, split.feature_index] <= split.threshold
        left = self.build(indices[go_left], depth + 1)
        right = self.build(indices[~go_left], depth + 1)
        return replace(node, split=split, left=left, right=right)


def build_tree(X: np.ndarray, y: np.ndarray, config: TreeConfig) -> Node:
    """Grow the unpruned tree for all rows of ``X`` and return its root."""
    root = _Builder(X, y, config).build(np.arange(X.shape[0]))
    logger.debug("grew tree on %d rows (maxdepth=%d, minbucket=%d)",
                 X.shape[0], config.maxdepth, config.minbucket)
    return root


# -----------------------------------------------------------------------------
# Tree
# -----------------------------------------------------------------------------
class Tree:
    """
    An immutable fitted regression tree.

    Parameters
    ----------
    root : Node
        Root node.
    config : TreeConfig
        Stopping configuration the tree was grown with.
    feature_names : sequence of str
        One name per feature column.

    Notes
    -----
    Use :meth:`grow` to fit a tree and :meth:`prune` or
    :func:`cartpy.pruning.pruning_path` to derive pruned copies.
    """

    __slots__ = ("_root", "_config", "_feature_names")

    def __init__(self, root: Node, config: TreeConfig, feature_names: Sequence[str]):
        self._root = root
        self._config = config
        self._feature_names = tuple(str(name) for name in feature_names)

    @classmethod
    def grow(cls, X, y, config: TreeConfig, feature_names: Optional[Sequence[str]] = None) -> "Tree":
        X = check_features(X)
        y = check_target(y, X.shape[0])
        if X.shape[0] == 0:
            raise ValueError("cannot grow a tree on an empty dataset")
        feature_names = check_feature_names(feature_names, X.shape[1])
        return cls(build_tree(X, y, config), config, feature_names)

    # ----------------------------- Structure -----------------------------

    @property
    def root(self) -> Node:
        return self._root

    @property
    def config(self) -> TreeConfig:
        return self._config

    @property
    def feature_names(self) -> List[str]:
        return list(self._feature_names)

    @property
    def n_features(self) -> int:
        return len(self._feature_names)

    def iter_nodes(self) -> Iterator[Node]:
        """Yield nodes in pre‑order (node, left subtree, right subtree)."""
        stack = [self._root]
        while stack:
            node = stack.pop()
            yield node
            if not node.is_leaf:
                stack.append(node.right)
                stack.append(node.left)

    def leaves(self) -> List[Node]:
        return [node for node in self.iter_nodes() if node.is_leaf]

    @property
    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    @property
    def n_leaves(self) -> int:
        return len(self.leaves())

    @property
    def n_splits(self) -> int:
        return self.n_leaves - 1

    @property
    def depth(self) -> int:
        return max(node.depth for node in self.iter_nodes())

    @property
    def resubstitution_error(self) -> float:
        """Total SSE of the leaves on the training rows."""
        return float(sum(leaf.impurity for leaf in self.leaves()))

    def collapse(self, node_ids: Iterable[int]) -> "Tree":
        """Return a copy in which the given internal nodes become leaves."""
        targets = set(node_ids)

        def visit(node: Node) -> Node:
            if node.is_leaf:
                return node
            if node.node_id in targets:
                return node.as_leaf()
            left = visit(node.left)
            right = visit(node.right)
            if left is node.left and right is node.right:
                return node
            return replace(node, left=left, right=right)

        root = visit(self._root)
        if root is self._root:
            return self
        return Tree(root, self._config, self._feature_names)

    def prune(self, alpha: float) -> "Tree":
        """Smallest subtree minimising ``SSE + alpha * n_leaves``."""
        from .pruning import prune_tree
        return prune_tree(self, alpha)

    # ----------------------------- Prediction -----------------------------

    def predict(self, X) -> np.ndarray:
        X = check_features(X, self.n_features)
        out = np.empty(X.shape[0], dtype=float)
        stack = [(self._root, np.arange(X.shape[0]))]
        while stack:
            node, rows = stack.pop()
            if node.is_leaf:
                out[rows] = node.value
                continue
            go_left = X[rows, node.feature_index] <= node.threshold
            stack.append((node.left, rows[go_left]))
            stack.append((node.right, rows[~go_left]))
        return out

    # ----------------------------- Importance -----------------------------

    def importance_vector(self) -> np.ndarray:
        acc = np.zeros(self.n_features, dtype=float)
        for node in self.iter_nodes():
            if not node.is_leaf:
                acc[node.split.feature_index] += node.split.improvement
        total = acc.sum()
        if total > 0.0:
            acc /= total
        return acc

    def importance(self) -> Dict[str, float]:
        """
        Share of the total SSE reduction attributed to each feature.

        Scores are non‑negative and sum to 1 whenever the tree has at least
        one split; a single‑leaf tree scores every feature 0.
        """
        return dict(zip(self._feature_names, self.importance_vector().tolist()))

    def __repr__(self) -> str:
        return (f"Tree(n_leaves={self.n_leaves}, depth={self.depth}, "
                f"n_features={self.n_features})")
