"""CART regression tree with cross-validated cost-complexity pruning.
This module exposes the functional API (``fit``/``predict``/``importance``) and a
scikit-learn style estimator built on it.
"""
from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence
import warnings

import numpy as np
from sklearn.base import BaseEstimator, RegressorMixin

from .config import TreeConfig
from .exceptions import DegenerateTargetError, InsufficientDataError
from .pruning import CVCurve, cross_validate, pruning_path
from .tree import Node, Tree, check_feature_names, check_features, check_target

logger = logging.getLogger(__name__)

# ----------------------------- Functional API -----------------------------

@dataclass(frozen=True)
class PrunedTreeResult:
    """Outcome of :func:`fit`.

    ``tree`` is the selected pruned tree, ``full_tree`` the unpruned tree it
    was cut from, ``alpha`` the complexity it was selected at and
    ``cv_curve`` the cross-validated error of every pruning step.
    ``degenerate`` is True when the target had zero variance.
    """
    tree: Tree
    cv_curve: CVCurve
    full_tree: Tree
    alpha: float
    degenerate: bool = False


def fit_tree(features, target, config: TreeConfig, feature_names: Optional[Sequence[str]] = None,
             cancel=None, verbose: int = 0) -> PrunedTreeResult:
    """Grow, cross-validate and prune a regression tree according to ``config``."""
    config.validate()
    X = check_features(features)
    y = check_target(target, X.shape[0])
    n, m = X.shape
    feature_names = check_feature_names(feature_names, m)
    config.validate(n_samples=n)

    full = Tree.grow(X, y, config, feature_names)
    if np.ptp(y) == 0.0:
        warnings.warn(DegenerateTargetError(
            f"target is constant ({y[0]!r}); returning a single-leaf tree"), stacklevel=2)
        return PrunedTreeResult(tree=full, cv_curve=CVCurve.single_leaf(full, config.k_folds),
                                full_tree=full, alpha=0.0, degenerate=True)

    path = pruning_path(full)
    curve = cross_validate(X, y, path, config, feature_names, cancel=cancel, verbose=verbose)
    if curve.failures:
        raise InsufficientDataError(
            f"{len(curve.failures)} of {config.k_folds} folds were too small to grow a tree "
            f"(folds {curve.failed_folds}); cross-validated error is undefined", curve=curve)

    best = curve.best_index(config.selection)
    step = path[best]
    logger.info("selected alpha=%.6g with %d leaves (cv_error=%.6g, rule=%s)",
                step.alpha, step.n_leaves, curve.cv_error[best], config.selection)
    return PrunedTreeResult(tree=step.tree, cv_curve=curve, full_tree=full, alpha=step.alpha)


def fit(features, target, maxdepth: int = 30, minbucket: int = 7, k_folds: int = 10,
        seed: Optional[int] = None, *, feature_names: Optional[Sequence[str]] = None,
        min_gain: float = 0.0, selection: str = "min", n_jobs: Optional[int] = None,
        cancel=None, verbose: int = 0) -> PrunedTreeResult:
    """
    Fit a regression tree and prune it by k-fold cross-validation.

    Parameters
    ----------
    features : array-like of shape (n_samples, n_features)
        Finite numeric feature matrix.
    target : array-like of shape (n_samples,)
        Continuous target.
    maxdepth : int, default=30
        Maximum node depth (root = 0).
    minbucket : int, default=7
        Minimum observations per leaf; at most half the number of rows.
    k_folds : int, default=10
        Number of cross-validation folds.
    seed : int, optional
        Seed for the fold assignment.
    feature_names : sequence of str, optional
        Defaults to ``feature_0``, ``feature_1``, ...
    min_gain : float, default=0.0
        Minimal SSE improvement for a split.
    selection : {"min", "1se"}, default="min"
        Rule used to pick α from the cross-validated curve.
    n_jobs : int, optional
        joblib workers used for the folds.
    cancel : object with ``is_set()``, optional
        Checked between folds (e.g. a :class:`threading.Event`).
    verbose : int, default=0
        joblib verbosity.

    Returns
    -------
    PrunedTreeResult

    Raises
    ------
    InvalidConfigurationError
        Bad parameters, including ``minbucket`` above half the dataset size.
    InsufficientDataError
        A fold was too small; the partial curve is attached as ``curve``.
    FeatureDimensionMismatchError
        ``feature_names`` does not match the number of columns.
    """
    config = TreeConfig(maxdepth=maxdepth, minbucket=minbucket, min_gain=min_gain, k_folds=k_folds,
                        seed=seed, selection=selection, n_jobs=n_jobs)
    return fit_tree(features, target, config, feature_names, cancel=cancel, verbose=verbose)


def predict(tree: Tree, features) -> np.ndarray:
    return tree.predict(features)


def importance(tree: Tree) -> Dict[str, float]:
    return tree.importance()


def iter_nodes(tree: Tree) -> Iterator[Node]:
    """Pre-order traversal exposing depth, split, value and n_samples per node."""
    return tree.iter_nodes()

# ----------------------------- Estimator -----------------------------

class CARTRegressor(RegressorMixin, BaseEstimator):
    r"""
    CARTRegressor(maxdepth=30, minbucket=7, min_gain=0.0, k_folds=10,
                  selection="min", feature_names=None, random_state=None,
                  n_jobs=None, verbose=0)

    A CART regression tree with a scikit-learn–style API.

    **Core behavior**

    - **Split criterion**: **SSE reduction**. Numeric thresholds are evaluated at
      midpoints between distinct sorted values; ties go to the lowest feature
      index, then the lowest threshold.
    - **Pre-pruning**: ``maxdepth`` bounds the depth, ``minbucket`` the leaf size
      and ``min_gain`` the improvement a split must achieve.
    - **Post-pruning**: minimal cost-complexity pruning; the complexity α is
      chosen by ``k_folds``-fold cross-validation.

    Parameters
    ----------
    maxdepth : int, default=30
        Maximum depth of the tree (root = 0).
    minbucket : int, default=7
        Minimum number of observations in any leaf.
    min_gain : float, default=0.0
        Minimal SSE improvement required to accept a split.
    k_folds : int, default=10
        Number of cross-validation folds.
    selection : {"min", "1se"}, default="min"
        Rule used to choose α from the cross-validated error curve.
    feature_names : sequence of str, optional
        Column names (used in importances and rule exports).  When ``X`` is a
        DataFrame its columns are used by default.
    random_state : int, optional
        Seed for the fold assignment.
    n_jobs : int, optional
        Number of joblib workers for the folds.
    verbose : int, default=0
        Verbosity forwarded to joblib.

    Attributes
    ----------
    tree_ : Tree
        Selected pruned tree.
    full_tree_ : Tree
        Unpruned tree grown on the full data.
    cv_curve_ : CVCurve
        Cross-validated error of every pruning step.
    alpha_ : float
        Complexity of the selected tree.
    feature_importances_ : ndarray of shape (n_features,)
        Normalised SSE reduction per feature.
    degenerate_ : bool
        True when the target was constant.
    """

    def __init__(self,
                 maxdepth: int = 30,
                 minbucket: int = 7,
                 min_gain: float = 0.0,
                 k_folds: int = 10,
                 selection: str = "min",
                 feature_names: Optional[Sequence[str]] = None,
                 random_state: Optional[int] = None,
                 n_jobs: Optional[int] = None,
                 verbose: int = 0):
        self.maxdepth = maxdepth
        self.minbucket = minbucket
        self.min_gain = min_gain
        self.k_folds = k_folds
        self.selection = selection
        self.feature_names = feature_names
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.verbose = verbose

    # ----------------------------- Public API -----------------------------

    def _config(self) -> TreeConfig:
        return TreeConfig(maxdepth=self.maxdepth, minbucket=self.minbucket, min_gain=self.min_gain,
                          k_folds=self.k_folds, seed=self.random_state, selection=self.selection,
                          n_jobs=self.n_jobs)

    def fit(self, X, y, feature_names: Optional[Sequence[str]] = None, cancel=None):
        names = feature_names if feature_names is not None else self.feature_names
        if names is None and hasattr(X, "columns"):
            names = [str(c) for c in X.columns]
        config = self._config()
        logger.debug("fitting CARTRegressor with %s", config.to_dict())
        result = fit_tree(X, y, config, names, cancel=cancel, verbose=self.verbose)

        self.result_ = result
        self.tree_ = result.tree
        self.full_tree_ = result.full_tree
        self.cv_curve_ = result.cv_curve
        self.alpha_ = result.alpha
        self.degenerate_ = result.degenerate
        self.feature_names_ = result.tree.feature_names
        self.n_features_in_ = result.tree.n_features
        self.feature_importances_ = result.tree.importance_vector()
        return self

    def _check_fitted(self):
        if getattr(self, "tree_", None) is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")

    def predict(self, X):
        self._check_fitted()
        return self.tree_.predict(X)

    def importance(self) -> Dict[str, float]:
        self._check_fitted()
        return self.tree_.importance()

    # ----------------------------- Rules -----------------------------

    def _maybe_feature_names(self, feature_names):
        return feature_names if feature_names is not None else self.feature_names_

    @staticmethod
    def _name(fn, j: int) -> str:
        return fn[j] if (fn is not None and 0 <= j < len(fn)) else f"X[{j}]"

    def export_rules(self, feature_names: Optional[List[str]] = None) -> List[str]:
        """
        Export all decision rules in the fitted regression tree.

        Each rule describes a path from the root to a leaf and reports the
        predicted value along with the number of training observations.

        Parameters
        ----------
        feature_names : list[str], optional
            Names for the input features.

        Returns
        -------
        list[str]
            Strings of the form ``"<antecedent> => value=<prediction> (N=<count>)"``.

        Raises
        ------
        ValueError
            If the model has not been fitted.
        """
        self._check_fitted()
        fn = self._maybe_feature_names(feature_names)
        rules: List[str] = []
        self._collect_rules(self.tree_.root, [], rules, fn)
        return rules

    def _collect_rules(self, node: Node, parts: List[str], rules: List[str], fn=None):
        if node.is_leaf:
            antecedent = " AND ".join(parts) if parts else "<root>"
            rules.append(f"{antecedent} => value={node.value:.6g} (N={node.n_samples})")
            return
        name = self._name(fn, node.feature_index)
        self._collect_rules(node.left, parts + [f"{name} <= {node.threshold:.6g}"], rules, fn)
        self._collect_rules(node.right, parts + [f"{name} > {node.threshold:.6g}"], rules, fn)

    def predict_rule(self, X: Iterable[Any], feature_names: Optional[List[str]] = None) -> List[str]:
        """
        Return the decision rule antecedent for each input sample.

        Raises
        ------
        ValueError
            If the model has not been fitted.
        """
        self._check_fitted()
        Xp = check_features(X, self.n_features_in_)
        fn = self._maybe_feature_names(feature_names)
        return [self._trace_rule(x, self.tree_.root, fn) for x in Xp]

    def _trace_rule(self, x, node: Node, fn=None) -> str:
        parts: List[str] = []
        while not node.is_leaf:
            name = self._name(fn, node.feature_index)
            if x[node.feature_index] <= node.threshold:
                parts.append(f"{name} <= {node.threshold:.6g}")
                node = node.left
            else:
                parts.append(f"{name} > {node.threshold:.6g}")
                node = node.right
        return " AND ".join(parts) if parts else "<root>"
