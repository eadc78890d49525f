import threading

import numpy as np
import pytest
from cartpy import (CVCurve, CrossValidationCancelled, InsufficientDataError,
                    InvalidConfigurationError, Tree, TreeConfig, prune_tree, pruning_path)
from cartpy.pruning import _WeakestLinks, alpha_grid, cross_validate, fold_assignments


def _noisy_dataset(n=120, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(0.0, 10.0, size=(n, 2))
    y = np.where(X[:, 0] > 5.0, 10.0, 0.0) + rng.normal(0.0, 1.0, size=n)
    return X, y


def _full_tree(config=None):
    X, y = _noisy_dataset()
    config = config or TreeConfig(maxdepth=6, minbucket=3, k_folds=5, seed=1)
    return X, y, config, Tree.grow(X, y, config)


def test_path_is_strictly_monotone():
    _, _, _, tree = _full_tree()
    path = pruning_path(tree)
    assert len(path) > 2
    assert path[0].alpha == 0.0
    alphas = [s.alpha for s in path]
    assert all(a < b for a, b in zip(alphas, alphas[1:]))
    counts = [s.tree.node_count for s in path]
    assert all(a > b for a, b in zip(counts, counts[1:]))
    assert path[-1].tree.root.is_leaf


def test_path_trees_are_nested():
    _, _, _, tree = _full_tree()
    path = pruning_path(tree)
    for prev, nxt in zip(path, path[1:]):
        prev_ids = {n.node_id for n in prev.tree.iter_nodes()}
        next_ids = {n.node_id for n in nxt.tree.iter_nodes()}
        assert next_ids < prev_ids


def test_pruning_does_not_mutate_original():
    _, _, _, tree = _full_tree()
    before = tree.node_count
    pruned = tree.prune(1e6)
    assert pruned.root.is_leaf
    assert tree.node_count == before
    assert not tree.root.is_leaf


def test_prune_at_path_alphas():
    _, _, _, tree = _full_tree()
    path = pruning_path(tree)
    assert prune_tree(tree, 0.0).node_count == path[0].tree.node_count
    mid = path[len(path) // 2]
    assert prune_tree(tree, mid.alpha).node_count == mid.tree.node_count


def test_prune_root_only_is_idempotent():
    _, _, _, tree = _full_tree()
    stump = tree.collapse([tree.root.node_id])
    assert stump.root.is_leaf
    assert stump.prune(0.0) is stump
    assert stump.prune(10.0) is stump
    assert pruning_path(stump)[0].tree is stump


def test_prune_negative_alpha():
    _, _, _, tree = _full_tree()
    with pytest.raises(InvalidConfigurationError):
        prune_tree(tree, -1.0)


def test_alpha_grid_geometric_means():
    _, _, _, tree = _full_tree()
    path = pruning_path(tree)
    grid = alpha_grid(path)
    assert grid.shape == (len(path),)
    assert grid[0] == 0.0
    assert np.isinf(grid[-1])
    assert grid[1] == pytest.approx(np.sqrt(path[1].alpha * path[2].alpha))


def test_fold_assignment_reproducible_and_balanced():
    a = fold_assignments(103, 10, seed=7)
    b = fold_assignments(103, 10, seed=7)
    np.testing.assert_array_equal(a, b)
    counts = np.bincount(a, minlength=10)
    assert counts.max() - counts.min() <= 1


def test_cross_validate_curve_shape():
    X, y, config, tree = _full_tree()
    path = pruning_path(tree)
    curve = cross_validate(X, y, path, config)
    assert curve.fold_errors.shape == (config.k_folds, len(path))
    assert np.isfinite(curve.cv_error).all()
    assert not curve.failures
    # training error only grows as the tree shrinks
    assert np.all(np.diff(curve.train_error) >= -1e-12)
    frame = curve.to_frame()
    assert list(frame.columns) == ["alpha", "grid_alpha", "n_splits", "n_leaves",
                                   "train_error", "cv_error", "cv_std"]
    assert len(frame) == len(path)


def test_cross_validate_parallel_matches_sequential():
    X, y, config, tree = _full_tree()
    path = pruning_path(tree)
    sequential = cross_validate(X, y, path, config)
    parallel = cross_validate(X, y, path, TreeConfig(maxdepth=6, minbucket=3, k_folds=5, seed=1, n_jobs=2))
    np.testing.assert_allclose(sequential.fold_errors, parallel.fold_errors)


def test_cross_validate_marks_empty_folds_undefined():
    X, y = _noisy_dataset(n=6)
    config = TreeConfig(maxdepth=2, minbucket=1, k_folds=8, seed=0)
    tree = Tree.grow(X, y, config)
    curve = cross_validate(X, y, pruning_path(tree), config)
    assert curve.failed_folds == [6, 7]
    assert np.isnan(curve.cv_error).all()
    with pytest.raises(InsufficientDataError):
        curve.best_index()


def test_cross_validate_cancel_between_folds():
    X, y, config, tree = _full_tree()
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CrossValidationCancelled):
        cross_validate(X, y, pruning_path(tree), config, cancel=cancel)


def _curve(fold_errors):
    fold_errors = np.asarray(fold_errors, dtype=float)
    m = fold_errors.shape[1]
    return CVCurve(alphas=np.arange(m, dtype=float), grid=np.arange(m, dtype=float),
                   n_leaves=np.arange(m, 0, -1), train_error=np.zeros(m), fold_errors=fold_errors)


def test_best_index_ties_prefer_smaller_tree():
    curve = _curve([[1.0, 1.0, 2.0], [1.0, 1.0, 2.0]])
    assert curve.best_index("min") == 1


def test_best_index_one_standard_error():
    curve = _curve([[1.0, 1.05, 3.0], [1.2, 1.25, 3.0]])
    assert curve.best_index("min") == 0
    assert curve.best_index("1se") == 1


def _reference_alphas(tree):
    """Weakest-link path recomputed from scratch after every collapse."""
    def strengths(node, out):
        if node.is_leaf:
            return node.impurity, 1
        r_left, n_left = strengths(node.left, out)
        r_right, n_right = strengths(node.right, out)
        out[node.node_id] = max(node.impurity - r_left - r_right, 0.0) / (n_left + n_right - 1)
        return r_left + r_right, n_left + n_right

    alphas = [0.0]
    while not tree.root.is_leaf:
        g = {}
        strengths(tree.root, g)
        alpha = min(g.values())
        tree = tree.collapse([nid for nid, v in g.items() if v <= alpha + 1e-10 * abs(alpha)])
        if alpha > alphas[-1]:
            alphas.append(alpha)
    return alphas


def test_path_matches_recomputed_weakest_links():
    _, _, _, tree = _full_tree()
    path = pruning_path(tree)
    np.testing.assert_allclose([s.alpha for s in path], _reference_alphas(tree), rtol=1e-6)


def test_path_step_summaries_match_trees():
    _, _, _, tree = _full_tree()
    for step in pruning_path(tree):
        assert step.n_leaves == step.tree.n_leaves
        assert step.error == pytest.approx(step.tree.resubstitution_error)


def test_path_length_bounded_on_large_tree():
    rng = np.random.default_rng(7)
    X = rng.uniform(0.0, 1.0, size=(2000, 3))
    y = np.sin(6.0 * X[:, 0]) + X[:, 1] + rng.normal(0.0, 0.3, size=2000)
    tree = Tree.grow(X, y, TreeConfig(maxdepth=30, minbucket=1))
    path = pruning_path(tree)
    assert tree.n_leaves > 500
    assert len(path) <= tree.n_leaves
    leaves = [s.n_leaves for s in path]
    assert all(a > b for a, b in zip(leaves, leaves[1:]))
    assert leaves[-1] == 1
    assert path[-1].tree.root.is_leaf


def test_routed_predictions_match_pruned_trees():
    X, y, _, tree = _full_tree()
    links = _WeakestLinks(tree)
    path = pruning_path(tree)
    steps = list(range(len(path)))
    X_new = _noisy_dataset(n=40, seed=5)[0]
    routed = links.predict_steps(X_new, steps)
    for s in steps:
        np.testing.assert_allclose(routed[s], path[s].tree.predict(X_new))
