import numpy as np
import pytest
from cartpy import FeatureDimensionMismatchError, Tree, TreeConfig
from cartpy.tree import find_best_split


def _noisy_dataset(n=200, seed=0):
    """Step function of feature 0 plus a linear trend in feature 1."""
    rng = np.random.default_rng(seed)
    X = rng.uniform(0.0, 10.0, size=(n, 3))
    y = np.where(X[:, 0] > 5.0, 10.0, 0.0) + 0.3 * X[:, 1] + rng.normal(0.0, 0.5, size=n)
    return X, y


def _structure(tree):
    return [(n.depth, n.feature_index, n.threshold, n.n_samples) for n in tree.iter_nodes()]


def test_split_at_midpoint():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    y = np.array([0.0, 0.0, 10.0, 10.0])
    split = find_best_split(X, y, np.arange(4), minbucket=1)
    assert split.feature_index == 0
    assert split.threshold == 2.5
    assert split.improvement == pytest.approx(100.0)


def test_split_respects_minbucket():
    X = np.arange(1.0, 7.0).reshape(-1, 1)
    y = np.array([0.0, 10.0, 10.0, 10.0, 10.0, 10.0])
    # with minbucket=1 the outlier would be isolated at 1.5
    assert find_best_split(X, y, np.arange(6), minbucket=1).threshold == 1.5
    assert find_best_split(X, y, np.arange(6), minbucket=2).threshold == 2.5


def test_split_none_when_node_too_small():
    X = np.array([[1.0], [2.0], [3.0]])
    y = np.array([0.0, 1.0, 2.0])
    assert find_best_split(X, y, np.arange(3), minbucket=2) is None


def test_split_none_when_no_improvement():
    X = np.array([[1.0], [1.0], [1.0], [1.0]])
    y = np.array([0.0, 1.0, 2.0, 3.0])
    assert find_best_split(X, y, np.arange(4), minbucket=1) is None


def test_split_none_below_min_gain():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    y = np.array([0.0, 0.0, 10.0, 10.0])
    assert find_best_split(X, y, np.arange(4), minbucket=1, min_gain=150.0) is None


def test_split_ties_prefer_lowest_feature_then_threshold():
    X = np.array([[1.0, 1.0], [2.0, 2.0], [3.0, 3.0], [4.0, 4.0]])
    y = np.array([0.0, 5.0, 5.0, 0.0])
    split = find_best_split(X, y, np.arange(4), minbucket=1)
    # 1.5 and 3.5 reduce the SSE equally, on both identical columns
    assert split.feature_index == 0
    assert split.threshold == 1.5


def test_build_invariants():
    X, y = _noisy_dataset()
    config = TreeConfig(maxdepth=4, minbucket=5)
    tree = Tree.grow(X, y, config)
    assert tree.depth <= 4
    for node in tree.iter_nodes():
        if node.is_leaf:
            assert node.n_samples >= 5
            assert node.left is None and node.right is None
        else:
            assert node.left is not None and node.right is not None
            assert node.n_samples == node.left.n_samples + node.right.n_samples
    covered = np.sort(np.concatenate([leaf.indices for leaf in tree.leaves()]))
    np.testing.assert_array_equal(covered, np.arange(len(y)))


def test_build_is_deterministic():
    X, y = _noisy_dataset()
    config = TreeConfig(maxdepth=5, minbucket=3)
    assert _structure(Tree.grow(X, y, config)) == _structure(Tree.grow(X, y, config))


def test_root_splits_on_step_feature():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=3, minbucket=5))
    assert tree.root.feature_index == 0
    assert tree.root.threshold == pytest.approx(5.0, abs=0.5)


def test_maxdepth_one_gives_stump():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=1, minbucket=1))
    assert tree.n_leaves == 2
    assert tree.depth == 1


def test_preorder_traversal():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=4, minbucket=5))
    nodes = list(tree.iter_nodes())
    assert nodes[0] is tree.root
    assert [n.node_id for n in nodes] == list(range(tree.node_count))
    if not tree.root.is_leaf:
        assert nodes[1] is tree.root.left


def test_predict_returns_leaf_means_on_training_rows():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=4, minbucket=5))
    pred = tree.predict(X)
    for leaf in tree.leaves():
        assert np.allclose(pred[leaf.indices], y[leaf.indices].mean())


def test_predict_dimension_mismatch():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=2, minbucket=5))
    with pytest.raises(FeatureDimensionMismatchError):
        tree.predict(X[:, :2])
    # still a ValueError, like any other bad input
    with pytest.raises(ValueError):
        tree.predict(X[:, :2])


def test_missing_values_rejected():
    X, y = _noisy_dataset(n=20)
    X[3, 1] = np.nan
    with pytest.raises(ValueError):
        Tree.grow(X, y, TreeConfig(maxdepth=2, minbucket=2))


def test_importance_sums_to_one():
    X, y = _noisy_dataset()
    tree = Tree.grow(X, y, TreeConfig(maxdepth=4, minbucket=5), feature_names=['a', 'b', 'c'])
    scores = tree.importance()
    assert set(scores) == {'a', 'b', 'c'}
    assert all(v >= 0.0 for v in scores.values())
    assert sum(scores.values()) == pytest.approx(1.0)
    assert max(scores, key=scores.get) == 'a'


def test_importance_zero_for_single_leaf():
    X, y = _noisy_dataset(n=20)
    tree = Tree.grow(X, np.ones(20), TreeConfig(maxdepth=3, minbucket=2))
    assert tree.root.is_leaf
    assert sum(tree.importance().values()) == 0.0


def test_feature_names_length_checked():
    X, y = _noisy_dataset(n=20)
    with pytest.raises(FeatureDimensionMismatchError):
        Tree.grow(X, y, TreeConfig(), feature_names=['only_one'])


def test_feature_names_must_be_unique():
    X, y = _noisy_dataset(n=20)
    with pytest.raises(ValueError, match="unique"):
        Tree.grow(X, y, TreeConfig(minbucket=2), feature_names=['a', 'b', 'a'])
