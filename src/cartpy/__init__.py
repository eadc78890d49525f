# cartpy/__init__.py
"""
cartpy: CART regression trees with cross-validated pruning in pure Python.

Exports:
    - fit, predict, importance, iter_nodes
    - CARTRegressor
    - Tree, TreeConfig, load_table
"""
import logging

from .config import TreeConfig
from .datasets import Dataset, load_table
from .exceptions import (
    CartError,
    CrossValidationCancelled,
    DegenerateTargetError,
    FeatureDimensionMismatchError,
    InsufficientDataError,
    InvalidConfigurationError,
)
from .pruning import CVCurve, PruningStep, prune_tree, pruning_path
from .regressor import CARTRegressor, PrunedTreeResult, fit, fit_tree, importance, iter_nodes, predict
from .tree import Node, Split, Tree

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "CARTRegressor", "CVCurve", "CartError", "CrossValidationCancelled", "Dataset",
    "DegenerateTargetError", "FeatureDimensionMismatchError", "InsufficientDataError",
    "InvalidConfigurationError", "Node", "PrunedTreeResult", "PruningStep", "Split", "Tree",
    "TreeConfig", "fit", "fit_tree", "importance", "iter_nodes", "load_table", "predict",
    "prune_tree", "pruning_path",
]
__version__ = "0.1.0"
