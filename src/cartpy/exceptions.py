# -*- coding: utf-8 -*-
"""
cartpy.exceptions
=================

Errors raised by the tree engine.  Every error derives from ``CartError``,
itself a ``ValueError``, so callers catching ``ValueError`` around ``fit`` and
``predict`` keep working.
"""

from __future__ import annotations


class CartError(ValueError):
    """Base class for all cartpy errors."""


class InvalidConfigurationError(CartError):
    """Raised when stopping or cross-validation parameters are unusable."""


class InsufficientDataError(CartError):
    """A fold or subset is too small to grow a tree.

    When raised by :func:`cartpy.fit` the partially computed cross-validation
    curve is attached as ``curve`` (failed folds appear as ``NaN``).
    """

    def __init__(self, message: str, curve=None):
        super().__init__(message)
        self.curve = curve


class DegenerateTargetError(CartError, UserWarning):
    """The target has zero variance.

    Not fatal: it is emitted through :mod:`warnings` and the fit result is a
    single-leaf tree.
    """


class FeatureDimensionMismatchError(CartError):
    """The number of feature columns differs from what the tree was fitted on."""


class CrossValidationCancelled(CartError):
    """The caller cancelled a cross-validation run between folds."""
