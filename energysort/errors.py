"""Exceptions raised by the sorting pipeline."""

from __future__ import annotations


class SortingError(Exception):
    """Base class for all energysort errors."""


class ConfigurationError(SortingError, ValueError):
    """Unknown or out-of-range configuration option."""


class MissingInputError(SortingError, ValueError):
    """A stage received no data, or too little to be defined (e.g. a singleton cluster)."""


class NumericDegeneracyError(SortingError, ArithmeticError):
    """Input makes a statistic meaningless, such as a zero-variance channel."""
