"""
errors.py
~~~~~~~~~

Exception hierarchy for the neural network library.

Configuration, shape and input errors are raised before any network
state is touched. Numeric anomalies are only raised when training runs
in strict mode; otherwise they are logged and counted.
"""


class NeuralNetworkError(Exception):
    """Base class for all errors raised by ``tabular_nn``."""


class InvalidConfig(NeuralNetworkError, ValueError):
    """A layer specification or training configuration is malformed."""


class ShapeMismatch(NeuralNetworkError, ValueError):
    """A vector or matrix does not match the declared layer sizes."""


class InvalidInput(NeuralNetworkError, ValueError):
    """Training or inference data is empty, mismatched or non-numeric."""


class NumericAnomaly(NeuralNetworkError, ArithmeticError):
    """A loss or prediction became NaN or infinite."""
