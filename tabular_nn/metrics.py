"""
metrics.py
~~~~~~~~~~

Loss functions, per-sample accuracy and evaluation helpers.

Losses take ``(y_true, y_pred)`` for one sample. Scalars and 1-element
vectors are interchangeable.
"""

import math
import numbers
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

EPSILON = 1e-15

LossFunction = Callable[[Any, Any], float]


def _as_vector(value) -> np.ndarray:
    return np.atleast_1d(np.asarray(value, dtype=float))


def binary_crossentropy(y_true, y_pred) -> float:
    """
    Binary cross-entropy with predictions clipped to [1e-15, 1 - 1e-15].

    Returns NaN for non-numeric inputs; callers decide whether that is
    fatal. Vector inputs are averaged element-wise.
    """
    try:
        y = _as_vector(y_true)
        p = _as_vector(y_pred)
    except (TypeError, ValueError):
        return float('nan')
    if y.shape != p.shape:
        return float('nan')
    p = np.clip(p, EPSILON, 1.0 - EPSILON)
    losses = -(y * np.log(p) + (1.0 - y) * np.log(1.0 - p))
    return float(np.mean(losses))


def categorical_crossentropy(y_true, y_pred) -> float:
    y = _as_vector(y_true)
    p = np.clip(_as_vector(y_pred), EPSILON, 1.0 - EPSILON)
    return float(-np.sum(y * np.log(p)))


def mean_squared_error(y_true, y_pred) -> float:
    diff = _as_vector(y_true) - _as_vector(y_pred)
    return float(np.mean(diff * diff))


LOSSES: Dict[str, LossFunction] = {
    'binaryCrossentropy': binary_crossentropy,
    'categoricalCrossentropy': categorical_crossentropy,
    'meanSquaredError': mean_squared_error,
}

DEFAULT_LOSS = 'meanSquaredError'


def resolve_loss_name(name: Optional[str]) -> str:
    """Map a configured loss name to a known one (MSE when unrecognized)."""
    return name if name in LOSSES else DEFAULT_LOSS


def get_loss(name: Optional[str]) -> LossFunction:
    return LOSSES[resolve_loss_name(name)]


def accuracy(y_true, y_pred) -> float:
    """
    Per-sample accuracy: 1.0 for a correct prediction, else 0.0.

    Multi-unit outputs compare argmax indices; a single output is
    thresholded at 0.5 and compared with the binarized target.
    """
    p = _as_vector(y_pred)
    y = _as_vector(y_true)
    if p.size > 1:
        return 1.0 if int(np.argmax(p)) == int(np.argmax(y)) else 0.0
    predicted = 1 if p[0] > 0.5 else 0
    return 1.0 if predicted == y[0] else 0.0


def is_finite(value) -> bool:
    if isinstance(value, numbers.Real):
        return math.isfinite(value)
    return bool(np.all(np.isfinite(np.asarray(value, dtype=float))))


def to_binary_label(raw) -> int:
    """
    Binarize a raw label the way the prediction page does.

    Common string spellings ('m', 'malignant', 'yes', 'true', '1' and
    their negatives) are recognized; anything numeric is 1 when > 0.
    """
    if isinstance(raw, str):
        val = raw.strip().lower()
        if val in ('m', 'malignant', '1', 'true', 'yes'):
            return 1
        if val in ('b', 'benign', '0', 'false', 'no'):
            return 0
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return 0
    if math.isnan(n):
        return 0
    return 1 if n > 0 else 0


def summarize_predictions(predictions: Sequence[Any]) -> List[Dict[str, Any]]:
    """
    Turn raw single-output predictions into display rows.

    ``confidence`` is the distance from the 0.5 decision boundary scaled
    to [0, 1]. Non-numeric predictions are reported as 0.5.
    """
    rows = []
    for index, raw in enumerate(predictions):
        value = _as_vector(raw)[0] if raw is not None else float('nan')
        if not math.isfinite(value):
            value = 0.5
        rows.append({
            'sample': index + 1,
            'prediction': float(value),
            'confidence': abs(float(value) - 0.5) * 2,
            'predicted_class': 'Class 1' if value > 0.5 else 'Class 0'
        })
    return rows


def binary_classification_metrics(
    labels: Sequence[Any],
    predictions: Sequence[Any]
) -> Optional[Dict[str, Any]]:
    """
    Confusion matrix, accuracy, precision, recall and F1 at threshold 0.5.

    Labels that are empty or None are skipped. Returns None when no
    labelled sample remains.
    """
    tp = tn = fp = fn = 0
    for raw_label, raw_pred in zip(labels, predictions):
        if raw_label is None or raw_label == '':
            continue
        y_true = to_binary_label(raw_label)
        pred = _as_vector(raw_pred)[0]
        y_pred = 1 if math.isfinite(pred) and pred > 0.5 else 0
        if y_true == 1 and y_pred == 1:
            tp += 1
        elif y_true == 0 and y_pred == 0:
            tn += 1
        elif y_pred == 1:
            fp += 1
        else:
            fn += 1

    total = tp + tn + fp + fn
    if total == 0:
        return None

    precision = tp / (tp + fp) if (tp + fp) > 0 else 0.0
    recall = tp / (tp + fn) if (tp + fn) > 0 else 0.0
    f1 = (2 * precision * recall / (precision + recall)
          if (precision + recall) > 0 else 0.0)
    return {
        'accuracy': (tp + tn) / total,
        'precision': precision,
        'recall': recall,
        'f1': f1,
        'tp': tp,
        'tn': tn,
        'fp': fp,
        'fn': fn
    }
