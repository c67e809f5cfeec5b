"""
Distance Module

Point-to-point and pairwise distances under a closed set of metrics, with
optional per-feature weights. Pairwise matrices are computed by
sklearn.metrics.pairwise_distances; single distances and point-to-set
distances use the same formulas in numpy.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np
from sklearn.metrics import pairwise_distances

from clusterkit.schemas.data_models import DistanceMetric
from clusterkit.utils.error_handling import ParameterValidationError

logger = logging.getLogger(__name__)

__all__ = ["DistanceMetric", "DistanceFunction", "resolve_metric"]

# Weighted euclidean/cosine scale each coordinate by sqrt(w); L1 and L-inf by w.
_SQRT_WEIGHTED = {DistanceMetric.EUCLIDEAN, DistanceMetric.COSINE}


def resolve_metric(metric: Union[str, DistanceMetric]) -> DistanceMetric:
    """
    Resolve a metric name to the DistanceMetric enum.

    Raises:
        ParameterValidationError: If the name is not a supported metric
    """
    if isinstance(metric, DistanceMetric):
        return metric
    try:
        return DistanceMetric(str(metric).lower())
    except ValueError:
        raise ParameterValidationError(
            f"Unknown distance metric: {metric}",
            details={
                "metric": str(metric),
                "supported": [m.value for m in DistanceMetric],
            },
        ) from None


class DistanceFunction:
    """
    Stateless distance calculator for one metric.

    Example:
        dist = DistanceFunction("manhattan")
        dist.distance([0, 0], [3, 4])      # 7.0
        dist.pairwise(points)               # (N, N) matrix
    """

    def __init__(
        self,
        metric: Union[str, DistanceMetric] = DistanceMetric.EUCLIDEAN,
        feature_weights: Optional[Sequence[float]] = None,
        n_jobs: Optional[int] = None,
    ):
        self.metric = resolve_metric(metric)
        self.n_jobs = n_jobs
        self._scale: Optional[np.ndarray] = None

        if feature_weights is not None:
            weights = np.asarray(feature_weights, dtype=float)
            if weights.ndim != 1 or np.any(weights < 0) or not np.all(np.isfinite(weights)):
                raise ParameterValidationError(
                    "feature_weights must be a flat list of finite non-negative numbers",
                    details={"feature_weights": list(map(float, np.ravel(weights)))},
                )
            self._scale = np.sqrt(weights) if self.metric in _SQRT_WEIGHTED else weights

    def __repr__(self) -> str:
        weighted = self._scale is not None
        return f"DistanceFunction(metric={self.metric.value!r}, weighted={weighted})"

    def transform(self, X) -> np.ndarray:
        """Apply feature weights to coordinates (identity when unweighted)."""
        X = np.asarray(X, dtype=float)
        if self._scale is None:
            return X
        if X.shape[-1] != self._scale.shape[0]:
            raise ParameterValidationError(
                f"feature_weights has {self._scale.shape[0]} entries, points have {X.shape[-1]} features",
            )
        return X * self._scale

    def distance(self, a, b) -> float:
        """Distance between two vectors."""
        a = self.transform(a)
        b = self.transform(b)
        return float(self._rowwise(a[np.newaxis, :], b)[0])

    def to_point(self, X, y) -> np.ndarray:
        """Distances from every row of X to the vector y."""
        X = self.transform(np.atleast_2d(X))
        y = self.transform(y)
        return self._rowwise(X, y)

    def pairwise(self, X, Y=None) -> np.ndarray:
        """
        Pairwise distance matrix.

        Args:
            X: (n, d) array
            Y: Optional (m, d) array; X is compared with itself when omitted

        Returns:
            (n, n) or (n, m) matrix of distances
        """
        Xw = self.transform(np.atleast_2d(X))
        Yw = None if Y is None else self.transform(np.atleast_2d(Y))
        D = pairwise_distances(Xw, Yw, metric=self.metric.value, n_jobs=self.n_jobs)
        D = np.maximum(D, 0.0)
        if Y is None:
            np.fill_diagonal(D, 0.0)
        return D

    def _rowwise(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        diff = X - y
        if self.metric == DistanceMetric.EUCLIDEAN:
            return np.sqrt(np.einsum("ij,ij->i", diff, diff))
        if self.metric == DistanceMetric.MANHATTAN:
            return np.abs(diff).sum(axis=1)
        if self.metric == DistanceMetric.CHEBYSHEV:
            return np.abs(diff).max(axis=1)

        # cosine; zero vectors are treated as unit norm like sklearn does
        x_norm = np.linalg.norm(X, axis=1)
        y_norm = np.linalg.norm(y)
        x_norm[x_norm == 0.0] = 1.0
        if y_norm == 0.0:
            y_norm = 1.0
        similarity = (X @ y) / (x_norm * y_norm)
        return np.clip(1.0 - similarity, 0.0, 2.0)
