"""
Base Clustering Algorithm Interface.

Defines the contract for the clustering algorithms in clusterkit.
Every algorithm validates its options up front, ingests points into an
immutable PointSet, runs under a progress tracker and returns either a
ClusteringResult subclass or a CancelledResult.
"""

import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import numpy as np
from pydantic import BaseModel

from clusterkit.core.distance import DistanceFunction
from clusterkit.core.points import PointSet, prepare_points
from clusterkit.core.progress import (
    CancellationToken,
    CancelledResult,
    ProgressCallback,
    ProgressTracker,
)
from clusterkit.core import quality_metrics
from clusterkit.config.settings_loader import get_settings
from clusterkit.utils.advanced_logging import LogContext, PerformanceLogger, get_logger
from clusterkit.utils.error_handling import (
    ClusteringCancelled,
    ParameterValidationError,
    translate_validation_errors,
)

logger = logging.getLogger(__name__)


@dataclass
class ClusteringConfig:
    """Configuration for clustering algorithms."""

    algorithm_name: str
    params: Dict[str, Any] = field(default_factory=dict)
    progress_callback: Optional[ProgressCallback] = None
    cancellation_token: Optional[CancellationToken] = None


class ClusteringResult:
    """Results from clustering operation."""

    is_cancelled = False

    def __init__(
        self,
        cluster_labels: np.ndarray,
        n_clusters: int,
        outlier_count: int,
        quality_metrics: Dict[str, float],
        centroids: Optional[np.ndarray] = None,
        algorithm: str = "",
    ):
        self.cluster_labels = cluster_labels
        self.n_clusters = n_clusters
        self.outlier_count = outlier_count
        self.quality_metrics = quality_metrics
        self.centroids = centroids
        self.algorithm = algorithm
        self.duration_ms: Optional[float] = None

    @property
    def labels(self) -> np.ndarray:
        """Alias for cluster_labels."""
        return self.cluster_labels

    @property
    def cluster_centroids(self) -> Optional[Dict[int, np.ndarray]]:
        """Return centroids as dict mapping cluster_id -> centroid_vector."""
        if self.centroids is None:
            return None
        return {i: self.centroids[i] for i in range(len(self.centroids))}

    @property
    def clusters(self) -> List[List[int]]:
        """Member point ids of each cluster, in cluster id order."""
        return [
            np.flatnonzero(self.cluster_labels == cluster_id).tolist()
            for cluster_id in range(self.n_clusters)
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "algorithm": self.algorithm,
            "labels": self.cluster_labels.tolist(),
            "n_clusters": self.n_clusters,
            "outlier_count": self.outlier_count,
            "quality_metrics": self.quality_metrics,
            "total_items": len(self.cluster_labels),
            "duration_ms": self.duration_ms,
        }


class BaseClusteringAlgorithm(ABC):
    """
    Abstract base class for clustering algorithms.

    Subclasses set `options_model` to their pydantic options class and
    implement _run().
    """

    options_model: Type[BaseModel]

    def __init__(self, config: ClusteringConfig):
        """
        Initialize clustering algorithm.

        Args:
            config: Clustering configuration

        Raises:
            ParameterValidationError: If the params do not validate
        """
        self.config = config
        self.name = config.algorithm_name
        self.options = self._build_options(config.params)
        self.distance = DistanceFunction(
            self.options.distance_metric,
            feature_weights=self.options.feature_weights,
            n_jobs=self.options.n_jobs,
        )

    @classmethod
    @translate_validation_errors
    def _build_options(cls, params: Dict[str, Any]) -> BaseModel:
        return cls.options_model(**params)

    def cluster(self, data: Any):
        """
        Perform clustering on points.

        Args:
            data: PointSet, 2-D numeric array or sequence of records

        Returns:
            ClusteringResult subclass, or CancelledResult if the run was
            cancelled through the configured token

        Raises:
            InputValidationError: If the points are malformed or too many
            ParameterValidationError: If the options cannot be satisfied
        """
        with LogContext.run_context():
            points = prepare_points(data, max_points=getattr(self.options, "max_points", None))
            self._check_weights(points)

            performance = get_settings().performance
            timer = (
                PerformanceLogger(
                    f"{self.name}_clustering",
                    logger=get_logger(__name__),
                    item_count=points.n_points,
                    track_memory=performance.track_memory_usage,
                    algorithm=self.name,
                )
                if performance.track_clustering_time
                else contextlib.nullcontext()
            )

            with timer:
                try:
                    result = self._run(points)
                except ClusteringCancelled as e:
                    logger.warning(
                        f"{self.name} clustering cancelled: {e.reason} "
                        f"after {e.steps_completed} steps"
                    )
                    return CancelledResult(self.name, e.reason, e.steps_completed)

            if isinstance(timer, PerformanceLogger):
                result.duration_ms = round(timer.elapsed_ms, 3)
            return result

    @abstractmethod
    def _run(self, points: PointSet) -> ClusteringResult:
        """Run the algorithm on validated points."""
        pass

    def _tracker(self, stage: str, total: int) -> ProgressTracker:
        return ProgressTracker(
            stage=stage,
            total=total,
            interval=self.options.progress_interval,
            callback=self.config.progress_callback,
            token=self.config.cancellation_token,
        )

    def _check_weights(self, points: PointSet) -> None:
        weights = self.options.feature_weights
        if weights is not None and len(weights) != points.n_features:
            raise ParameterValidationError(
                f"feature_weights has {len(weights)} entries, points have {points.n_features} features",
                details={"feature_names": points.feature_names},
            )

    def _calculate_quality_metrics(
        self,
        vectors: np.ndarray,
        labels: np.ndarray,
    ) -> Dict[str, float]:
        """
        Calculate internal clustering quality metrics.

        Noise points (-1 labels) are excluded by the metric functions.

        Args:
            vectors: Input vectors
            labels: Cluster labels

        Returns:
            Dictionary of quality metrics
        """
        if not getattr(self.options, "enable_cluster_validation", True):
            return {}

        return {
            "silhouette_score": quality_metrics.silhouette_score(vectors, labels, self.distance),
            "davies_bouldin_index": quality_metrics.davies_bouldin_index(vectors, labels, self.distance),
            "calinski_harabasz_index": quality_metrics.calinski_harabasz_index(vectors, labels),
            "dunn_index": quality_metrics.dunn_index(vectors, labels, self.distance),
        }
