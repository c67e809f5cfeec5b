"""
DBSCAN Clustering Algorithm Implementation.

DBSCAN is ideal for:
- Arbitrary cluster shapes
- Data with noise that should stay unassigned
- When the number of clusters is unknown

A point is core when its eps-neighbourhood (itself included) holds at
least min_pts points. Clusters grow from core points through a frontier
queue; reachable non-core points become border points and everything
left unassigned is noise. Missing eps / min_pts are estimated from the
k-nearest-neighbour distance curve.
"""

import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from clusterkit.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
)
from clusterkit.core.dendrogram import renumber
from clusterkit.core.distance import DistanceFunction
from clusterkit.core.points import PointSet, prepare_points
from clusterkit.schemas.data_models import DBSCANOptions, PointRole
from clusterkit.utils.error_handling import (
    InputValidationError,
    ModelNotFittedError,
    ParameterValidationError,
)

logger = logging.getLogger(__name__)

NOISE = -1


# =============================================================================
# Fitted model
# =============================================================================


@dataclass
class DBSCANModel:
    """
    Fitted DBSCAN state needed to label new points.

    Centroids live in the clustering space (z-scored when the run was
    normalised); feature_means / feature_stds hold the normalisation.
    """

    eps: float
    min_pts: int
    distance: DistanceFunction
    feature_names: List[str]
    centroids: np.ndarray
    feature_means: Optional[np.ndarray] = None
    feature_stds: Optional[np.ndarray] = None
    cluster_stats: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def n_clusters(self) -> int:
        return int(len(self.centroids))

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Apply the training normalisation, if any."""
        if self.feature_means is None:
            return X
        return _zscore(X, self.feature_means, self.feature_stds)

    def predict(self, new_points: Any) -> np.ndarray:
        """
        Label new points with the nearest cluster centroid within eps.

        Args:
            new_points: Array of rows or records carrying the training features

        Returns:
            Labels, -1 where the nearest centroid is farther than eps

        Raises:
            ModelNotFittedError: If the model has no clusters
            InputValidationError: If the points do not match the training features
        """
        if self.n_clusters == 0:
            raise ModelNotFittedError(
                "Model has no clusters; fit on data that forms at least one cluster before predicting"
            )

        X = self.transform(self._feature_matrix(new_points))
        distances = self.distance.pairwise(X, self.centroids)
        nearest = np.argmin(distances, axis=1)
        nearest_distance = distances[np.arange(len(X)), nearest]
        return np.where(nearest_distance <= self.eps, nearest, NOISE).astype(int)

    def _feature_matrix(self, new_points: Any) -> np.ndarray:
        if isinstance(new_points, PointSet):
            X = new_points.features
        elif len(new_points) and isinstance(new_points[0], Mapping):
            try:
                X = np.array(
                    [[float(record[name]) for name in self.feature_names] for record in new_points]
                )
            except (KeyError, TypeError, ValueError) as e:
                raise InputValidationError(
                    f"Records must carry numeric values for {self.feature_names}: {e}",
                    details={"feature_names": self.feature_names},
                ) from e
        else:
            X = prepare_points(new_points).features

        if X.ndim != 2 or X.shape[1] != len(self.feature_names):
            raise InputValidationError(
                f"Expected {len(self.feature_names)} features per point",
                details={"feature_names": self.feature_names, "shape": list(X.shape)},
            )
        return X

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eps": self.eps,
            "min_pts": self.min_pts,
            "distance_metric": self.distance.metric.value,
            "feature_names": self.feature_names,
            "centroids": self.centroids.tolist(),
            "normalized": self.feature_means is not None,
        }


def _zscore(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    safe = np.where(stds > 0, stds, 1.0)
    return np.where(stds > 0, (X - means) / safe, 0.0)


def predict(model: DBSCANModel, new_points: Any) -> np.ndarray:
    """Label new points with a fitted model (see DBSCANModel.predict)."""
    return model.predict(new_points)


# =============================================================================
# Result
# =============================================================================


class DBSCANResult(ClusteringResult):
    """Results from DBSCAN clustering."""

    def __init__(
        self,
        cluster_labels: np.ndarray,
        n_clusters: int,
        quality_metrics: Dict[str, float],
        centroids: Optional[np.ndarray],
        core_point_ids: List[int],
        border_point_ids: List[int],
        noise_point_ids: List[int],
        cluster_stats: List[Dict[str, Any]],
        eps: float,
        min_pts: int,
        estimated_params: Dict[str, bool],
        model: DBSCANModel,
        algorithm: str = "dbscan",
    ):
        super().__init__(
            cluster_labels=cluster_labels,
            n_clusters=n_clusters,
            outlier_count=len(noise_point_ids),
            quality_metrics=quality_metrics,
            centroids=centroids,
            algorithm=algorithm,
        )
        self.core_point_ids = core_point_ids
        self.border_point_ids = border_point_ids
        self.noise_point_ids = noise_point_ids
        self.cluster_stats = cluster_stats
        self.eps = eps
        self.min_pts = min_pts
        self.estimated_params = estimated_params
        self.model = model

    @property
    def roles(self) -> List[PointRole]:
        """Role of every point, in input order."""
        roles = [PointRole.NOISE] * len(self.cluster_labels)
        for point_id in self.core_point_ids:
            roles[point_id] = PointRole.CORE
        for point_id in self.border_point_ids:
            roles[point_id] = PointRole.BORDER
        return roles

    @property
    def summary(self) -> Dict[str, Any]:
        total = len(self.cluster_labels)
        return {
            "algorithm": "dbscan",
            "parameters": {"eps": self.eps, "min_pts": self.min_pts},
            "num_clusters": self.n_clusters,
            "num_points": total,
            "num_core": len(self.core_point_ids),
            "num_border": len(self.border_point_ids),
            "num_noise": len(self.noise_point_ids),
            "noise_percentage": round(100.0 * len(self.noise_point_ids) / total, 2) if total else 0.0,
        }

    def predict(self, new_points: Any) -> np.ndarray:
        return self.model.predict(new_points)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "eps": self.eps,
            "min_pts": self.min_pts,
            "estimated_params": self.estimated_params,
            "core_point_ids": self.core_point_ids,
            "border_point_ids": self.border_point_ids,
            "noise_point_ids": self.noise_point_ids,
            "cluster_stats": self.cluster_stats,
            "summary": self.summary,
        })
        return data


# =============================================================================
# Algorithm
# =============================================================================


class DBSCANAlgorithm(BaseClusteringAlgorithm):
    """
    Density-based clustering with automatic parameter estimation.

    Best for: irregular shapes, noisy data, unknown cluster count
    Strengths: finds noise, no cluster count needed
    Weaknesses: one global density level, sensitive to eps
    """

    options_model = DBSCANOptions

    def __init__(self, config: ClusteringConfig):
        """
        Initialize DBSCAN algorithm.

        Args:
            config: Clustering configuration

        Raises:
            ParameterValidationError: If eps/min_pts are missing while
                auto-estimation is disabled
        """
        super().__init__(config)

        if not self.options.auto_estimate_params:
            missing = [
                name for name in ("eps", "min_pts") if getattr(self.options, name) is None
            ]
            if missing:
                raise ParameterValidationError(
                    f"{', '.join(missing)} required when auto_estimate_params is disabled",
                    details={"missing": missing},
                )

        logger.info(
            f"Initialized DBSCAN: eps={self.options.eps}, min_pts={self.options.min_pts}, "
            f"metric={self.distance.metric.value}, normalize={self.options.normalize}"
        )

    def _run(self, points: PointSet) -> DBSCANResult:
        n = points.n_points
        X = points.features
        means = stds = None
        if self.options.normalize:
            means = X.mean(axis=0)
            stds = X.std(axis=0)
            X = _zscore(X, means, stds)

        eps, min_pts, estimated = self._resolve_parameters(X)
        self._validate_parameters(eps, min_pts, n)

        logger.info(f"Starting DBSCAN on {n} points (eps={eps:.6g}, min_pts={min_pts})")

        raw_labels, is_core = self._sweep(X, eps, min_pts)
        labels = renumber(raw_labels.tolist())

        core_ids = np.flatnonzero(is_core).tolist()
        border_ids = np.flatnonzero(~is_core & (labels >= 0)).tolist()
        noise_ids = np.flatnonzero(labels == NOISE).tolist()
        n_clusters = int(labels.max()) + 1 if len(labels) and labels.max() >= 0 else 0

        logger.info(
            f"DBSCAN created {n_clusters} clusters "
            f"({len(core_ids)} core, {len(border_ids)} border, {len(noise_ids)} noise)"
        )

        cluster_stats = self._cluster_statistics(X, labels, n_clusters)
        centroids = (
            np.array([stat["centroid"] for stat in cluster_stats])
            if cluster_stats
            else np.empty((0, X.shape[1]))
        )

        model = DBSCANModel(
            eps=eps,
            min_pts=min_pts,
            distance=self.distance,
            feature_names=list(points.feature_names),
            centroids=centroids,
            feature_means=means,
            feature_stds=stds,
            cluster_stats=cluster_stats,
        )

        return DBSCANResult(
            cluster_labels=labels,
            n_clusters=n_clusters,
            quality_metrics=self._calculate_quality_metrics(X, labels),
            centroids=centroids if n_clusters else None,
            core_point_ids=core_ids,
            border_point_ids=border_ids,
            noise_point_ids=noise_ids,
            cluster_stats=cluster_stats,
            eps=eps,
            min_pts=min_pts,
            estimated_params=estimated,
            model=model,
        )

    # =========================================================================
    # Parameters
    # =========================================================================

    def _resolve_parameters(self, X: np.ndarray) -> Tuple[float, int, Dict[str, bool]]:
        min_pts = self.options.min_pts
        eps = self.options.eps
        estimated = {"eps": False, "min_pts": False}

        if min_pts is None:
            min_pts = estimate_min_pts(X.shape[0], X.shape[1])
            estimated["min_pts"] = True

        if eps is None:
            eps = self.estimate_eps(X, min_pts)
            estimated["eps"] = True

        if any(estimated.values()):
            logger.info(f"Estimated DBSCAN parameters: eps={eps:.6g}, min_pts={min_pts}")

        return float(eps), int(min_pts), estimated

    def estimate_eps(self, X: np.ndarray, k: int) -> float:
        """
        Estimate eps from the k-distance curve of the leading sample.

        The k-distance of a point is the distance to its k-th nearest other
        point. Sorted descending, eps is the smaller of the value at the
        curve's elbow and the configured quantile.

        Raises:
            ParameterValidationError: If the sample is too small for k
        """
        sample = X[: min(self.options.eps_sample_size, len(X))]
        if len(sample) - 1 < k:
            raise ParameterValidationError(
                f"Cannot estimate eps: need more than {k} points, sample has {len(sample)}",
                details={"k": k, "sample_size": len(sample)},
            )

        D = self.distance.pairwise(sample)
        np.fill_diagonal(D, np.inf)
        k_distances = np.sort(np.sort(D, axis=1)[:, k - 1])[::-1]

        elbow = find_elbow_point(k_distances)
        candidate = k_distances[elbow]
        if candidate == 0:
            candidate = k_distances[int(np.floor(len(k_distances) * 0.1))]

        ascending = k_distances[::-1]
        index = min(int(np.floor(len(ascending) * self.options.eps_quantile)), len(ascending) - 1)
        quantile = ascending[index]

        return float(min(candidate, quantile))

    @staticmethod
    def _validate_parameters(eps: float, min_pts: int, n: int) -> None:
        if not eps > 0:
            raise ParameterValidationError(
                f"eps must be positive, got {eps}",
                details={"eps": eps},
            )
        if min_pts < 1:
            raise ParameterValidationError(
                f"min_pts must be at least 1, got {min_pts}",
                details={"min_pts": min_pts},
            )
        if min_pts >= n:
            raise ParameterValidationError(
                f"min_pts ({min_pts}) must be smaller than the number of points ({n})",
                details={"min_pts": min_pts, "n_points": n},
            )

    # =========================================================================
    # Core algorithm
    # =========================================================================

    def _sweep(self, X: np.ndarray, eps: float, min_pts: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Visit points in index order and expand a cluster from every
        unvisited core point.

        Returns:
            (cluster ids in discovery order with -1 for noise, core mask)
        """
        n = len(X)
        visited = np.zeros(n, dtype=bool)
        is_core = np.zeros(n, dtype=bool)
        cluster_ids = np.full(n, NOISE, dtype=int)
        neighbourhoods: List[Optional[np.ndarray]] = [None] * n

        def neighbours(i: int) -> np.ndarray:
            if neighbourhoods[i] is None:
                neighbourhoods[i] = np.flatnonzero(self.distance.to_point(X, X[i]) <= eps)
            return neighbourhoods[i]

        tracker = self._tracker("dbscan", n)
        next_cluster = 0

        for i in range(n):
            tracker.tick()
            if visited[i]:
                continue
            visited[i] = True

            seeds = neighbours(i)
            if len(seeds) < min_pts:
                continue

            is_core[i] = True
            cluster_ids[i] = next_cluster
            self._expand(i, seeds, next_cluster, visited, is_core, cluster_ids, neighbours, min_pts)
            next_cluster += 1

        tracker.finish()
        return cluster_ids, is_core

    @staticmethod
    def _expand(
        origin: int,
        seeds: np.ndarray,
        cluster_id: int,
        visited: np.ndarray,
        is_core: np.ndarray,
        cluster_ids: np.ndarray,
        neighbours,
        min_pts: int,
    ) -> None:
        queue = deque(seeds.tolist())
        processed = {origin}

        while queue:
            j = queue.popleft()
            if j in processed:
                continue
            processed.add(j)

            if cluster_ids[j] == NOISE:
                cluster_ids[j] = cluster_id

            if not visited[j]:
                visited[j] = True
                reachable = neighbours(j)
                if len(reachable) >= min_pts:
                    is_core[j] = True
                    queue.extend(p for p in reachable.tolist() if p not in processed)

    # =========================================================================
    # Statistics
    # =========================================================================

    def _cluster_statistics(self, X: np.ndarray, labels: np.ndarray, n_clusters: int) -> List[Dict[str, Any]]:
        stats = []
        for cluster_id in range(n_clusters):
            pts = X[labels == cluster_id]
            centroid = pts.mean(axis=0)

            density = 0.0
            if len(pts) > 1:
                D = self.distance.pairwise(pts)
                mean_distance = float(D[np.triu_indices(len(pts), k=1)].mean())
                density = 1.0 / (mean_distance or 1.0)

            radius = float(self.distance.to_point(pts, centroid).max())
            stats.append({
                "id": cluster_id,
                "size": int(len(pts)),
                "centroid": centroid.tolist(),
                "density": density,
                "radius": radius,
                "compactness": density / (radius or 1.0),
            })
        return stats


def estimate_min_pts(n_points: int, n_features: int) -> int:
    """min_pts = max(2, min(2 * D, floor(log2 N)))."""
    log_n = int(np.floor(np.log2(n_points))) if n_points > 0 else 0
    return max(2, min(2 * n_features, log_n))


def find_elbow_point(values: np.ndarray) -> int:
    """Index after the largest absolute second difference (0 for short curves)."""
    if len(values) < 3:
        return 0
    return int(np.argmax(np.abs(np.diff(values, n=2)))) + 1
