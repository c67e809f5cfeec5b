"""
Clustering Engine - Orchestrates clustering operations.

Main entry point for clustering functionality in clusterkit.
Manages algorithm selection, execution, and result handling, and
exposes the plain-function call contract used by the CLI.
"""

import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from clusterkit.core.base_clustering import ClusteringConfig
from clusterkit.core.dbscan_algorithm import DBSCANAlgorithm, DBSCANResult
from clusterkit.core.hierarchical_algorithm import HierarchicalAlgorithm, HierarchicalResult
from clusterkit.core.progress import CancellationToken, CancelledResult, ProgressCallback
from clusterkit.config.settings_loader import get_settings
from clusterkit.schemas.data_models import DBSCANOptions, HierarchicalOptions
from clusterkit.utils.error_handling import InvalidAlgorithmError, parameter_errors

logger = logging.getLogger(__name__)


class ClusteringEngine:
    """
    Main clustering engine that orchestrates different algorithms.

    Provides a unified interface for all clustering operations regardless
    of the underlying algorithm.
    """

    # Registry of available algorithms
    ALGORITHMS = {
        "hierarchical": HierarchicalAlgorithm,
        "dbscan": DBSCANAlgorithm,
    }

    # Names that select an algorithm plus a preset parameter
    ALIASES = {
        "agglomerative": ("hierarchical", {"method": "agglomerative"}),
        "divisive": ("hierarchical", {"method": "divisive"}),
    }

    def __init__(self):
        """Initialize clustering engine."""
        logger.info("Initialized ClusteringEngine")

    def _resolve(self, algorithm: str, params: Dict[str, Any]):
        name = algorithm.lower()
        if name in self.ALIASES:
            name, preset = self.ALIASES[name]
            params = {**preset, **params}
        return name, params

    def cluster(
        self,
        data: Any,
        algorithm: str,
        algorithm_params: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Union[HierarchicalResult, DBSCANResult, CancelledResult]:
        """
        Perform clustering using the specified algorithm.

        Args:
            data: Points as a PointSet, 2-D array or records
            algorithm: Algorithm name (hierarchical/dbscan, or agglomerative/divisive)
            algorithm_params: Algorithm-specific parameters
            progress_callback: Called with a ProgressEvent every progress interval
            cancellation_token: Polled once per outer-loop step

        Returns:
            Clustering result, or CancelledResult if the token fired

        Raises:
            InvalidAlgorithmError: If algorithm is not supported
            ParameterValidationError: If the parameters do not validate
            InputValidationError: If the points are malformed
        """
        name, params = self._resolve(algorithm, dict(algorithm_params or {}))
        if name not in self.ALGORITHMS:
            raise InvalidAlgorithmError(
                f"Unsupported algorithm '{algorithm}'. "
                f"Supported: {sorted([*self.ALGORITHMS, *self.ALIASES])}",
                details={"algorithm": algorithm},
            )

        if cancellation_token is None:
            budget = get_settings().performance.time_budget_seconds
            if budget is not None:
                cancellation_token = CancellationToken(time_budget_seconds=budget)

        config = ClusteringConfig(
            algorithm_name=name,
            params=params,
            progress_callback=progress_callback,
            cancellation_token=cancellation_token,
        )

        clusterer = self.ALGORITHMS[name](config)
        result = clusterer.cluster(data)

        if result.is_cancelled:
            logger.info(f"{name} clustering cancelled ({result.reason})")
        else:
            timing = f" in {result.duration_ms:.1f} ms" if result.duration_ms is not None else ""
            logger.info(
                f"{name} clustering complete: {result.n_clusters} clusters, "
                f"{result.outlier_count} outliers{timing}"
            )

        return result

    def get_recommended_algorithm(
        self,
        n_points: int,
        expect_noise: bool = False,
    ) -> str:
        """
        Recommend clustering algorithm based on dataset characteristics.

        Args:
            n_points: Number of points to cluster
            expect_noise: Whether outliers should be left unassigned

        Returns:
            Recommended algorithm name
        """
        if expect_noise:
            return "dbscan"

        if n_points <= get_settings().hierarchical.max_points:
            # Small enough to keep the full distance matrix
            return "hierarchical"

        return "dbscan"

    def validate_clustering_config(
        self,
        algorithm: str,
        params: Dict[str, Any],
    ) -> Dict[str, str]:
        """
        Validate clustering configuration.

        Args:
            algorithm: Algorithm name
            params: Algorithm parameters

        Returns:
            Dictionary of validation errors (empty if valid)
        """
        name, params = self._resolve(algorithm, dict(params))
        if name not in self.ALGORITHMS:
            return {"algorithm": f"Unsupported algorithm '{algorithm}'"}

        try:
            options = self.ALGORITHMS[name].options_model(**params)
        except ValidationError as e:
            return parameter_errors(e)

        errors = {}
        if name == "dbscan" and not options.auto_estimate_params:
            for field_name in ("eps", "min_pts"):
                if getattr(options, field_name) is None:
                    errors[field_name] = "Required when auto_estimate_params is disabled"

        return errors


# =============================================================================
# Call contract
# =============================================================================

engine = ClusteringEngine()


def _merge_options(options: Union[BaseModel, Dict[str, Any], None], overrides: Dict[str, Any]) -> Dict[str, Any]:
    if options is None:
        params = {}
    elif isinstance(options, BaseModel):
        params = options.model_dump(exclude_unset=True)
    else:
        params = dict(options)
    params.update(overrides)
    return params


def hierarchical_cluster(
    points: Any,
    options: Union[HierarchicalOptions, Dict[str, Any], None] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancellation_token: Optional[CancellationToken] = None,
    **overrides: Any,
) -> Union[HierarchicalResult, CancelledResult]:
    """
    Hierarchical clustering of points.

    Example:
        result = hierarchical_cluster(points, linkage="ward", num_clusters=3)
        labels = cut_dendrogram(result, height=2.5)
    """
    return engine.cluster(
        points,
        "hierarchical",
        _merge_options(options, overrides),
        progress_callback=progress_callback,
        cancellation_token=cancellation_token,
    )


def dbscan_cluster(
    points: Any,
    options: Union[DBSCANOptions, Dict[str, Any], None] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancellation_token: Optional[CancellationToken] = None,
    **overrides: Any,
) -> Union[DBSCANResult, CancelledResult]:
    """
    DBSCAN clustering of points.

    Example:
        result = dbscan_cluster(points, eps=0.5, min_pts=3)
        new_labels = predict(result.model, new_points)
    """
    return engine.cluster(
        points,
        "dbscan",
        _merge_options(options, overrides),
        progress_callback=progress_callback,
        cancellation_token=cancellation_token,
    )
