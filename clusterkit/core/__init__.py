"""
Core clustering module for clusterkit.

Exports:
- hierarchical_cluster / dbscan_cluster: Plain-function call contract
- evaluate_quality / ClusteringQualityAssessment: Quality reports
- cut_dendrogram / predict: Operations on fitted results
- ClusteringEngine: Algorithm registry and orchestration
- CancellationToken / ProgressEvent: Cooperative cancellation and progress
- Individual algorithm implementations
"""

from clusterkit.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
)
from clusterkit.core.clustering_engine import (
    ClusteringEngine,
    dbscan_cluster,
    hierarchical_cluster,
)
from clusterkit.core.dbscan_algorithm import DBSCANAlgorithm, DBSCANModel, DBSCANResult, predict
from clusterkit.core.dendrogram import Dendrogram, MergeRecord, cut_dendrogram
from clusterkit.core.distance import DistanceFunction
from clusterkit.core.hierarchical_algorithm import HierarchicalAlgorithm, HierarchicalResult
from clusterkit.core.points import PointSet, prepare_points
from clusterkit.core.progress import CancellationToken, CancelledResult, ProgressEvent
from clusterkit.core.quality_metrics import ClusteringQualityAssessment, evaluate_quality

__all__ = [
    "hierarchical_cluster",
    "dbscan_cluster",
    "evaluate_quality",
    "cut_dendrogram",
    "predict",
    "ClusteringEngine",
    "ClusteringQualityAssessment",
    "BaseClusteringAlgorithm",
    "ClusteringResult",
    "ClusteringConfig",
    "HierarchicalAlgorithm",
    "HierarchicalResult",
    "DBSCANAlgorithm",
    "DBSCANResult",
    "DBSCANModel",
    "Dendrogram",
    "MergeRecord",
    "DistanceFunction",
    "PointSet",
    "prepare_points",
    "CancellationToken",
    "CancelledResult",
    "ProgressEvent",
]
