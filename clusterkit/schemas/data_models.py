"""
data_models.py

Pydantic data models for the clusterkit clustering engine.
Defines the option schemas accepted by each algorithm and the read-only
quality report produced by the assessment layer.

Schema Design:
- Options: validated at construction, defaults taken from loaded settings
- Enums: closed sets so unknown linkage/metric names are rejected up front
- Report: frozen, created once per evaluation and never mutated
"""

from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clusterkit.config.settings_loader import get_settings


# =============================================================================
# ENUMS
# =============================================================================


class ClusteringMethod(str, Enum):
    """Hierarchical clustering direction."""

    AGGLOMERATIVE = "agglomerative"
    DIVISIVE = "divisive"


class LinkageCriterion(str, Enum):
    """Rule for the distance between two clusters."""

    SINGLE = "single"
    COMPLETE = "complete"
    AVERAGE = "average"
    WARD = "ward"
    CENTROID = "centroid"


class DistanceMetric(str, Enum):
    """Supported point-to-point distance metrics."""

    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"
    COSINE = "cosine"
    CHEBYSHEV = "chebyshev"


class PointRole(str, Enum):
    """DBSCAN point classification."""

    CORE = "core"
    BORDER = "border"
    NOISE = "noise"


class Recommendation(str, Enum):
    """Categorical verdict derived from the overall quality score."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    VERY_POOR = "very_poor"


# =============================================================================
# OPTION MODELS
# =============================================================================


def _hierarchical_default(name: str) -> Callable[[], Any]:
    return lambda: getattr(get_settings().hierarchical, name)


def _dbscan_default(name: str) -> Callable[[], Any]:
    return lambda: getattr(get_settings().dbscan, name)


def _quality_default(name: str) -> Callable[[], Any]:
    return lambda: getattr(get_settings().quality, name)


class _WeightedOptions(BaseModel):
    """Shared handling of optional per-feature weights."""

    model_config = ConfigDict(extra="forbid", use_enum_values=False, validate_default=True)

    feature_weights: Optional[List[float]] = Field(None, description="Per-feature weights (non-negative)")
    n_jobs: Optional[int] = Field(
        default_factory=lambda: get_settings().performance.n_jobs,
        description="Parallel jobs for pairwise distance computation",
    )

    @field_validator("feature_weights")
    @classmethod
    def validate_weights(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """Weights must be finite and non-negative with at least one positive."""
        if v is None:
            return v
        if not v:
            raise ValueError("feature_weights must not be empty")
        if any(w < 0 or w != w or w == float("inf") for w in v):
            raise ValueError("feature_weights must be finite and non-negative")
        if not any(w > 0 for w in v):
            raise ValueError("at least one feature weight must be positive")
        return v


class HierarchicalOptions(_WeightedOptions):
    """Options for hierarchical clustering."""

    method: ClusteringMethod = Field(default_factory=_hierarchical_default("method"))
    linkage: LinkageCriterion = Field(default_factory=_hierarchical_default("linkage"))
    distance_metric: DistanceMetric = Field(default_factory=_hierarchical_default("distance_metric"))
    num_clusters: Optional[int] = Field(None, ge=1, description="Target cluster count")
    distance_threshold: Optional[float] = Field(None, ge=0.0, description="Stop before merges above this distance")
    max_points: int = Field(default_factory=_hierarchical_default("max_points"), ge=1)
    generate_dendrogram: bool = Field(default_factory=_hierarchical_default("generate_dendrogram"))
    compute_full_tree: bool = Field(default_factory=_hierarchical_default("compute_full_tree"))
    calculate_cophenetic_correlation: bool = Field(
        default_factory=_hierarchical_default("calculate_cophenetic_correlation")
    )
    enable_cluster_validation: bool = Field(default_factory=_hierarchical_default("enable_cluster_validation"))
    max_split_iterations: int = Field(default_factory=_hierarchical_default("max_split_iterations"), ge=1)
    progress_interval: int = Field(default_factory=_hierarchical_default("progress_interval"), ge=1)


class DBSCANOptions(_WeightedOptions):
    """Options for DBSCAN clustering."""

    eps: Optional[float] = Field(None, gt=0.0, description="Neighbourhood radius")
    min_pts: Optional[int] = Field(None, ge=1, description="Minimum neighbourhood size of a core point")
    distance_metric: DistanceMetric = Field(default_factory=_dbscan_default("distance_metric"))
    auto_estimate_params: bool = Field(default_factory=_dbscan_default("auto_estimate_params"))
    eps_quantile: float = Field(default_factory=_dbscan_default("eps_quantile"), gt=0.0, le=1.0)
    eps_sample_size: int = Field(default_factory=_dbscan_default("eps_sample_size"), ge=2)
    normalize: bool = Field(default_factory=_dbscan_default("normalize"))
    enable_cluster_validation: bool = Field(default_factory=_dbscan_default("enable_cluster_validation"))
    progress_interval: int = Field(default_factory=_dbscan_default("progress_interval"), ge=1)


class QualityOptions(BaseModel):
    """Options for quality evaluation."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True, validate_default=True)

    distance_metric: DistanceMetric = Field(default_factory=_quality_default("distance_metric"))
    evaluate_stability: bool = Field(False, description="Run bootstrap stability")
    clustering_function: Optional[Callable[..., Any]] = Field(
        None, description="Re-clusters a resampled matrix, returns labels or a result with .labels"
    )
    num_bootstraps: int = Field(default_factory=_quality_default("num_bootstraps"), ge=1)
    sample_ratio: float = Field(default_factory=_quality_default("sample_ratio"), gt=0.0, le=1.0)
    random_state: Optional[int] = Field(default_factory=_quality_default("random_state"))

    @model_validator(mode="after")
    def check_stability_function(self) -> "QualityOptions":
        """Stability needs a function to re-cluster with."""
        if self.evaluate_stability and self.clustering_function is None:
            raise ValueError("evaluate_stability requires clustering_function")
        return self

    def cache_token(self) -> str:
        """Stable textual form of the options for cache keys."""
        data = self.model_dump(mode="json", exclude={"clustering_function"})
        if self.clustering_function is not None:
            func = self.clustering_function
            data["clustering_function"] = f"{getattr(func, '__qualname__', type(func).__name__)}@{id(func)}"
        return repr(sorted(data.items()))


# =============================================================================
# QUALITY REPORT
# =============================================================================


class InternalMetrics(BaseModel):
    """Metrics that need no ground truth."""

    model_config = ConfigDict(frozen=True)

    silhouette_score: float = Field(..., ge=-1.0, le=1.0)
    davies_bouldin_index: float = Field(..., ge=0.0)
    calinski_harabasz_index: float = Field(..., ge=0.0)
    within_cluster_ss: float = Field(..., ge=0.0)
    between_cluster_ss: float = Field(..., ge=0.0)
    dunn_index: float = Field(..., ge=0.0)


class ExternalMetrics(BaseModel):
    """Agreement with ground-truth labels."""

    model_config = ConfigDict(frozen=True)

    adjusted_rand_index: float = Field(..., le=1.0)
    normalized_mutual_info: float = Field(..., ge=0.0, le=1.0)
    homogeneity: float = Field(..., ge=0.0, le=1.0)
    completeness: float = Field(..., ge=0.0, le=1.0)
    v_measure: float = Field(..., ge=0.0, le=1.0)


class StabilityMetrics(BaseModel):
    """Bootstrap stability result."""

    model_config = ConfigDict(frozen=True)

    bootstrap_stability: float
    num_bootstraps: int
    sample_ratio: float
    scores: List[float] = Field(default_factory=list, description="Per-resample ARI")


class QualitySummary(BaseModel):
    """Normalised scores and the categorical recommendation."""

    model_config = ConfigDict(frozen=True)

    overall_score: float = Field(..., ge=0.0, le=1.0)
    internal_score: float = Field(..., ge=0.0, le=1.0)
    external_score: Optional[float] = None
    stability_score: Optional[float] = None
    recommendation: Recommendation


class QualityReport(BaseModel):
    """Read-only aggregate of quality metrics for one clustering."""

    model_config = ConfigDict(frozen=True)

    num_points: int
    num_clusters: int
    num_noise_points: int = 0
    internal: InternalMetrics
    external: Optional[ExternalMetrics] = None
    stability: Optional[StabilityMetrics] = None
    summary: QualitySummary

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dictionary."""
        return self.model_dump(mode="json")
