"""
Clustering Quality Assessment.

Internal metrics (no ground truth), external metrics (against true
labels) and bootstrap stability, aggregated into a frozen QualityReport
with a normalised overall score and a categorical recommendation.

Internal metrics:
- Silhouette score: [-1, 1], higher is better
- Davies-Bouldin index: [0, inf), lower is better
- Calinski-Harabasz index: [0, inf), higher is better
- Dunn index: [0, inf), higher is better
- Within / between cluster sum of squares

Noise points (label -1) are left out of every internal metric.
"""

import hashlib
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.metrics import (
    adjusted_rand_score,
    homogeneity_completeness_v_measure,
    normalized_mutual_info_score,
    silhouette_samples,
)
from sklearn.metrics.cluster import contingency_matrix

from clusterkit.config.settings_loader import get_settings
from clusterkit.core.distance import DistanceFunction
from clusterkit.core.points import prepare_points
from clusterkit.core.progress import (
    CancellationToken,
    CancelledResult,
    ProgressCallback,
    ProgressTracker,
)
from clusterkit.schemas.data_models import (
    ExternalMetrics,
    InternalMetrics,
    QualityOptions,
    QualityReport,
    QualitySummary,
    Recommendation,
    StabilityMetrics,
)
from clusterkit.utils.advanced_logging import LogContext, PerformanceLogger, get_logger, timed
from clusterkit.utils.error_handling import (
    ClusteringCancelled,
    InputValidationError,
    ParameterValidationError,
    translate_validation_errors,
)

logger = logging.getLogger(__name__)

NOISE = -1

RECOMMENDATION_THRESHOLDS = (
    (0.8, Recommendation.EXCELLENT),
    (0.7, Recommendation.GOOD),
    (0.6, Recommendation.FAIR),
    (0.5, Recommendation.POOR),
)


# =============================================================================
# Helpers
# =============================================================================


def labels_from_clusters(clusters: Any, n_points: Optional[int] = None) -> np.ndarray:
    """
    Normalise a clustering into a label array.

    Args:
        clusters: Label sequence, an object with a `labels` attribute (any
            clustering result), or a list of member-id lists
        n_points: Number of points, required for member-id lists

    Returns:
        Integer label array; points in no member list get -1
    """
    if hasattr(clusters, "labels"):
        return np.asarray(clusters.labels)

    if (
        isinstance(clusters, (list, tuple))
        and clusters
        and isinstance(clusters[0], (list, tuple, np.ndarray))
    ):
        if n_points is None:
            n_points = 1 + max((max(members) for members in clusters if len(members)), default=-1)
        labels = np.full(n_points, NOISE, dtype=int)
        for cluster_id, members in enumerate(clusters):
            labels[np.asarray(members, dtype=int)] = cluster_id
        return labels

    return np.asarray(clusters)


def _clustered(data: np.ndarray, labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    mask = labels != NOISE
    return data[mask], labels[mask]


def _centroids(data: np.ndarray, labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Unique labels, per-cluster sizes and centroids."""
    unique, inverse, counts = np.unique(labels, return_inverse=True, return_counts=True)
    sums = np.zeros((len(unique), data.shape[1]))
    np.add.at(sums, inverse, data)
    return unique, counts, sums / counts[:, np.newaxis]


def _check_lengths(data: np.ndarray, labels: np.ndarray) -> None:
    if len(labels) != len(data):
        raise InputValidationError(
            f"Got {len(labels)} labels for {len(data)} points",
            details={"n_labels": len(labels), "n_points": len(data)},
        )


# =============================================================================
# Internal Metrics
# =============================================================================


def silhouette_score(
    data,
    labels,
    distance: Optional[DistanceFunction] = None,
    distances: Optional[np.ndarray] = None,
) -> float:
    """
    Mean silhouette coefficient over clustered points.

    Returns 0 when fewer than two clusters exist or every cluster is a
    singleton.

    Args:
        data: (n, d) feature matrix
        labels: Cluster labels, -1 for noise
        distance: Distance function (euclidean when omitted)
        distances: Optional precomputed pairwise matrix of the clustered points
    """
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)

    n_labels = len(np.unique(y))
    if n_labels < 2 or n_labels >= len(y):
        return 0.0

    if distances is None:
        distances = (distance or DistanceFunction()).pairwise(X)

    scores = silhouette_samples(distances, y, metric="precomputed")
    return float(np.clip(np.mean(scores), -1.0, 1.0))


def davies_bouldin_index(data, labels, distance: Optional[DistanceFunction] = None) -> float:
    """
    Davies-Bouldin index; centroid pairs at zero distance are skipped.
    """
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)

    unique, _, centroids = _centroids(X, y) if len(y) else (np.array([]), None, None)
    k = len(unique)
    if k <= 1:
        return 0.0

    distance = distance or DistanceFunction()
    scatter = np.array([
        float(np.mean(distance.to_point(X[y == label], centroids[i])))
        for i, label in enumerate(unique)
    ])
    separation = distance.pairwise(centroids)

    total = 0.0
    for i in range(k):
        max_ratio = 0.0
        for j in range(k):
            if i != j and separation[i, j] > 0:
                max_ratio = max(max_ratio, (scatter[i] + scatter[j]) / separation[i, j])
        total += max_ratio
    return float(total / k)


def within_cluster_ss(data, labels) -> float:
    """Sum of squared euclidean distances from points to their cluster centroid."""
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)
    if len(y) == 0:
        return 0.0

    unique, _, centroids = _centroids(X, y)
    index = np.searchsorted(unique, y)
    return float(np.sum((X - centroids[index]) ** 2))


def between_cluster_ss(data, labels) -> float:
    """Size-weighted squared euclidean spread of centroids around the overall mean."""
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)
    if len(y) == 0:
        return 0.0

    _, counts, centroids = _centroids(X, y)
    overall = X.mean(axis=0)
    return float(np.sum(counts * np.sum((centroids - overall) ** 2, axis=1)))


def calinski_harabasz_index(data, labels) -> float:
    """
    Variance ratio criterion.

    Returns 0 when WCSS is 0, there is at most one cluster, or there are no
    more points than clusters.
    """
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)

    n = len(y)
    k = len(np.unique(y))
    if k <= 1 or n <= k:
        return 0.0

    wcss = within_cluster_ss(X, y)
    if wcss == 0:
        return 0.0
    bcss = between_cluster_ss(X, y)
    return float((bcss / (k - 1)) / (wcss / (n - k)))


def dunn_index(
    data,
    labels,
    distance: Optional[DistanceFunction] = None,
    distances: Optional[np.ndarray] = None,
) -> float:
    """
    Minimum inter-cluster distance over maximum cluster diameter.

    Returns 0 for a single cluster or when every cluster has zero diameter.
    """
    data = np.asarray(data, dtype=float)
    labels = np.asarray(labels)
    _check_lengths(data, labels)
    X, y = _clustered(data, labels)

    unique = np.unique(y)
    if len(unique) <= 1:
        return 0.0

    if distances is None:
        distances = (distance or DistanceFunction()).pairwise(X)

    members = [np.flatnonzero(y == label) for label in unique]
    max_intra = max(float(distances[np.ix_(m, m)].max()) for m in members)
    if max_intra <= 0:
        return 0.0

    min_inter = min(
        float(distances[np.ix_(members[i], members[j])].min())
        for i in range(len(members))
        for j in range(i + 1, len(members))
    )
    return float(min_inter / max_intra)


# =============================================================================
# External Metrics
# =============================================================================


def _paired(predicted, true) -> Tuple[np.ndarray, np.ndarray]:
    predicted = np.asarray(predicted)
    true = np.asarray(true)
    if predicted.shape != true.shape or predicted.ndim != 1:
        raise InputValidationError(
            "Predicted and true labels must have the same length",
            details={"n_predicted": int(predicted.size), "n_true": int(true.size)},
        )
    return predicted, true


def contingency_table(predicted, true) -> np.ndarray:
    """Counts of points per (predicted cluster, true class) pair."""
    predicted, true = _paired(predicted, true)
    return contingency_matrix(predicted, true)


def adjusted_rand_index(predicted, true) -> float:
    """Adjusted Rand Index, 1.0 for identical partitions up to relabeling."""
    predicted, true = _paired(predicted, true)
    return float(adjusted_rand_score(true, predicted))


def normalized_mutual_info(predicted, true) -> float:
    """Mutual information normalised by the arithmetic mean of the entropies."""
    predicted, true = _paired(predicted, true)
    return float(normalized_mutual_info_score(true, predicted, average_method="arithmetic"))


def homogeneity(predicted, true) -> float:
    """Each cluster holds members of a single class."""
    predicted, true = _paired(predicted, true)
    return float(homogeneity_completeness_v_measure(true, predicted)[0])


def completeness(predicted, true) -> float:
    """All members of a class fall in the same cluster."""
    predicted, true = _paired(predicted, true)
    return float(homogeneity_completeness_v_measure(true, predicted)[1])


def v_measure(predicted, true) -> float:
    """Harmonic mean of homogeneity and completeness."""
    predicted, true = _paired(predicted, true)
    return float(homogeneity_completeness_v_measure(true, predicted)[2])


# =============================================================================
# Stability
# =============================================================================


def _labels_of(outcome: Any) -> np.ndarray:
    if getattr(outcome, "is_cancelled", False):
        raise ClusteringCancelled(getattr(outcome, "reason", "cancelled"))
    return labels_from_clusters(outcome)


def bootstrap_scores(
    data,
    clustering_function: Callable[[np.ndarray], Any],
    num_bootstraps: int = 100,
    sample_ratio: float = 0.8,
    random_state: Optional[int] = 42,
    tracker: Optional[ProgressTracker] = None,
) -> List[float]:
    """
    Per-resample ARI between the resample's clustering and the original
    labels restricted to the resampled indices.

    Args:
        data: (n, d) feature matrix
        clustering_function: Called with a feature matrix, returns labels
            or a result object with `labels`
        num_bootstraps: Number of resamples
        sample_ratio: Resample size as a fraction of n
        random_state: Seed for resampling (with replacement)
        tracker: Optional progress tracker polled every resample

    Returns:
        List of ARI scores, one per resample
    """
    if clustering_function is None:
        raise ParameterValidationError("Bootstrap stability requires a clustering function")

    data = np.asarray(data, dtype=float)
    n = len(data)
    original = _labels_of(clustering_function(data))
    _check_lengths(data, original)

    rng = np.random.default_rng(random_state)
    sample_size = min(n, max(2, int(np.floor(n * sample_ratio))))

    scores = []
    for _ in range(num_bootstraps):
        if tracker is not None:
            tracker.tick()
        indices = rng.integers(0, n, size=sample_size)
        sample_labels = _labels_of(clustering_function(data[indices]))
        scores.append(adjusted_rand_index(sample_labels, original[indices]))

    return scores


def bootstrap_stability(
    data,
    clustering_function: Callable[[np.ndarray], Any],
    num_bootstraps: int = 100,
    sample_ratio: float = 0.8,
    random_state: Optional[int] = 42,
) -> float:
    """Mean bootstrap ARI (see bootstrap_scores)."""
    scores = bootstrap_scores(data, clustering_function, num_bootstraps, sample_ratio, random_state)
    return float(np.mean(scores)) if scores else 0.0


# =============================================================================
# Quality Assessment
# =============================================================================


def recommend(score: float) -> Recommendation:
    """Map an overall score to its categorical recommendation."""
    for threshold, recommendation in RECOMMENDATION_THRESHOLDS:
        if score >= threshold:
            return recommendation
    return Recommendation.VERY_POOR


def summarize(
    internal: InternalMetrics,
    external: Optional[ExternalMetrics] = None,
    stability: Optional[StabilityMetrics] = None,
) -> QualitySummary:
    """Normalise metrics to [0, 1] and combine them into an overall score."""
    components = [(internal.silhouette_score + 1) / 2]
    if internal.davies_bouldin_index > 0:
        components.append(1 / (1 + internal.davies_bouldin_index))
    if internal.calinski_harabasz_index > 0:
        components.append(min(1.0, internal.calinski_harabasz_index / 100))
    if internal.dunn_index > 0:
        components.append(min(1.0, internal.dunn_index))
    internal_score = float(np.mean(components))

    parts = [internal_score]

    external_score = None
    if external is not None:
        external_score = float(np.mean([
            max(0.0, external.adjusted_rand_index),
            external.normalized_mutual_info,
            external.homogeneity,
            external.completeness,
            external.v_measure,
        ]))
        parts.append(external_score)

    stability_score = None
    if stability is not None:
        stability_score = max(0.0, stability.bootstrap_stability)
        parts.append(stability_score)

    overall = float(np.clip(np.mean(parts), 0.0, 1.0))
    return QualitySummary(
        overall_score=overall,
        internal_score=internal_score,
        external_score=external_score,
        stability_score=stability_score,
        recommendation=recommend(overall),
    )


@translate_validation_errors
def _build_quality_options(options: Union[QualityOptions, Dict[str, Any], None]) -> QualityOptions:
    if isinstance(options, QualityOptions):
        return options
    return QualityOptions(**(options or {}))


class ClusteringQualityAssessment:
    """
    Quality evaluation with a bounded, content-keyed report cache.

    Example:
        assessment = ClusteringQualityAssessment()
        report = assessment.evaluate_quality(points, result, true_labels=truth)
        report.summary.recommendation   # Recommendation.EXCELLENT
    """

    def __init__(self, cache_size: Optional[int] = None):
        self.cache_size = get_settings().quality.cache_size if cache_size is None else cache_size
        # Entries pin the clustering function so its id in the key cannot be reused
        self._cache: "OrderedDict[str, Tuple[QualityReport, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._cache)

    def evaluate_quality(
        self,
        data: Any,
        clusters: Any,
        true_labels: Optional[Sequence] = None,
        options: Union[QualityOptions, Dict[str, Any], None] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Union[QualityReport, CancelledResult]:
        """
        Evaluate a clustering.

        Args:
            data: Points as a PointSet, array or records
            clusters: Labels, a clustering result or member-id lists
            true_labels: Optional ground-truth labels for external metrics
            options: QualityOptions or a dict of its fields
            progress_callback: Called every bootstrap progress interval
            cancellation_token: Polled once per bootstrap resample

        Returns:
            QualityReport, or CancelledResult when stability evaluation was
            cancelled

        Raises:
            InputValidationError: On label length mismatches or bad data
            ParameterValidationError: On invalid options
        """
        opts = _build_quality_options(options)
        points = prepare_points(data)
        X = points.features
        labels = labels_from_clusters(clusters, points.n_points)
        _check_lengths(X, labels)

        truth = None
        if true_labels is not None:
            truth = np.asarray(true_labels)
            _check_lengths(X, truth)

        key = self._cache_key(X, labels, truth, opts)
        if key in self._cache:
            self._cache.move_to_end(key)
            logger.debug("Quality report served from cache")
            return self._cache[key][0]

        with LogContext.run_context(), PerformanceLogger(
            "evaluate_quality",
            logger=get_logger(__name__),
            item_count=points.n_points,
            track_memory=False,
        ):
            try:
                report = self._evaluate(X, labels, truth, opts, progress_callback, cancellation_token)
            except ClusteringCancelled as e:
                logger.warning(f"Quality evaluation cancelled: {e.reason}")
                return CancelledResult("quality", e.reason, e.steps_completed)

        self._store(key, report, opts.clustering_function)
        return report

    def _evaluate(
        self,
        X: np.ndarray,
        labels: np.ndarray,
        truth: Optional[np.ndarray],
        opts: QualityOptions,
        progress_callback: Optional[ProgressCallback],
        cancellation_token: Optional[CancellationToken],
    ) -> QualityReport:
        distance = DistanceFunction(opts.distance_metric, n_jobs=get_settings().performance.n_jobs)
        clustered_X, clustered_y = _clustered(X, labels)
        distances = distance.pairwise(clustered_X) if len(clustered_y) else None

        internal = InternalMetrics(
            silhouette_score=silhouette_score(X, labels, distance, distances=distances),
            davies_bouldin_index=davies_bouldin_index(X, labels, distance),
            calinski_harabasz_index=calinski_harabasz_index(X, labels),
            within_cluster_ss=within_cluster_ss(X, labels),
            between_cluster_ss=between_cluster_ss(X, labels),
            dunn_index=dunn_index(X, labels, distance, distances=distances),
        )

        external = None
        if truth is not None:
            h, c, v = homogeneity_completeness_v_measure(truth, labels)
            external = ExternalMetrics(
                adjusted_rand_index=min(1.0, adjusted_rand_index(labels, truth)),
                normalized_mutual_info=float(np.clip(normalized_mutual_info(labels, truth), 0.0, 1.0)),
                homogeneity=float(np.clip(h, 0.0, 1.0)),
                completeness=float(np.clip(c, 0.0, 1.0)),
                v_measure=float(np.clip(v, 0.0, 1.0)),
            )

        stability = None
        if opts.evaluate_stability:
            tracker = ProgressTracker(
                stage="bootstrap_stability",
                total=opts.num_bootstraps,
                interval=max(1, opts.num_bootstraps // 10),
                callback=progress_callback,
                token=cancellation_token,
            )
            scores = bootstrap_scores(
                X,
                opts.clustering_function,
                num_bootstraps=opts.num_bootstraps,
                sample_ratio=opts.sample_ratio,
                random_state=opts.random_state,
                tracker=tracker,
            )
            tracker.finish()
            stability = StabilityMetrics(
                bootstrap_stability=float(np.mean(scores)),
                num_bootstraps=opts.num_bootstraps,
                sample_ratio=opts.sample_ratio,
                scores=scores,
            )

        summary = summarize(internal, external, stability)
        logger.info(
            f"Quality evaluated: {len(np.unique(clustered_y))} clusters, "
            f"overall={summary.overall_score:.3f} ({summary.recommendation.value})"
        )

        return QualityReport(
            num_points=len(X),
            num_clusters=int(len(np.unique(clustered_y))),
            num_noise_points=int(np.sum(labels == NOISE)),
            internal=internal,
            external=external,
            stability=stability,
            summary=summary,
        )

    def _cache_key(
        self,
        X: np.ndarray,
        labels: np.ndarray,
        truth: Optional[np.ndarray],
        opts: QualityOptions,
    ) -> str:
        digest = hashlib.sha1()
        digest.update(np.ascontiguousarray(X).tobytes())
        digest.update(np.ascontiguousarray(labels).tobytes())
        _, sizes = np.unique(labels, return_counts=True)
        truth_part = "none" if truth is None else ",".join(map(str, truth.tolist()))
        return (
            f"{len(X)}_{','.join(map(str, sizes.tolist()))}_{digest.hexdigest()}_"
            f"{truth_part}_{opts.cache_token()}"
        )

    def _store(self, key: str, report: QualityReport, clustering_function: Any = None) -> None:
        if self.cache_size <= 0:
            return
        self._cache[key] = (report, clustering_function)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        """Drop every cached report."""
        self._cache.clear()

    @timed(operation="compare_clusterings")
    def compare_clusterings(
        self,
        data: Any,
        clusterings: Sequence[Any],
        true_labels: Optional[Sequence] = None,
        options: Union[QualityOptions, Dict[str, Any], None] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rank several clusterings of the same data by overall score.

        Returns:
            List of {"index", "clusters", "evaluation", "score"} dicts,
            best first (ties keep input order)
        """
        comparisons = []
        for index, clusters in enumerate(clusterings):
            evaluation = self.evaluate_quality(data, clusters, true_labels, options)
            comparisons.append({
                "index": index,
                "clusters": clusters,
                "evaluation": evaluation,
                "score": evaluation.summary.overall_score,
            })

        comparisons.sort(key=lambda item: item["score"], reverse=True)
        return comparisons


quality_assessment = ClusteringQualityAssessment()


def evaluate_quality(
    data: Any,
    clusters: Any,
    true_labels: Optional[Sequence] = None,
    options: Union[QualityOptions, Dict[str, Any], None] = None,
    **kwargs: Any,
) -> Union[QualityReport, CancelledResult]:
    """Evaluate with the shared module-level assessment (and its cache)."""
    return quality_assessment.evaluate_quality(data, clusters, true_labels, options, **kwargs)
