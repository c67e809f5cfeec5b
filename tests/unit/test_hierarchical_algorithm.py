"""
Unit tests for hierarchical clustering algorithm.

Tests the HierarchicalAlgorithm class including:
- Agglomerative clustering under each linkage criterion
- Tie-breaking and merge history
- Distance threshold and automatic cluster counts
- Divisive clustering
- Progress reporting and cancellation
"""

import numpy as np
import pytest

from clusterkit.core.base_clustering import ClusteringConfig
from clusterkit.core.dendrogram import MergeRecord
from clusterkit.core.hierarchical_algorithm import HierarchicalAlgorithm, HierarchicalResult
from clusterkit.core.progress import CancellationToken, CancelledResult
from clusterkit.utils.error_handling import InputValidationError, ParameterValidationError


def run(points, **params):
    config = ClusteringConfig(algorithm_name="hierarchical", params=params)
    return HierarchicalAlgorithm(config).cluster(points)


def naive_merge_heights(X, linkage):
    """Merge heights recomputed from cluster members at every step."""
    clusters = [[i] for i in range(len(X))]
    heights = []

    def between(a, b):
        pa, pb = X[a], X[b]
        if linkage == "ward":
            diff = pa.mean(axis=0) - pb.mean(axis=0)
            return len(a) * len(b) / (len(a) + len(b)) * float(diff @ diff)
        d = np.linalg.norm(pa[:, None, :] - pb[None, :, :], axis=-1)
        if linkage == "single":
            return float(d.min())
        if linkage == "complete":
            return float(d.max())
        if linkage == "average":
            return float(d.mean())
        return float(np.linalg.norm(pa.mean(axis=0) - pb.mean(axis=0)))

    while len(clusters) > 1:
        pairs = [(i, j) for i in range(len(clusters)) for j in range(i + 1, len(clusters))]
        i, j = min(pairs, key=lambda p: between(clusters[p[0]], clusters[p[1]]))
        heights.append(between(clusters[i], clusters[j]))
        merged = clusters[i] + clusters[j]
        clusters = [c for k, c in enumerate(clusters) if k not in (i, j)] + [merged]
    return heights


@pytest.mark.unit
class TestAgglomerative:
    """Test suite for agglomerative clustering."""

    def test_init(self):
        """Test hierarchical algorithm initialization."""
        config = ClusteringConfig(
            algorithm_name="hierarchical",
            params={"linkage": "single", "num_clusters": 2},
        )

        clusterer = HierarchicalAlgorithm(config)
        assert clusterer.config == config
        assert clusterer.linkage.value == "single"
        assert clusterer.method.value == "agglomerative"

    def test_two_pairs_single_linkage(self, four_points):
        """Test the two obvious pairs are found."""
        result = run(four_points, linkage="single", num_clusters=2)

        assert isinstance(result, HierarchicalResult)
        assert result.n_clusters == 2
        assert result.labels.tolist() == [0, 0, 1, 1]
        assert result.clusters == [[0, 1], [2, 3]]
        assert result.outlier_count == 0

    def test_merge_history_and_tie_break(self, four_points):
        """Equal distances merge the pair earliest in the active list first."""
        result = run(four_points, linkage="single", num_clusters=2)

        history = result.merge_history
        assert len(history) == 2
        assert all(isinstance(m, MergeRecord) for m in history)
        assert history[0].source_cluster_ids == (0, 1)
        assert history[0].result_cluster_id == 4
        assert history[1].source_cluster_ids == (2, 3)
        assert history[1].result_cluster_id == 5
        assert [m.distance for m in history] == pytest.approx([1.0, 1.0])
        assert [m.result_size for m in history] == [2, 2]

    @pytest.mark.parametrize(
        "linkage,final_distance",
        [
            ("single", 10.0),
            ("complete", np.sqrt(101.0)),
            ("average", (20.0 + 2.0 * np.sqrt(101.0)) / 4.0),
            ("centroid", 10.0),
            ("ward", 100.0),
        ],
    )
    def test_linkage_final_merge_distance(self, four_points, linkage, final_distance):
        """Test the distance at which the two pairs are joined."""
        result = run(four_points, linkage=linkage, num_clusters=1)

        assert result.n_clusters == 1
        assert result.merge_history[-1].distance == pytest.approx(final_distance)
        assert result.merge_history[-1].result_size == 4

    def test_ward_initial_merge_is_half_squared_distance(self, four_points):
        result = run(four_points, linkage="ward", num_clusters=2)
        assert result.merge_history[0].distance == pytest.approx(0.5)

    @pytest.mark.parametrize("linkage", ["single", "complete", "average", "ward"])
    def test_merge_distances_monotone(self, random_points, linkage):
        """Merge distances never decrease for reducible linkages."""
        result = run(random_points, linkage=linkage, num_clusters=1)

        distances = np.array([m.distance for m in result.merge_history])
        assert len(distances) == len(random_points) - 1
        assert np.all(np.diff(distances) >= -1e-9)

    @pytest.mark.parametrize("linkage", ["single", "complete", "average", "ward", "centroid"])
    def test_merge_heights_match_member_recomputation(self, linkage):
        """Incremental linkage updates agree with distances recomputed from members."""
        X = np.random.default_rng(3).normal(size=(30, 2))
        result = run(X, linkage=linkage, num_clusters=1)

        heights = [m.distance for m in result.merge_history]
        assert heights == pytest.approx(naive_merge_heights(X, linkage))

    def test_distance_threshold(self, four_points):
        """Test merging stops before merges above the threshold."""
        result = run(four_points, linkage="single", distance_threshold=5.0)

        assert result.n_clusters == 2
        assert len(result.merge_history) == 2
        # The full tree is still built for the dendrogram
        assert len(result.dendrogram.merges) == 3

    def test_no_full_tree(self, four_points):
        result = run(four_points, linkage="single", num_clusters=2, compute_full_tree=False)

        assert result.dendrogram.root is None
        assert len(result.dendrogram.roots) == 2

    def test_auto_cluster_count(self, blobs):
        """Without a target, floor(sqrt(N/2)) clamped to [2, 10] is used."""
        points, _ = blobs
        result = run(points, linkage="average")

        assert result.n_clusters == 5
        assert result.optimal_clusters is not None
        assert 2 <= result.optimal_clusters["optimal_clusters"] <= 10

    def test_blobs_recovered(self, blobs):
        """Test well separated blobs are recovered exactly."""
        points, truth = blobs
        result = run(points, linkage="average", num_clusters=3)

        for cluster in result.clusters:
            assert len(set(truth[cluster])) == 1
        assert result.stats["cophenetic_correlation"] > 0.8

    def test_cluster_stats(self, four_points):
        result = run(four_points, linkage="single", num_clusters=2)

        assert [s["size"] for s in result.cluster_stats] == [2, 2]
        assert result.cluster_stats[0]["centroid"] == pytest.approx([0.0, 0.5])
        assert result.cluster_stats[1]["diameter"] == pytest.approx(1.0)
        assert result.centroids.shape == (2, 2)
        assert result.stats["merge_steps"] == 2
        assert result.stats["total_points"] == 4

    def test_feature_weights(self, four_points):
        """A zero weight on x makes the points pair up across the gap."""
        result = run(four_points, linkage="single", num_clusters=2, feature_weights=[0.0, 1.0])
        assert result.labels.tolist() == [0, 1, 0, 1]

    def test_quality_metrics(self, blobs):
        """Test quality metrics calculation."""
        points, _ = blobs
        result = run(points, linkage="ward", num_clusters=3)

        assert -1.0 <= result.quality_metrics["silhouette_score"] <= 1.0
        assert result.quality_metrics["silhouette_score"] > 0.8
        assert result.quality_metrics["calinski_harabasz_index"] > 0

    def test_validation_disabled(self, four_points):
        result = run(four_points, num_clusters=2, enable_cluster_validation=False)
        assert result.quality_metrics == {}

    def test_single_point(self):
        result = run([[1.0, 2.0]], num_clusters=1)
        assert result.n_clusters == 1
        assert result.merge_history == []

    def test_to_dict(self, four_points):
        data = run(four_points, linkage="single", num_clusters=2).to_dict()

        assert data["method"] == "agglomerative"
        assert data["linkage"] == "single"
        assert data["labels"] == [0, 0, 1, 1]
        assert len(data["history"]) == 2
        assert data["dendrogram"]["n_leaves"] == 4

    def test_cluster_nodes_exported(self, four_points):
        result = run(four_points, linkage="single", num_clusters=2)
        nodes = result.to_dict()["cluster_nodes"]

        assert [node["id"] for node in nodes] == [4, 5]
        assert [node["children"] for node in nodes] == [[0, 1], [2, 3]]
        assert [node["level"] for node in nodes] == [1, 1]
        assert [node["size"] for node in nodes] == [2, 2]
        assert [node["merge_distance"] for node in nodes] == pytest.approx([1.0, 1.0])
        assert nodes[1]["centroid"] == pytest.approx([10.0, 0.5])


@pytest.mark.unit
class TestDivisive:
    """Test suite for divisive clustering."""

    def test_two_pairs(self, four_points):
        result = run(four_points, method="divisive", num_clusters=2)

        assert result.n_clusters == 2
        assert result.labels.tolist() == [0, 0, 1, 1]
        assert len(result.split_history) == 1
        assert result.merge_history == []
        assert result.linkage is None

    def test_no_dendrogram(self, four_points):
        result = run(four_points, method="divisive", num_clusters=2)
        assert result.dendrogram is None

    def test_splits_to_singletons(self, four_points):
        result = run(four_points, method="divisive", num_clusters=4)

        assert result.n_clusters == 4
        assert sorted(result.labels.tolist()) == [0, 1, 2, 3]
        assert len(result.split_history) == 3

    def test_variance_threshold(self, four_points):
        """Splitting stops once the most dispersed cluster is tight enough."""
        result = run(four_points, method="divisive", distance_threshold=1.0)

        # Root variance is 25.25, each pair has variance 0.25
        assert result.n_clusters == 2
        assert result.split_history[0].variance == pytest.approx(25.25)

    def test_blobs_recovered(self, blobs):
        points, truth = blobs
        result = run(points, method="divisive", num_clusters=3)

        assert result.n_clusters == 3
        for cluster in result.clusters:
            assert len(set(truth[cluster])) == 1


@pytest.mark.unit
class TestHierarchicalValidation:
    """Test suite for option and input validation."""

    def test_num_clusters_exceeds_points(self, four_points):
        with pytest.raises(ParameterValidationError):
            run(four_points, num_clusters=5)

    def test_num_clusters_zero(self):
        with pytest.raises(ParameterValidationError):
            HierarchicalAlgorithm(ClusteringConfig("hierarchical", {"num_clusters": 0}))

    def test_unknown_linkage(self):
        """Unknown linkage names are rejected at construction."""
        with pytest.raises(ParameterValidationError) as exc_info:
            HierarchicalAlgorithm(ClusteringConfig("hierarchical", {"linkage": "median"}))
        assert "linkage" in exc_info.value.details["errors"]

    def test_unknown_option(self):
        with pytest.raises(ParameterValidationError):
            HierarchicalAlgorithm(ClusteringConfig("hierarchical", {"n_clusters": 3}))

    def test_negative_threshold(self):
        with pytest.raises(ParameterValidationError):
            HierarchicalAlgorithm(ClusteringConfig("hierarchical", {"distance_threshold": -1.0}))

    def test_weight_count_mismatch(self, four_points):
        with pytest.raises(ParameterValidationError):
            run(four_points, num_clusters=2, feature_weights=[1.0, 1.0, 1.0])

    def test_max_points(self, four_points):
        with pytest.raises(InputValidationError):
            run(four_points, num_clusters=2, max_points=3)


@pytest.mark.unit
class TestHierarchicalProgress:
    """Test suite for progress callbacks and cancellation."""

    def test_progress_events(self, four_points):
        events = []
        config = ClusteringConfig(
            algorithm_name="hierarchical",
            params={"num_clusters": 2, "progress_interval": 1},
            progress_callback=events.append,
        )
        HierarchicalAlgorithm(config).cluster(four_points)

        assert [e.step for e in events] == [1, 2, 3]
        assert all(e.stage == "agglomerative" for e in events)
        assert events[-1].progress == pytest.approx(1.0)

    def test_cancelled_before_start(self, four_points):
        token = CancellationToken()
        token.cancel("user_requested")
        config = ClusteringConfig(
            algorithm_name="hierarchical",
            params={"num_clusters": 2},
            cancellation_token=token,
        )

        result = HierarchicalAlgorithm(config).cluster(four_points)

        assert isinstance(result, CancelledResult)
        assert result.is_cancelled
        assert result.reason == "user_requested"
        assert result.steps_completed == 0

    def test_cancel_from_callback(self, random_points):
        """Cancelling mid-run yields no partial result."""
        token = CancellationToken()

        def stop_after_five(event):
            if event.step >= 5:
                token.cancel()

        config = ClusteringConfig(
            algorithm_name="hierarchical",
            params={"num_clusters": 1, "progress_interval": 1},
            progress_callback=stop_after_five,
            cancellation_token=token,
        )
        result = HierarchicalAlgorithm(config).cluster(random_points)

        assert isinstance(result, CancelledResult)
        assert result.steps_completed == 5

    def test_expired_time_budget(self, four_points):
        token = CancellationToken(time_budget_seconds=0.0)
        config = ClusteringConfig(
            algorithm_name="hierarchical",
            params={"num_clusters": 2},
            cancellation_token=token,
        )

        result = HierarchicalAlgorithm(config).cluster(four_points)
        assert result.is_cancelled
        assert result.reason == "time_budget_exceeded"
