"""
Unit tests for dendrogram construction and cutting.
"""

import numpy as np
import pytest

from clusterkit.core.clustering_engine import hierarchical_cluster
from clusterkit.core.dendrogram import (
    Dendrogram,
    MergeRecord,
    build_dendrogram,
    cophenetic_correlation,
    cut_dendrogram,
    find_optimal_clusters,
    labels_from_merges,
    renumber,
)
from clusterkit.utils.error_handling import DendrogramUnavailableError, ParameterValidationError


@pytest.fixture
def four_point_merges():
    """Merge history of single linkage on the four_points fixture."""
    return [
        MergeRecord(step=0, source_cluster_ids=(0, 1), result_cluster_id=4, distance=1.0, result_size=2),
        MergeRecord(step=1, source_cluster_ids=(2, 3), result_cluster_id=5, distance=1.0, result_size=2),
        MergeRecord(step=2, source_cluster_ids=(4, 5), result_cluster_id=6, distance=10.0, result_size=4),
    ]


@pytest.mark.unit
class TestBuildDendrogram:
    """Test suite for dendrogram construction."""

    def test_full_tree(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)

        assert isinstance(tree, Dendrogram)
        assert tree.n_leaves == 4
        assert len(tree.nodes) == 7
        assert tree.root.node_id == 6
        assert tree.root.size == 4
        assert tree.max_height == pytest.approx(10.0)
        assert tree.leaves(6) == [0, 1, 2, 3]

    def test_leaves_are_points(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)
        for point_id in range(4):
            node = tree.nodes[point_id]
            assert node.is_leaf
            assert node.height == 0.0
            assert node.size == 1

    def test_forest(self, four_point_merges):
        """A partial history yields one root per remaining cluster."""
        tree = build_dendrogram(four_point_merges[:2], 4)

        assert tree.root is None
        assert tree.roots == (4, 5)

    def test_cluster_ids_tagged(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4, labels=np.array([0, 0, 1, 1]))

        assert tree.nodes[4].cluster_id == 0
        assert tree.nodes[5].cluster_id == 1
        assert tree.nodes[6].cluster_id is None

    def test_to_dict_nested(self, four_point_merges):
        data = build_dendrogram(four_point_merges, 4).to_dict()

        root = data["roots"][0]
        assert root["node_id"] == 6
        assert [child["node_id"] for child in root["children"]] == [4, 5]
        assert root["children"][0]["children"][0]["is_leaf"] is True


@pytest.mark.unit
class TestLabels:
    """Test suite for label replay and renumbering."""

    def test_labels_from_merges(self, four_point_merges):
        assert labels_from_merges(4, four_point_merges[:2]).tolist() == [0, 0, 1, 1]
        assert labels_from_merges(4, four_point_merges).tolist() == [0, 0, 0, 0]
        assert labels_from_merges(4, []).tolist() == [0, 1, 2, 3]

    def test_renumber_first_appearance(self):
        assert renumber([7, 3, 7, -1, 3, 9]).tolist() == [0, 1, 0, -1, 1, 2]


@pytest.mark.unit
class TestCutDendrogram:
    """Test suite for cutting."""

    def test_cut_by_height(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)

        assert cut_dendrogram(tree, height=5.0).tolist() == [0, 0, 1, 1]

    def test_cut_above_root_is_one_cluster(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)
        assert cut_dendrogram(tree, height=np.inf).tolist() == [0, 0, 0, 0]

    def test_cut_below_first_merge_is_singletons(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)
        assert cut_dendrogram(tree, height=0.0).tolist() == [0, 1, 2, 3]

    def test_cut_by_count(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)

        assert cut_dendrogram(tree, num_clusters=1).tolist() == [0, 0, 0, 0]
        assert cut_dendrogram(tree, num_clusters=3).tolist() == [0, 0, 1, 2]
        assert cut_dendrogram(tree, num_clusters=4).tolist() == [0, 1, 2, 3]

    def test_cut_result_directly(self, blobs):
        """A result carrying a dendrogram can be cut without unpacking it."""
        points, truth = blobs
        result = hierarchical_cluster(points, linkage="average", num_clusters=3)

        labels = cut_dendrogram(result, num_clusters=3)
        assert labels.tolist() == result.labels.tolist()

    def test_requires_exactly_one_target(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)
        with pytest.raises(ParameterValidationError):
            cut_dendrogram(tree)
        with pytest.raises(ParameterValidationError):
            cut_dendrogram(tree, height=1.0, num_clusters=2)

    def test_count_out_of_range(self, four_point_merges):
        tree = build_dendrogram(four_point_merges, 4)
        with pytest.raises(ParameterValidationError):
            cut_dendrogram(tree, num_clusters=0)
        with pytest.raises(ParameterValidationError):
            cut_dendrogram(tree, num_clusters=5)

    def test_count_below_forest_size(self, four_point_merges):
        tree = build_dendrogram(four_point_merges[:2], 4)
        with pytest.raises(ParameterValidationError):
            cut_dendrogram(tree, num_clusters=1)

    def test_divisive_result_has_no_dendrogram(self, four_points):
        result = hierarchical_cluster(four_points, method="divisive", num_clusters=2)
        with pytest.raises(DendrogramUnavailableError):
            cut_dendrogram(result, height=1.0)

    def test_not_a_dendrogram(self):
        with pytest.raises(ParameterValidationError):
            cut_dendrogram([1, 2, 3], height=1.0)


@pytest.mark.unit
class TestAnalysis:
    """Test suite for cophenetic correlation and elbow detection."""

    def test_cophenetic_correlation(self, four_points, four_point_merges):
        from clusterkit.core.distance import DistanceFunction

        tree = build_dendrogram(four_point_merges, 4)
        corr = cophenetic_correlation(tree, DistanceFunction().pairwise(four_points))
        assert corr > 0.99

    def test_cophenetic_degenerate(self, four_point_merges):
        tree = build_dendrogram([], 4)
        assert cophenetic_correlation(tree, np.zeros((4, 4))) == 0.0

    def test_find_optimal_clusters(self):
        # Large jump after the fourth merge of ten points
        distances = [1.0, 1.1, 1.2, 1.3, 8.0, 8.5, 9.0, 9.5, 10.0]
        optimal = find_optimal_clusters(distances, 10)

        assert optimal["elbow_point"] == 3
        assert optimal["optimal_clusters"] == 7
        assert optimal["distances"] == distances

    def test_find_optimal_clusters_short(self):
        assert find_optimal_clusters([1.0], 2)["optimal_clusters"] == 2
        assert find_optimal_clusters([], 1) is None
