"""
Unit tests for the distance module.

Tests DistanceFunction including:
- Each supported metric on known vectors
- Agreement between pairwise matrices and single distances
- Feature weighting
- Rejection of unknown metrics
"""

import numpy as np
import pytest

from clusterkit.core.distance import DistanceFunction, DistanceMetric, resolve_metric
from clusterkit.utils.error_handling import ParameterValidationError


@pytest.mark.unit
class TestDistanceFunction:
    """Test suite for DistanceFunction."""

    @pytest.mark.parametrize(
        "metric,expected",
        [
            ("euclidean", 5.0),
            ("manhattan", 7.0),
            ("chebyshev", 4.0),
        ],
    )
    def test_known_distances(self, metric, expected):
        """Test the 3-4-5 triangle under each Minkowski-style metric."""
        dist = DistanceFunction(metric)
        assert dist.distance([0, 0], [3, 4]) == pytest.approx(expected)

    def test_cosine_distance(self):
        """Orthogonal vectors are at cosine distance 1, opposite at 2."""
        dist = DistanceFunction("cosine")
        assert dist.distance([1, 0], [0, 1]) == pytest.approx(1.0)
        assert dist.distance([1, 0], [-1, 0]) == pytest.approx(2.0)
        assert dist.distance([2, 2], [1, 1]) == pytest.approx(0.0, abs=1e-12)

    def test_cosine_zero_vector(self):
        """A zero vector does not produce NaN."""
        dist = DistanceFunction("cosine")
        assert np.isfinite(dist.distance([0, 0], [1, 1]))

    @pytest.mark.parametrize("metric", [m.value for m in DistanceMetric])
    def test_pairwise_matches_single_distances(self, metric, random_points):
        """Pairwise matrix agrees with point-by-point distances."""
        dist = DistanceFunction(metric)
        D = dist.pairwise(random_points)

        assert D.shape == (30, 30)
        assert np.allclose(D, D.T)
        assert np.all(np.diag(D) == 0.0)
        for i in (0, 7, 29):
            assert np.allclose(D[i], dist.to_point(random_points, random_points[i]), atol=1e-6)

    def test_pairwise_between_sets(self, four_points):
        """Test X-to-Y matrix shape and values."""
        dist = DistanceFunction("euclidean")
        D = dist.pairwise(four_points, four_points[:2])
        assert D.shape == (4, 2)
        assert D[2, 0] == pytest.approx(10.0)

    def test_symmetry_and_identity(self):
        """d(a, b) == d(b, a) and d(a, a) == 0."""
        a, b = [1.5, -2.0, 3.0], [0.0, 4.0, -1.0]
        for metric in DistanceMetric:
            dist = DistanceFunction(metric)
            assert dist.distance(a, b) == pytest.approx(dist.distance(b, a))
            assert dist.distance(a, a) == pytest.approx(0.0, abs=1e-12)


@pytest.mark.unit
class TestFeatureWeights:
    """Test suite for weighted distances."""

    def test_zero_weight_ignores_feature(self):
        """A zero-weighted feature does not contribute."""
        dist = DistanceFunction("euclidean", feature_weights=[1.0, 0.0])
        assert dist.distance([0, 0], [3, 100]) == pytest.approx(3.0)

    def test_euclidean_weights_scale_squares(self):
        """Weighted euclidean is sqrt(sum w * diff^2)."""
        dist = DistanceFunction("euclidean", feature_weights=[4.0, 1.0])
        assert dist.distance([0, 0], [1, 1]) == pytest.approx(np.sqrt(5.0))

    def test_manhattan_weights_scale_linearly(self):
        """Weighted manhattan is sum w * |diff|."""
        dist = DistanceFunction("manhattan", feature_weights=[2.0, 3.0])
        assert dist.distance([0, 0], [1, 1]) == pytest.approx(5.0)

    def test_weighted_pairwise_matches_distance(self, random_points):
        """Pairwise and single distances agree under weights."""
        dist = DistanceFunction("chebyshev", feature_weights=[1.0, 0.5, 2.0])
        D = dist.pairwise(random_points)
        assert D[3, 11] == pytest.approx(dist.distance(random_points[3], random_points[11]))

    def test_negative_weight_rejected(self):
        """Test that negative weights raise."""
        with pytest.raises(ParameterValidationError):
            DistanceFunction("euclidean", feature_weights=[1.0, -1.0])

    def test_weight_length_mismatch(self):
        """Test that a wrong weight count raises on use."""
        dist = DistanceFunction("euclidean", feature_weights=[1.0, 1.0, 1.0])
        with pytest.raises(ParameterValidationError):
            dist.distance([0, 0], [1, 1])


@pytest.mark.unit
class TestResolveMetric:
    """Test suite for metric name resolution."""

    def test_case_insensitive(self):
        assert resolve_metric("Manhattan") is DistanceMetric.MANHATTAN

    def test_enum_passthrough(self):
        assert resolve_metric(DistanceMetric.COSINE) is DistanceMetric.COSINE

    def test_unknown_metric(self):
        """Test that an unknown metric raises with the supported list."""
        with pytest.raises(ParameterValidationError) as exc_info:
            resolve_metric("minkowski")
        assert "euclidean" in exc_info.value.details["supported"]
