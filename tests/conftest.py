"""
Pytest configuration and shared fixtures for clusterkit tests.

This module provides:
- Shared test fixtures
- Point set generators (tiny hand-made sets and gaussian blobs)
- Settings isolation between tests
"""

import os

import numpy as np
import pytest

# Set test environment variables
os.environ["CLUSTERKIT_ENV"] = "test"
os.environ["CLUSTERKIT_LOG_LEVEL"] = "DEBUG"

from clusterkit.config.settings_loader import ConfigManager  # noqa: E402
from clusterkit.core.quality_metrics import quality_assessment  # noqa: E402


# =============================================================================
# Settings Isolation
# =============================================================================

@pytest.fixture(autouse=True)
def reset_settings():
    """Reload settings and clear the shared report cache around every test."""
    ConfigManager.reset()
    quality_assessment.clear_cache()
    yield
    ConfigManager.reset()
    quality_assessment.clear_cache()


@pytest.fixture
def settings_file(tmp_path):
    """Write a settings YAML and return its path."""

    def _write(content: str):
        path = tmp_path / "settings.yaml"
        path.write_text(content)
        return path

    return _write


# =============================================================================
# Test Data Generators
# =============================================================================

@pytest.fixture
def four_points():
    """Two tight pairs ten units apart."""
    return np.array([[0.0, 0.0], [0.0, 1.0], [10.0, 0.0], [10.0, 1.0]])


@pytest.fixture
def four_point_records():
    """The four_points set as records with a non-numeric field."""
    return [
        {"name": "a", "x": 0.0, "y": 0.0},
        {"name": "b", "x": 0.0, "y": 1.0},
        {"name": "c", "x": 10.0, "y": 0.0},
        {"name": "d", "x": 10.0, "y": 1.0},
    ]


@pytest.fixture
def blobs():
    """
    Generate points with clear cluster structure.

    Creates 3 well-separated 2-D blobs of 20 points each, centred at
    (0, 0), (10, 0) and (0, 10).
    """
    rng = np.random.default_rng(42)
    centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    points = np.vstack([c + rng.normal(scale=0.5, size=(20, 2)) for c in centers])
    labels = np.repeat([0, 1, 2], 20)
    return points, labels


@pytest.fixture
def noisy_blobs(blobs):
    """Blobs plus three isolated outliers appended at the end."""
    points, labels = blobs
    outliers = np.array([[50.0, 50.0], [-40.0, 30.0], [25.0, -45.0]])
    return np.vstack([points, outliers]), np.concatenate([labels, [-1, -1, -1]])


@pytest.fixture
def random_points():
    """Unstructured points for property checks."""
    rng = np.random.default_rng(7)
    return rng.uniform(-5, 5, size=(30, 3))
