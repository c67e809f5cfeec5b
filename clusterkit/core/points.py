"""
Point ingestion.

Turns caller data (a 2-D numeric array, a sequence of numeric rows, or a
sequence of mapping records) into an immutable PointSet: a read-only
feature matrix plus the ordered feature names and a reference to the
original records.
"""

import logging
import math
import numbers
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, List, Optional

import numpy as np

from clusterkit.utils.error_handling import InputValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointSet:
    """Immutable snapshot of the points being clustered."""

    features: np.ndarray
    feature_names: List[str]
    records: Optional[Sequence] = field(default=None, repr=False, compare=False)

    @property
    def n_points(self) -> int:
        return int(self.features.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.features.shape[1])

    def __len__(self) -> int:
        return self.n_points

    def record(self, point_id: int) -> Any:
        """Original record for a point id, or its feature row when none was given."""
        if self.records is None:
            return self.features[point_id]
        return self.records[point_id]


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return not math.isnan(value)


def _from_records(records: Sequence) -> PointSet:
    feature_names: List[str] = []
    for record in records:
        if not isinstance(record, Mapping):
            break
        feature_names = [key for key, value in record.items() if _is_number(value)]
        if feature_names:
            break

    if not feature_names:
        raise InputValidationError(
            "Records contain no numeric features",
            details={"n_records": len(records)},
        )

    matrix = np.empty((len(records), len(feature_names)), dtype=float)
    for i, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise InputValidationError(
                f"Record {i} is not a mapping",
                details={"index": i},
            )
        for j, name in enumerate(feature_names):
            value = record.get(name)
            if not _is_number(value) or not math.isfinite(value):
                raise InputValidationError(
                    f"Record {i} has no finite numeric value for feature '{name}'",
                    details={"index": i, "feature": name},
                )
            matrix[i, j] = float(value)

    return PointSet(features=matrix, feature_names=feature_names, records=records)


def _from_rows(data: Any) -> PointSet:
    try:
        matrix = np.array(data, dtype=float)
    except (TypeError, ValueError) as e:
        raise InputValidationError(
            f"Data is not a uniform numeric matrix: {e}",
        ) from e

    if matrix.ndim != 2:
        raise InputValidationError(
            f"Expected a 2-D matrix of points, got {matrix.ndim} dimension(s)",
            details={"shape": list(matrix.shape)},
        )
    if matrix.shape[1] == 0:
        raise InputValidationError("Points have no features")
    if not np.all(np.isfinite(matrix)):
        bad = int(np.argwhere(~np.isfinite(matrix))[0][0])
        raise InputValidationError(
            f"Point {bad} contains non-finite values",
            details={"index": bad},
        )

    names = [f"feature_{j}" for j in range(matrix.shape[1])]
    return PointSet(features=matrix, feature_names=names, records=None)


def prepare_points(data: Any, max_points: Optional[int] = None) -> PointSet:
    """
    Validate caller data and build a PointSet.

    Args:
        data: PointSet, 2-D array, sequence of numeric rows, or sequence of
            mapping records
        max_points: Optional upper bound on the number of points

    Returns:
        PointSet with a read-only feature matrix

    Raises:
        InputValidationError: If the data is empty, ragged, non-numeric,
            non-finite or larger than max_points
    """
    if isinstance(data, PointSet):
        point_set = data
    else:
        if data is None or len(data) == 0:
            raise InputValidationError("No points supplied")

        if isinstance(data, np.ndarray):
            point_set = _from_rows(data)
        elif isinstance(data[0], Mapping):
            point_set = _from_records(data)
        else:
            point_set = _from_rows(data)

    if max_points is not None and point_set.n_points > max_points:
        raise InputValidationError(
            f"Dataset has {point_set.n_points} points, limit is {max_points}",
            details={"n_points": point_set.n_points, "max_points": max_points},
        )

    if point_set.features.flags.writeable:
        point_set.features.setflags(write=False)

    logger.debug(
        f"Prepared {point_set.n_points} points with {point_set.n_features} features"
    )
    return point_set
