"""
Error Handling Module

Provides the exception hierarchy for the clustering engine:
- Input validation errors (malformed or oversized datasets)
- Parameter validation errors (raised before any computation starts)
- Configuration errors (settings file problems)
- Clustering errors (unfitted models, missing dendrograms)
- Cooperative cancellation signal

Clustering is deterministic for fixed inputs and options, so nothing in
this package retries.
"""

import functools
import time
from typing import Any, Callable, Optional, TypeVar

import structlog
from pydantic import ValidationError


logger = structlog.get_logger(__name__)


# =============================================================================
# Custom Exception Hierarchy
# =============================================================================


class ClusterKitError(Exception):
    """Base exception for all clustering engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/CLI output."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


# Configuration Errors
class ConfigurationError(ClusterKitError):
    """Error in engine configuration."""
    pass


# Validation Errors
class ClusterValidationError(ClusterKitError):
    """Base class for validation errors surfaced before clustering."""
    pass


class InputValidationError(ClusterValidationError):
    """Empty, malformed, inconsistent or oversized input data."""
    pass


class ParameterValidationError(ClusterValidationError):
    """Out-of-range or unsatisfiable algorithm parameters."""
    pass


# Clustering Errors
class ClusteringError(ClusterKitError):
    """Base class for clustering algorithm errors."""
    pass


class InvalidAlgorithmError(ClusteringError):
    """Unknown or unsupported clustering algorithm."""
    pass


class ModelNotFittedError(ClusteringError):
    """Prediction requested from a model without clusters."""
    pass


class DendrogramUnavailableError(ClusteringError):
    """Dendrogram requested for a result that has none."""
    pass


class ClusteringCancelled(ClusteringError):
    """
    Cooperative abort signal.

    Raised by the progress tracker inside an algorithm loop and converted
    into a CancelledResult at the algorithm boundary; callers never see it.
    """

    def __init__(self, reason: str = "cancelled", steps_completed: int = 0):
        super().__init__(
            f"Clustering cancelled: {reason}",
            details={"reason": reason, "steps_completed": steps_completed},
        )
        self.reason = reason
        self.steps_completed = steps_completed


# =============================================================================
# Utility Functions
# =============================================================================


T = TypeVar("T")


def parameter_errors(exc: ValidationError) -> dict[str, str]:
    """
    Flatten a pydantic ValidationError into a field -> message mapping.

    Args:
        exc: Pydantic validation error

    Returns:
        Dictionary of dotted field paths to error messages
    """
    errors = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "config"
        errors[field] = error.get("msg", "invalid value")
    return errors


def translate_validation_errors(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator converting pydantic validation failures into ParameterValidationError.

    Example:
        @translate_validation_errors
        def build_options(**params):
            return DBSCANOptions(**params)
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            errors = parameter_errors(e)
            logger.warning(
                "parameter_validation_failed",
                function=func.__name__,
                errors=errors,
            )
            summary = "; ".join(f"{field}: {msg}" for field, msg in errors.items())
            raise ParameterValidationError(
                f"Invalid parameters: {summary}",
                details={"errors": errors},
            ) from e

    return wrapper
