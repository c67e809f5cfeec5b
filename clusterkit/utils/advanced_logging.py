"""
Advanced Logging Module

Provides structured logging with:
- structlog configuration (JSON or console rendering)
- Run ID tracking so every log line of one clustering call can be correlated
- Performance metrics (timing, throughput, resident memory)
- Context managers for automatic timing
"""

import contextlib
import functools
import logging
import logging.handlers
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

import psutil
import structlog
from structlog.types import EventDict, Processor


# =============================================================================
# Structured Logging Configuration
# =============================================================================


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    service_name: str = "clusterkit",
) -> None:
    """
    Configure structured logging with structlog.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "console")
        log_file: Optional log file path
        service_name: Service name for log context
    """
    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Add file handler if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=100 * 1024 * 1024,  # 100MB
            backupCount=5,
        )
        file_handler.setLevel(getattr(logging, log_level.upper()))
        logging.root.addHandler(file_handler)

    # Configure structlog processors
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context(service_name),
    ]

    # Add appropriate renderer
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_service_context(service_name: str) -> Processor:
    """
    Add service-level context to all log events.

    Args:
        service_name: Service name

    Returns:
        Processor function
    """

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["service"] = service_name
        run_id = LogContext.get_run_id()
        if run_id and "run_id" not in event_dict:
            event_dict["run_id"] = run_id
        return event_dict

    return processor


# =============================================================================
# Run ID Context
# =============================================================================


class LogContext:
    """
    Run ID tracking.

    Every clustering or evaluation call opens a run context so that
    progress and timing lines of the same call share one identifier.
    """

    _run_id: Optional[str] = None

    @classmethod
    def get_run_id(cls) -> Optional[str]:
        """Get current run ID."""
        return cls._run_id

    @classmethod
    @contextlib.contextmanager
    def run_context(cls, run_id: Optional[str] = None):
        """
        Context manager for a run ID.

        Example:
            with LogContext.run_context() as run_id:
                logger.info("clustering")  # Includes run_id
        """
        previous_id = cls._run_id
        cls._run_id = run_id or uuid.uuid4().hex[:12]
        try:
            yield cls._run_id
        finally:
            cls._run_id = previous_id


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get logger with automatic run ID binding.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Bound logger instance
    """
    logger = structlog.get_logger(name)

    run_id = LogContext.get_run_id()
    if run_id:
        logger = logger.bind(run_id=run_id)

    return logger


# =============================================================================
# Performance Logger
# =============================================================================


class PerformanceLogger:
    """
    Context manager for automatic performance timing and logging.

    Tracks execution time, optional throughput and the change in resident
    memory of the process across the block.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        log_level: str = "info",
        item_count: Optional[int] = None,
        track_memory: bool = True,
        **extra_context: Any,
    ):
        """
        Initialize performance logger.

        Args:
            operation: Operation name for logging
            logger: Logger instance (creates new if None)
            log_level: Log level for output
            item_count: Number of items processed (for throughput)
            track_memory: Record resident memory before/after via psutil
            **extra_context: Additional context fields
        """
        self.operation = operation
        self.logger = logger or get_logger(__name__)
        self.log_level = log_level
        self.item_count = item_count
        self.track_memory = track_memory
        self.extra_context = extra_context
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._start_rss: Optional[int] = None

    def __enter__(self) -> "PerformanceLogger":
        """Start timing."""
        self.start_time = time.time()
        if self.track_memory:
            self._start_rss = _resident_memory()
        self.logger.debug(
            "operation_started",
            operation=self.operation,
            **self.extra_context,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop timing and log results."""
        self.end_time = time.time()
        duration = self.end_time - self.start_time

        log_data = {
            "operation": self.operation,
            "duration_seconds": round(duration, 3),
            **self.extra_context,
        }

        if self.item_count is not None and self.item_count > 0 and duration > 0:
            log_data["item_count"] = self.item_count
            log_data["items_per_second"] = round(self.item_count / duration, 2)

        if self.track_memory and self._start_rss is not None:
            end_rss = _resident_memory()
            log_data["memory_mb"] = round(end_rss / (1024 * 1024), 1)
            log_data["memory_delta_mb"] = round((end_rss - self._start_rss) / (1024 * 1024), 1)

        if exc_type is not None:
            log_data["error"] = str(exc_val)
            log_data["error_type"] = exc_type.__name__
            self.logger.error("operation_failed", **log_data)
        else:
            getattr(self.logger, self.log_level)("operation_completed", **log_data)

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time (even if context not exited)."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.time()
        return end - self.start_time

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        return self.elapsed_time * 1000.0


def timed(
    operation: Optional[str] = None,
    log_level: str = "info",
) -> Callable:
    """
    Decorator for automatic timing of functions.

    Args:
        operation: Operation name (defaults to function name)
        log_level: Log level for output

    Example:
        @timed(operation="evaluate_quality")
        def evaluate(data, labels):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            op_name = operation or func.__name__
            with PerformanceLogger(op_name, log_level=log_level, track_memory=False):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def _resident_memory() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss
