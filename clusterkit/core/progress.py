"""
Progress reporting and cooperative cancellation.

Algorithms call ProgressTracker.tick() once per outer-loop iteration (each
merge, split, point scan or bootstrap round). The tracker checks the
cancellation token on every tick and reports progress every `interval`
ticks, both to an optional callback and to the log.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from clusterkit.utils.error_handling import ClusteringCancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot handed to progress callbacks."""

    stage: str
    step: int
    total: int

    @property
    def progress(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.step / self.total)


ProgressCallback = Callable[[ProgressEvent], None]


class CancellationToken:
    """
    Thread-safe cancellation flag with an optional wall-clock deadline.

    Example:
        token = CancellationToken(time_budget_seconds=5.0)
        result = hierarchical_cluster(points, cancellation_token=token)
        if result.is_cancelled:
            ...
    """

    def __init__(self, time_budget_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._reason = "cancelled"
        self.deadline: Optional[float] = None
        if time_budget_seconds is not None:
            self.deadline = time.monotonic() + time_budget_seconds

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        self._reason = reason
        self._event.set()

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("time_budget_exceeded")
            return True
        return False


class ProgressTracker:
    """Counts steps of one algorithm stage."""

    def __init__(
        self,
        stage: str,
        total: int,
        interval: int = 100,
        callback: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.stage = stage
        self.total = total
        self.interval = max(1, interval)
        self.callback = callback
        self.token = token
        self.step = 0

    def check(self) -> None:
        """
        Raise ClusteringCancelled if the token has been cancelled.

        Raises:
            ClusteringCancelled: When cancellation was requested or the
                time budget ran out
        """
        if self.token is not None and self.token.is_cancelled:
            logger.info(
                f"{self.stage} cancelled after {self.step}/{self.total} steps "
                f"({self.token.reason})"
            )
            raise ClusteringCancelled(self.token.reason, steps_completed=self.step)

    def tick(self, n: int = 1) -> None:
        """Advance by n steps, report if an interval boundary was crossed."""
        self.check()
        previous = self.step
        self.step += n
        if self.step // self.interval > previous // self.interval:
            self._report()

    def _report(self) -> None:
        event = ProgressEvent(stage=self.stage, step=self.step, total=self.total)
        logger.debug(
            f"{self.stage}: {self.step}/{self.total} ({event.progress * 100:.1f}%)"
        )
        if self.callback is not None:
            self.callback(event)

    def finish(self) -> None:
        """Emit a final event if the last step did not fall on an interval."""
        if self.step % self.interval != 0:
            self._report()


class CancelledResult:
    """Outcome of a run aborted through its cancellation token."""

    is_cancelled = True

    def __init__(self, algorithm: str, reason: str, steps_completed: int):
        self.algorithm = algorithm
        self.reason = reason
        self.steps_completed = steps_completed

    def __repr__(self) -> str:
        return (
            f"CancelledResult(algorithm={self.algorithm!r}, reason={self.reason!r}, "
            f"steps_completed={self.steps_completed})"
        )

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "cancelled": True,
            "reason": self.reason,
            "steps_completed": self.steps_completed,
        }
