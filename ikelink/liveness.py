"""
Liveness checking for ikelink sessions.

This module implements:
- LivenessAssister: folds liveness-check requests from the application
  (on-demand) and from session maintenance (background DPD) into one
  logical check and reports its status to a single observer
- LivenessMetricHelper: measures each completed check and forwards the
  result to a metrics sink
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor
from enum import IntEnum
from typing import Callable, Optional, Protocol

from .config import MAX_ELAPSED_MILLIS

logger = logging.getLogger(__name__)


class LivenessStatus(IntEnum):
    """Statuses reported to the liveness observer."""
    ON_DEMAND_STARTED = 0
    ON_DEMAND_ONGOING = 1
    BACKGROUND_STARTED = 2
    BACKGROUND_ONGOING = 3
    SUCCESS = 4
    FAILURE = 5


class LivenessRequestType(IntEnum):
    """Who asked for a liveness check."""
    ON_DEMAND = 1
    BACKGROUND = 2


class LivenessRequestState(IntEnum):
    """Whether a check is in flight, and for whom."""
    INITIAL = 0
    ON_DEMAND = 1
    BACKGROUND = 2


_STARTED = {
    LivenessRequestType.ON_DEMAND: LivenessStatus.ON_DEMAND_STARTED,
    LivenessRequestType.BACKGROUND: LivenessStatus.BACKGROUND_STARTED,
}

_ONGOING = {
    LivenessRequestState.ON_DEMAND: LivenessStatus.ON_DEMAND_ONGOING,
    LivenessRequestState.BACKGROUND: LivenessStatus.BACKGROUND_ONGOING,
}

_STATE_FOR_TYPE = {
    LivenessRequestType.ON_DEMAND: LivenessRequestState.ON_DEMAND,
    LivenessRequestType.BACKGROUND: LivenessRequestState.BACKGROUND,
}


class LivenessObserver(Protocol):
    def on_liveness_status_changed(self, status: LivenessStatus) -> None: ...


class LivenessMetricsSink(Protocol):
    def on_liveness_check_completed(
        self, elapsed_millis: int, overlap_count: int, success: bool
    ) -> None: ...


def monotonic_millis() -> int:
    """Milliseconds from the monotonic clock."""
    return int(time.monotonic() * 1000)


class LivenessMetricHelper:
    """
    Measures one logical liveness check at a time.

    Started resets the sample, Ongoing counts overlapping requests, and
    Success or Failure emits the sample and clears it.
    """

    def __init__(
        self,
        sink: Optional[LivenessMetricsSink],
        clock: Callable[[], int] = monotonic_millis,
    ):
        self._sink = sink
        self._clock = clock
        self._start_millis: Optional[int] = None
        self._overlap_count = 0

    @property
    def overlap_count(self) -> int:
        return self._overlap_count

    @property
    def start_millis(self) -> Optional[int]:
        return self._start_millis

    def on_status(self, status: LivenessStatus) -> None:
        """Update the current sample for a notified status."""
        if status in (LivenessStatus.ON_DEMAND_STARTED, LivenessStatus.BACKGROUND_STARTED):
            self._overlap_count = 0
            self._start_millis = self._clock()
        elif status in (LivenessStatus.ON_DEMAND_ONGOING, LivenessStatus.BACKGROUND_ONGOING):
            self._overlap_count += 1
        elif status in (LivenessStatus.SUCCESS, LivenessStatus.FAILURE):
            self._complete(status == LivenessStatus.SUCCESS)

    def _complete(self, success: bool) -> None:
        try:
            if self._start_millis is None:
                logger.debug("Liveness check completed without a recorded start")
                return
            elapsed = self._clock() - self._start_millis
            if elapsed < 0 or elapsed > MAX_ELAPSED_MILLIS:
                logger.warning(f"Dropping liveness sample with invalid elapsed time {elapsed}ms")
                return
            if self._sink is not None:
                self._sink.on_liveness_check_completed(elapsed, self._overlap_count, success)
        finally:
            self._start_millis = None
            self._overlap_count = 0


class LivenessAssister:
    """
    Coordinates liveness checks for one session.

    Only one check is in flight at a time. The first requester's type sticks
    until the check completes; later requests are reported as ongoing.

    Must only be called from the session's handler thread. Observer
    callbacks run on ``executor``.
    """

    def __init__(
        self,
        observer: LivenessObserver,
        executor: Executor,
        metrics_sink: Optional[LivenessMetricsSink] = None,
        clock: Callable[[], int] = monotonic_millis,
    ):
        """
        Initialize liveness assister.

        Args:
            observer: Receives every status change
            executor: Runs observer callbacks off the session thread
            metrics_sink: Receives one record per completed check
            clock: Millisecond clock used to time checks
        """
        self._observer = observer
        self._executor = executor
        self._metric_helper = LivenessMetricHelper(metrics_sink, clock)
        self._state = LivenessRequestState.INITIAL

    @property
    def state(self) -> LivenessRequestState:
        return self._state

    def liveness_check_requested(self, request_type: LivenessRequestType) -> None:
        """
        Record a liveness-check request.

        Starts a check if none is in flight; otherwise reports the in-flight
        check as ongoing.
        """
        if self._state == LivenessRequestState.INITIAL:
            self._state = _STATE_FOR_TYPE[request_type]
            self._notify(_STARTED[request_type])
        else:
            self._notify(_ONGOING[self._state])

    def mark_peer_as_alive(self) -> None:
        """Complete the in-flight check successfully, if there is one."""
        if self._state == LivenessRequestState.INITIAL:
            return
        self._state = LivenessRequestState.INITIAL
        self._notify(LivenessStatus.SUCCESS)

    def mark_peer_as_dead(self) -> None:
        """Complete the in-flight check with a failure, if there is one."""
        if self._state == LivenessRequestState.INITIAL:
            return
        self._state = LivenessRequestState.INITIAL
        self._notify(LivenessStatus.FAILURE)

    def is_liveness_check_requested(self) -> bool:
        return self._state != LivenessRequestState.INITIAL

    def _notify(self, status: LivenessStatus) -> None:
        logger.debug(f"Liveness status: {status.name}")
        self._executor.submit(self._deliver, status)

    def _deliver(self, status: LivenessStatus) -> None:
        try:
            self._observer.on_liveness_status_changed(status)
        except Exception as e:
            logger.error(f"Liveness observer error: {e}")
        try:
            self._metric_helper.on_status(status)
        except Exception as e:
            logger.error(f"Liveness metrics error: {e}")
