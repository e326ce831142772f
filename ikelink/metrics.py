"""
Liveness metrics collection for ikelink.

Provides a thread-safe sink for completed liveness checks.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from threading import RLock
from typing import Deque, Dict, List, Optional

HISTORY_SIZE = 256  # Completed checks kept for inspection


class SessionCaller(IntEnum):
    """Kind of client that owns the session."""
    UNSPECIFIED = 0
    IWLAN = 1
    VPN = 2
    VCN = 3


class UnderlyingNetworkType(IntEnum):
    """Network the session runs over."""
    UNSPECIFIED = 0
    WIFI = 1
    CELLULAR = 2


@dataclass(frozen=True)
class LivenessCheckRecord:
    """One completed liveness check."""
    elapsed_millis: int
    overlap_count: int
    success: bool
    caller: SessionCaller = SessionCaller.UNSPECIFIED
    network_type: UnderlyingNetworkType = UnderlyingNetworkType.UNSPECIFIED
    recorded_at: float = 0.0


class MetricsCollector:
    """
    Thread-safe liveness metrics sink.

    Keeps running totals and a bounded history of completed checks.
    """

    def __init__(
        self,
        caller: SessionCaller = SessionCaller.UNSPECIFIED,
        network_type: UnderlyingNetworkType = UnderlyingNetworkType.UNSPECIFIED,
        history_size: int = HISTORY_SIZE,
    ):
        self._lock = RLock()
        self._caller = caller
        self._network_type = network_type
        self._history: Deque[LivenessCheckRecord] = deque(maxlen=history_size)
        self._start_time = time.time()
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "checks_completed": 0,
            "checks_succeeded": 0,
            "checks_failed": 0,
            "overlapping_requests": 0,
            "total_elapsed_millis": 0,
            "max_elapsed_millis": 0,
        }

    def set_network_type(self, network_type: UnderlyingNetworkType) -> None:
        with self._lock:
            self._network_type = network_type

    def on_liveness_check_completed(
        self, elapsed_millis: int, overlap_count: int, success: bool
    ) -> None:
        """
        Record a completed liveness check.

        Args:
            elapsed_millis: Time from Started to Success/Failure
            overlap_count: Requests that arrived while the check was in flight
            success: Whether the peer answered
        """
        with self._lock:
            self._history.append(
                LivenessCheckRecord(
                    elapsed_millis=elapsed_millis,
                    overlap_count=overlap_count,
                    success=success,
                    caller=self._caller,
                    network_type=self._network_type,
                    recorded_at=time.time(),
                )
            )
            self._stats["checks_completed"] += 1
            self._stats["checks_succeeded" if success else "checks_failed"] += 1
            self._stats["overlapping_requests"] += overlap_count
            self._stats["total_elapsed_millis"] += elapsed_millis
            self._stats["max_elapsed_millis"] = max(
                self._stats["max_elapsed_millis"], elapsed_millis
            )

    def get_records(self) -> List[LivenessCheckRecord]:
        """Get a copy of the recorded checks, oldest first."""
        with self._lock:
            return list(self._history)

    def get_stats(self) -> Dict[str, int]:
        """Get a copy of the running totals."""
        with self._lock:
            completed = self._stats["checks_completed"]
            return {
                "uptime_seconds": int(time.time() - self._start_time),
                **self._stats,
                "avg_elapsed_millis": (
                    self._stats["total_elapsed_millis"] // completed if completed else 0
                ),
            }

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self._history.clear()
            self._stats = self._empty_stats()
            self._start_time = time.time()

    def format_summary(self) -> str:
        """Format statistics as a human-readable summary."""
        stats = self.get_stats()
        with self._lock:
            caller, network_type = self._caller, self._network_type
        return "\n".join([
            f"[LIVENESS] Checks: completed={stats['checks_completed']} "
            f"ok={stats['checks_succeeded']} failed={stats['checks_failed']}",
            f"  Overlapping requests: {stats['overlapping_requests']}",
            f"  Elapsed: avg={stats['avg_elapsed_millis']}ms max={stats['max_elapsed_millis']}ms",
            f"  Caller: {caller.name} network={network_type.name}",
        ])


# Global instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector (lazily initialized)."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
