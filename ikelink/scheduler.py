"""
Per-session event handling for ikelink.

Each session owns one SessionHandler: a dedicated worker thread that drains
an event queue and a timer heap, so every session-side object is only ever
touched from one thread. The handler is also the scheduling facility used by
retransmitters and exact alarms:

- send_delayed(token, event, delay_ms) arms a timer tagged with ``token``
- cancel(token) drops every pending timer tagged with that exact object
- run_sync(event) hands an event over and blocks until it was processed
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Deque, List, Optional, Tuple

from .config import DISPATCH_TIMEOUT, HANDLER_JOIN_TIMEOUT
from .exceptions import DispatchTimeoutError

logger = logging.getLogger(__name__)


class SessionCommand(IntEnum):
    """Commands understood by a session's event callback."""
    RECEIVE_MESSAGE = 1
    RETRANSMIT = 2
    REQUEST_LIVENESS_CHECK = 3
    LOCAL_REQUEST_DPD = 4
    SEND_KEEPALIVE = 5
    SEND_REQUEST = 6
    NETWORK_LOST = 7
    NETWORK_RESTORED = 8
    DELETE_CHILD = 9
    REKEY_CHILD = 10
    DELETE_IKE = 11
    REKEY_IKE = 12
    KILL_SESSION = 13


@dataclass(frozen=True)
class Event:
    """A unit of work delivered to a session handler."""
    what: int
    session_id: int = -1
    arg: int = 0
    obj: Any = None


@dataclass
class _Timer:
    due: float
    seq: int
    token: Any
    event: Event

    def __lt__(self, other: "_Timer") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class SessionHandler:
    """
    Serialized event loop for one session.

    Events posted from any thread are handed to ``callback`` on the worker
    thread in FIFO order; due timers are moved onto the queue in deadline
    order.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[Event], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize session handler.

        Args:
            name: Thread name, used in logs
            callback: Called on the worker thread for every event
            clock: Monotonic clock in seconds
        """
        self.name = name
        self._callback = callback
        self._clock = clock
        self._cond = threading.Condition()
        # (event, completion flag for run_sync, timer token)
        self._queue: Deque[Tuple[Event, Optional[threading.Event], Any]] = deque()
        self._timers: List[_Timer] = []
        self._seq = itertools.count()

        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the worker thread."""
        with self._cond:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def quit(self) -> None:
        """Stop the worker thread, dropping pending events and timers."""
        with self._cond:
            self._running = False
            self._timers.clear()
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        for _, done, _ in pending:
            if done is not None:
                done.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=HANDLER_JOIN_TIMEOUT)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._running

    def is_handler_thread(self) -> bool:
        """True when called from this handler's worker thread."""
        return self._thread is threading.current_thread()

    def post(self, event: Event) -> bool:
        """
        Queue an event for processing.

        Returns:
            False if the handler is not running and the event was dropped
        """
        with self._cond:
            if not self._running:
                logger.debug(f"{self.name}: dropping event {event.what} (not running)")
                return False
            self._queue.append((event, None, None))
            self._cond.notify()
            return True

    def send_delayed(self, token: Any, event: Event, delay_ms: int) -> None:
        """
        Deliver ``event`` after ``delay_ms`` milliseconds.

        Args:
            token: Object identifying the owner of this timer for cancel()
            event: Event to deliver
            delay_ms: Delay in milliseconds
        """
        with self._cond:
            if not self._running:
                return
            due = self._clock() + max(0, delay_ms) / 1000.0
            heapq.heappush(self._timers, _Timer(due, next(self._seq), token, event))
            self._cond.notify()

    def cancel(self, token: Any) -> None:
        """Cancel all pending timers armed with this exact token, fired or not."""
        with self._cond:
            kept = [t for t in self._timers if t.token is not token]
            if len(kept) != len(self._timers):
                heapq.heapify(kept)
                self._timers = kept
                self._cond.notify()
            # Timers already moved onto the queue but not yet processed
            self._queue = deque(item for item in self._queue if item[2] is not token)

    def has_pending(self, token: Any) -> bool:
        """True if a timer armed with this token is still pending."""
        with self._cond:
            return any(t.token is token for t in self._timers)

    def run_sync(self, event: Event, timeout: Optional[float] = DISPATCH_TIMEOUT) -> bool:
        """
        Hand ``event`` to the worker and wait until it has been processed.

        Called from the worker thread itself, the event is processed inline.

        Returns:
            False if the handler is not running and the event was dropped

        Raises:
            DispatchTimeoutError: if processing did not finish within ``timeout``
        """
        if self.is_handler_thread():
            self._dispatch(event)
            return True

        done = threading.Event()
        with self._cond:
            if not self._running:
                return False
            self._queue.append((event, done, None))
            self._cond.notify()

        if not done.wait(timeout):
            raise DispatchTimeoutError(self.name, timeout)
        return True

    def _dispatch(self, event: Event) -> None:
        try:
            self._callback(event)
        except Exception as e:
            logger.error(f"{self.name}: error handling event {event.what}: {e}")

    def _next_item(self) -> Optional[Tuple[Event, Optional[threading.Event], Any]]:
        """Block until an event is ready. Returns None once stopped."""
        with self._cond:
            while self._running:
                now = self._clock()
                while self._timers and self._timers[0].due <= now:
                    timer = heapq.heappop(self._timers)
                    self._queue.append((timer.event, None, timer.token))
                if self._queue:
                    return self._queue.popleft()
                wait = self._timers[0].due - now if self._timers else None
                self._cond.wait(wait)
            return None

    def _loop(self) -> None:
        """Worker loop."""
        while True:
            item = self._next_item()
            if item is None:
                return
            event, done, _ = item
            try:
                self._dispatch(event)
            finally:
                if done is not None:
                    done.set()
