"""
Request retransmission for ikelink sessions.

A Retransmitter owns one outstanding request and resends it on a fixed
backoff schedule until the owner stops it. Running off the end of the
schedule is reported through handle_retransmission_failure(); the owner
decides what to do about it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Optional, Protocol, Sequence, Tuple

from .scheduler import Event, SessionCommand

logger = logging.getLogger(__name__)


class RetransmitterState(IntEnum):
    """Lifecycle of a Retransmitter."""
    ALLOWED = 1
    SUSPENDED = 2
    FINISHED = 3  # Terminal


class Scheduler(Protocol):
    """Timer facility shared by every Retransmitter of a session."""

    def send_delayed(self, token: Any, event: Event, delay_ms: int) -> None: ...

    def cancel(self, token: Any) -> None: ...


class Retransmitter(ABC):
    """
    Sends a request and retransmits it until told to stop.

    Subclasses provide send() (the transport write) and
    handle_retransmission_failure() (what the owner does once the schedule
    is exhausted).

    Timers are armed with the Retransmitter itself as token, so stopping
    or suspending one instance never touches another instance's ticks.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        message: Any,
        retransmission_timeouts_ms: Sequence[int],
    ):
        """
        Initialize retransmitter.

        Args:
            scheduler: Timer facility delivering RETRANSMIT events back to the session
            message: Immutable request to (re)send; None disables retransmission
            retransmission_timeouts_ms: Delay before each retry, in milliseconds
        """
        self._scheduler = scheduler
        self._message = message
        self._timeouts: Tuple[int, ...] = tuple(retransmission_timeouts_ms)
        self._state = RetransmitterState.ALLOWED
        self._retransmit_count = 0

    @property
    def message(self) -> Optional[Any]:
        return self._message

    def get_message(self) -> Optional[Any]:
        """Return the tracked request."""
        return self._message

    @property
    def state(self) -> RetransmitterState:
        return self._state

    @property
    def retransmit_count(self) -> int:
        """Number of transmissions since the last (re)start."""
        return self._retransmit_count

    @property
    def retransmission_timeouts_ms(self) -> Tuple[int, ...]:
        return self._timeouts

    def retransmit(self) -> None:
        """
        Send the request once and arm the next retransmission timer.

        Does nothing unless the state is ALLOWED. When every timeout of the
        schedule has been used, reports failure instead of sending.
        """
        if self._message is None or self._state != RetransmitterState.ALLOWED:
            return

        if self._retransmit_count >= len(self._timeouts):
            logger.warning(
                f"Retransmission schedule exhausted after {self._retransmit_count} attempts"
            )
            self.handle_retransmission_failure()
            return

        try:
            self.send()
        except Exception as e:
            # A failed write counts as a lost attempt
            logger.warning(f"Send failed on attempt {self._retransmit_count + 1}: {e}")

        timeout = self._timeouts[self._retransmit_count]
        self._scheduler.send_delayed(
            self, Event(SessionCommand.RETRANSMIT, obj=self), timeout
        )
        self._retransmit_count += 1

    def stop_retransmitting(self) -> None:
        """Cancel pending retransmissions for good."""
        self._scheduler.cancel(self)
        self._state = RetransmitterState.FINISHED

    def suspend_retransmitting(self) -> None:
        """Pause retransmission; restart_retransmitting() resumes it."""
        if self._state == RetransmitterState.ALLOWED:
            self._scheduler.cancel(self)
            self._state = RetransmitterState.SUSPENDED

    def restart_retransmitting(self) -> None:
        """Resume a suspended retransmitter from the start of its schedule."""
        if self._state == RetransmitterState.SUSPENDED:
            self._retransmit_count = 0
            self._state = RetransmitterState.ALLOWED
            self.retransmit()

    @abstractmethod
    def send(self) -> None:
        """Write the tracked request to the transport."""

    @abstractmethod
    def handle_retransmission_failure(self) -> None:
        """Called when the schedule is exhausted without an acknowledgment."""
