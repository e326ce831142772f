"""
Alarm delivery for ikelink sessions.

Wake-up alarms fire on a timer thread that knows nothing about the session
that armed them; the only link left is the session id carried inside the
event. AlarmDispatcher keeps the session id -> handler registry and hands
each fired event to the right handler, blocking until it was processed.

Exact alarms skip the dispatcher and are armed directly on the session
handler.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Union

from .exceptions import DispatchError
from .scheduler import Event, SessionHandler

logger = logging.getLogger(__name__)


class AlarmAction(str, Enum):
    """Alarm actions routed to sessions."""
    DELETE_CHILD = "IkeAlarmReceiver.ACTION_DELETE_CHILD"
    REKEY_CHILD = "IkeAlarmReceiver.ACTION_REKEY_CHILD"
    DELETE_IKE = "IkeAlarmReceiver.ACTION_DELETE_IKE"
    REKEY_IKE = "IkeAlarmReceiver.ACTION_REKEY_IKE"
    DPD = "IkeAlarmReceiver.ACTION_DPD"
    KEEPALIVE = "IkeAlarmReceiver.ACTION_KEEPALIVE"


def build_intent_identifier(session_id: int, spi: int) -> str:
    """Name an alarm after the session and SA it belongs to."""
    return f"IKE_SESSION_{session_id}_SPI_{spi:016x}"


class EventTarget(Protocol):
    def run_sync(self, event: Event) -> bool: ...


class AlarmDispatcher:
    """
    Routes fired alarms back to the owning session.

    Registration happens on session threads, lookups on alarm threads;
    the registry is guarded by a lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._handlers: Dict[int, EventTarget] = {}

    def register_session(self, session_id: int, handler: EventTarget) -> None:
        """Associate a session id with its handler, replacing any previous one."""
        with self._lock:
            self._handlers[session_id] = handler

    def unregister_session(self, session_id: int) -> None:
        """Forget a session; later alarms for it are dropped."""
        with self._lock:
            self._handlers.pop(session_id, None)

    def get_handler(self, session_id: int) -> Optional[EventTarget]:
        with self._lock:
            return self._handlers.get(session_id)

    def __contains__(self, session_id: int) -> bool:
        with self._lock:
            return session_id in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def on_alarm_fired(self, action: Union[AlarmAction, str], event: Event) -> None:
        """
        Deliver a fired alarm to its session.

        Blocks until the session has processed the event.

        Args:
            action: Alarm action; unknown actions are logged and ignored
            event: Event carrying the target session id
        """
        try:
            action = AlarmAction(action)
        except ValueError:
            logger.warning(f"Ignoring alarm with unknown action {action!r}")
            return

        handler = self.get_handler(event.session_id)
        if handler is None:
            # Session already torn down
            logger.debug(f"No session {event.session_id} for alarm {action.name}")
            return

        try:
            handler.run_sync(event)
        except DispatchError as e:
            logger.error(f"Alarm {action.name} for session {event.session_id} not delivered: {e}")


# Global instance
_alarm_dispatcher: Optional[AlarmDispatcher] = None


def get_alarm_dispatcher() -> AlarmDispatcher:
    """Get global alarm dispatcher (lazily initialized)."""
    global _alarm_dispatcher
    if _alarm_dispatcher is None:
        _alarm_dispatcher = AlarmDispatcher()
    return _alarm_dispatcher


@dataclass(frozen=True)
class AlarmConfig:
    """What an alarm delivers, and when."""
    action: AlarmAction
    delay_ms: int
    event: Event
    tag: str = ""


class Alarm(ABC):
    """A one-shot alarm that can be scheduled and cancelled."""

    def __init__(self, config: AlarmConfig):
        self.config = config

    @staticmethod
    def new_exact_and_allow_while_idle_alarm(
        config: AlarmConfig, dispatcher: Optional[AlarmDispatcher] = None
    ) -> "Alarm":
        """Alarm that fires on its own thread and goes through the dispatcher."""
        return WakeupAlarm(config, dispatcher or get_alarm_dispatcher())

    @staticmethod
    def new_exact_alarm(config: AlarmConfig, handler: SessionHandler) -> "Alarm":
        """Alarm armed directly on the session handler."""
        return ExactAlarm(config, handler)

    @abstractmethod
    def schedule(self) -> None:
        """Arm the alarm, replacing a previous arming of the same alarm."""

    @abstractmethod
    def cancel(self) -> None:
        """Disarm the alarm if it has not fired."""


class WakeupAlarm(Alarm):
    """Fires on a timer thread and is routed by the AlarmDispatcher."""

    def __init__(self, config: AlarmConfig, dispatcher: AlarmDispatcher):
        super().__init__(config)
        self._dispatcher = dispatcher
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.config.delay_ms / 1000.0, self._fire)
            self._timer.name = self.config.tag or self.config.action.name
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self) -> None:
        with self._lock:
            if self._timer is threading.current_thread():
                self._timer = None
        self._dispatcher.on_alarm_fired(self.config.action, self.config.event)


class ExactAlarm(Alarm):
    """Delivered as a delayed event on the session handler."""

    def __init__(self, config: AlarmConfig, handler: SessionHandler):
        super().__init__(config)
        self._handler = handler

    def schedule(self) -> None:
        self._handler.cancel(self)
        self._handler.send_delayed(self, self.config.event, self.config.delay_ms)

    def cancel(self) -> None:
        self._handler.cancel(self)
