"""
IKE session touchpoints for ikelink.

IkeSession is the owner of the reliability machinery: it runs on its own
SessionHandler thread, keeps one Retransmitter for the request in flight
(IKE window size of one) and one LivenessAssister for its lifetime. The DPD
alarm is a wake-up alarm routed through the AlarmDispatcher; the NAT-T
keepalive is an exact alarm armed on the session handler.

Only the retransmission and liveness touchpoints of the IKE state machine
live here; SA negotiation, rekey and delete are handled elsewhere.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Deque, Optional

import nacl.utils

from .alarm import (
    Alarm,
    AlarmAction,
    AlarmConfig,
    AlarmDispatcher,
    build_intent_identifier,
    get_alarm_dispatcher,
)
from .config import SessionParams
from .exceptions import (
    NetworkLostError,
    RetransmissionFailedError,
    SessionClosedError,
    SessionError,
)
from .liveness import (
    LivenessAssister,
    LivenessMetricsSink,
    LivenessRequestType,
    LivenessStatus,
    monotonic_millis,
)
from .metrics import MetricsCollector, UnderlyingNetworkType, get_metrics_collector
from .retransmitter import Retransmitter
from .scheduler import Event, SessionCommand, SessionHandler
from .transport import ExchangeType, IkeMessage, Transport

logger = logging.getLogger(__name__)

SPI_LEN = 8

_session_ids = itertools.count(1)

_UNSUPPORTED_COMMANDS = (
    SessionCommand.DELETE_CHILD,
    SessionCommand.REKEY_CHILD,
    SessionCommand.DELETE_IKE,
    SessionCommand.REKEY_IKE,
)


class SessionCallback:
    """
    Receives session notifications.

    All methods run on the session's callback executor, never on the
    session thread. Override the ones you need.
    """

    def on_opened(self) -> None:
        pass

    def on_liveness_status_changed(self, status: LivenessStatus) -> None:
        pass

    def on_error(self, error: SessionError) -> None:
        """Non-fatal error; the session stays up."""
        pass

    def on_closed(self) -> None:
        pass

    def on_closed_with_error(self, error: SessionError) -> None:
        pass


class RequestRetransmitter(Retransmitter):
    """Retransmits a session request over the session's transport."""

    def __init__(self, session: "IkeSession", message: IkeMessage):
        super().__init__(
            session.handler, message, session.params.retransmission_timeouts_ms
        )
        self._session = session

    def send(self) -> None:
        self._session.transport.send_message(self.message)

    def handle_retransmission_failure(self) -> None:
        self._session.handle_fatal_error(
            RetransmissionFailedError(self.message.message_id, self.retransmit_count)
        )


class IkeSession:
    """
    One IKE session's reliability and liveness state.

    Public methods may be called from any thread; they post work onto the
    session handler.
    """

    def __init__(
        self,
        params: SessionParams,
        transport: Transport,
        callback: SessionCallback,
        executor: Optional[Executor] = None,
        dispatcher: Optional[AlarmDispatcher] = None,
        metrics: Optional[LivenessMetricsSink] = None,
        liveness_clock: Callable[[], int] = monotonic_millis,
    ):
        """
        Initialize session.

        Args:
            params: Validated timing parameters
            transport: Where requests, responses and keepalives are written
            callback: Receives session and liveness notifications
            executor: Runs callbacks; a single worker thread by default
            dispatcher: Alarm dispatcher (process-wide one by default)
            metrics: Liveness metrics sink (process-wide collector by default)
            liveness_clock: Millisecond clock used to time liveness checks
        """
        self.params = params.validate()
        self.transport = transport
        self.session_id = next(_session_ids)
        self.local_spi = int.from_bytes(nacl.utils.random(SPI_LEN), "big")

        self._callback = callback
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"ike-{self.session_id}-cb"
        )
        self._dispatcher = dispatcher or get_alarm_dispatcher()
        self.handler = SessionHandler(f"ike-session-{self.session_id}", self._handle_event)
        self._metrics = metrics if metrics is not None else get_metrics_collector()
        self._assister = LivenessAssister(
            callback,
            self._executor,
            self._metrics,
            liveness_clock,
        )

        self._retransmitter: Optional[RequestRetransmitter] = None
        self._queued_requests: Deque[bytes] = deque()
        self._next_message_id = 0
        self._started = False
        self._closed = False

        self._dpd_alarm: Optional[Alarm] = None
        self._keepalive_alarm: Optional[Alarm] = None

    # ---------------- Public API ----------------

    def start(self) -> None:
        """Start the session thread and arm the maintenance alarms."""
        if self._started:
            return
        self._started = True
        self.handler.start()
        self._dispatcher.register_session(self.session_id, self.handler)

        intent_id = build_intent_identifier(self.session_id, self.local_spi)
        if self.params.dpd_enabled:
            self._dpd_alarm = Alarm.new_exact_and_allow_while_idle_alarm(
                AlarmConfig(
                    AlarmAction.DPD,
                    self.params.dpd_delay_sec * 1000,
                    Event(SessionCommand.LOCAL_REQUEST_DPD, session_id=self.session_id),
                    tag=f"{intent_id}_DPD",
                ),
                self._dispatcher,
            )
            self._dpd_alarm.schedule()
            logger.debug(f"DPD alarm scheduled with delay {self.params.dpd_delay_sec}s")

        # Keepalives only matter while the session thread is alive
        self._keepalive_alarm = Alarm.new_exact_alarm(
            AlarmConfig(
                AlarmAction.KEEPALIVE,
                self.params.natt_keepalive_delay_sec * 1000,
                Event(SessionCommand.SEND_KEEPALIVE, session_id=self.session_id),
                tag=f"{intent_id}_KEEPALIVE",
            ),
            self.handler,
        )
        self._keepalive_alarm.schedule()

        logger.info(f"Session {self.session_id} started (SPI {self.local_spi:016x})")
        self._execute_user_callback(self._callback.on_opened)

    def request_liveness_check(self) -> None:
        """Ask for an on-demand liveness check of the peer."""
        self._post(SessionCommand.REQUEST_LIVENESS_CHECK)

    def send_request(self, payload: bytes) -> None:
        """Queue a request; requests go out one at a time."""
        self._post(SessionCommand.SEND_REQUEST, obj=bytes(payload))

    def receive_message(self, message: IkeMessage) -> None:
        """Hand an inbound message to the session; dropped once closed."""
        if self._closed or not self.handler.post(
            Event(SessionCommand.RECEIVE_MESSAGE, session_id=self.session_id, obj=message)
        ):
            logger.debug(f"Session {self.session_id}: dropping inbound message after close")

    def on_network_lost(self) -> None:
        """Pause retransmission until the network comes back."""
        self._post(SessionCommand.NETWORK_LOST)

    def on_network_restored(
        self, network_type: Optional[UnderlyingNetworkType] = None
    ) -> None:
        """
        Resume a paused retransmission from the start of its schedule.

        Args:
            network_type: Network the session now runs over, recorded with
                later liveness metrics
        """
        self._post(SessionCommand.NETWORK_RESTORED, obj=network_type)

    def close(self) -> None:
        """Tear the session down and wait until it is gone."""
        if not self.handler.run_sync(Event(SessionCommand.KILL_SESSION, session_id=self.session_id)):
            logger.debug(f"Session {self.session_id} already closed")
        self.handler.quit()

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ---------------- Session thread ----------------

    def _post(self, what: SessionCommand, obj=None) -> None:
        if self._closed or not self.handler.post(Event(what, session_id=self.session_id, obj=obj)):
            raise SessionClosedError(self.session_id)

    def _handle_event(self, event: Event) -> None:
        """Process one event on the session thread."""
        what = event.what

        if self._closed:
            logger.debug(f"Session {self.session_id}: ignoring event {what} after close")
            return

        if what == SessionCommand.RETRANSMIT:
            if event.obj is self._retransmitter:
                self._retransmitter.retransmit()
            else:
                logger.debug("Dropping retransmit tick for a finished request")

        elif what == SessionCommand.REQUEST_LIVENESS_CHECK:
            self._handle_liveness_request(LivenessRequestType.ON_DEMAND)

        elif what == SessionCommand.LOCAL_REQUEST_DPD:
            # No inbound traffic for the whole DPD delay
            self._handle_liveness_request(LivenessRequestType.BACKGROUND)

        elif what == SessionCommand.SEND_KEEPALIVE:
            self.transport.send_keepalive()
            if self._keepalive_alarm is not None:
                self._keepalive_alarm.schedule()

        elif what == SessionCommand.SEND_REQUEST:
            self._queued_requests.append(event.obj)
            if self._retransmitter is None:
                self._start_next_request()

        elif what == SessionCommand.RECEIVE_MESSAGE:
            self._handle_message(event.obj)

        elif what == SessionCommand.NETWORK_LOST:
            if self._retransmitter is not None:
                self._retransmitter.suspend_retransmitting()
            self._execute_user_callback(
                self._callback.on_error,
                NetworkLostError(f"Session {self.session_id} lost its network"),
            )

        elif what == SessionCommand.NETWORK_RESTORED:
            if event.obj is not None and isinstance(self._metrics, MetricsCollector):
                self._metrics.set_network_type(event.obj)
            if self._retransmitter is not None:
                self._retransmitter.restart_retransmitting()

        elif what in _UNSUPPORTED_COMMANDS:
            logger.info(
                f"Session {self.session_id}: {SessionCommand(what).name} alarm not handled"
            )

        elif what == SessionCommand.KILL_SESSION:
            self._teardown(None)

        else:
            logger.warning(f"Session {self.session_id}: unknown event {what}")

    def _handle_liveness_request(self, request_type: LivenessRequestType) -> None:
        starting = not self._assister.is_liveness_check_requested()
        self._assister.liveness_check_requested(request_type)
        if starting and self._retransmitter is None:
            # Empty INFORMATIONAL request
            self._start_exchange(IkeMessage(self._allocate_message_id()))
        # Otherwise the response to the request in flight proves liveness

    def _handle_message(self, message: IkeMessage) -> None:
        if not message.is_response:
            if message.is_dpd_request():
                logger.debug(f"Session {self.session_id}: received DPD request")
            self.transport.send_message(message.build_response())
            if self._retransmitter is None:
                self._schedule_dpd()
            return

        retransmitter = self._retransmitter
        if retransmitter is None or retransmitter.message.message_id != message.message_id:
            logger.debug(
                f"Session {self.session_id}: unexpected response {message.message_id}"
            )
            return

        retransmitter.stop_retransmitting()
        self._retransmitter = None
        self._assister.mark_peer_as_alive()
        self._start_next_request()

    def _start_next_request(self) -> None:
        if self._queued_requests:
            payload = self._queued_requests.popleft()
            self._start_exchange(
                IkeMessage(self._allocate_message_id(), ExchangeType.INFORMATIONAL, payload=payload)
            )
        else:
            self._schedule_dpd()

    def _start_exchange(self, message: IkeMessage) -> None:
        if self._dpd_alarm is not None:
            self._dpd_alarm.cancel()
        self._retransmitter = RequestRetransmitter(self, message)
        self._retransmitter.retransmit()

    def _schedule_dpd(self) -> None:
        if self._dpd_alarm is not None:
            self._dpd_alarm.schedule()

    def _allocate_message_id(self) -> int:
        message_id = self._next_message_id
        self._next_message_id = (message_id + 1) & 0xFFFFFFFF
        return message_id

    def handle_fatal_error(self, error: SessionError) -> None:
        """Fail the session: report liveness failure and tear down."""
        logger.error(f"Session {self.session_id} failed: {error}")
        self._assister.mark_peer_as_dead()
        self._teardown(error)

    def _teardown(self, error: Optional[SessionError]) -> None:
        if self._closed:
            return
        self._closed = True

        if self._retransmitter is not None:
            self._retransmitter.stop_retransmitting()
            self._retransmitter = None
        self._queued_requests.clear()
        for alarm in (self._dpd_alarm, self._keepalive_alarm):
            if alarm is not None:
                alarm.cancel()
        self._dispatcher.unregister_session(self.session_id)

        if error is None:
            self._execute_user_callback(self._callback.on_closed)
        else:
            self._execute_user_callback(self._callback.on_closed_with_error, error)

        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self.handler.quit()
        logger.info(f"Session {self.session_id} closed")

    def _execute_user_callback(self, fn: Callable, *args) -> None:
        def _run():
            try:
                fn(*args)
            except Exception as e:
                logger.error(f"Session {self.session_id} callback error: {e}")

        self._executor.submit(_run)
