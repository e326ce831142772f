"""
Message and transport types for ikelink sessions.

Encoding of IKE messages is out of scope; a transport receives IkeMessage
objects and is responsible for putting them on the wire. SimulatedPeer is
an in-memory responder with configurable latency and loss, used by the
simulator and the tests.
"""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ExchangeType(IntEnum):
    """IKEv2 exchange types (RFC 7296)."""
    IKE_SA_INIT = 34
    IKE_AUTH = 35
    CREATE_CHILD_SA = 36
    INFORMATIONAL = 37


@dataclass(frozen=True)
class IkeMessage:
    """An IKE request or response, as far as retransmission cares."""
    message_id: int
    exchange_type: ExchangeType = ExchangeType.INFORMATIONAL
    is_response: bool = False
    payload: bytes = b""

    def is_dpd_request(self) -> bool:
        """An empty INFORMATIONAL request is a liveness probe."""
        return (
            not self.is_response
            and self.exchange_type == ExchangeType.INFORMATIONAL
            and not self.payload
        )

    def build_response(self, payload: bytes = b"") -> "IkeMessage":
        return IkeMessage(
            message_id=self.message_id,
            exchange_type=self.exchange_type,
            is_response=True,
            payload=payload,
        )


class Transport(ABC):
    """Where a session writes its messages."""

    @abstractmethod
    def send_message(self, message: IkeMessage) -> None:
        """Write one message to the peer."""

    @abstractmethod
    def send_keepalive(self) -> None:
        """Send a NAT-T keepalive."""


@dataclass
class PeerStats:
    requests_received: int = 0
    requests_dropped: int = 0
    responses_sent: int = 0
    keepalives_received: int = 0
    sent: List[IkeMessage] = field(default_factory=list)


class SimulatedPeer(Transport):
    """
    In-memory responder.

    Features:
    - Configurable latency
    - Configurable packet loss
    - Can be taken offline to simulate a dead peer
    """

    def __init__(
        self,
        latency_ms: float = 5.0,
        loss_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        self.latency_ms = latency_ms
        self.loss_rate = loss_rate
        self.online = True
        self.stats = PeerStats()
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self._deliver: Optional[Callable[[IkeMessage], None]] = None

    def connect(self, deliver: Callable[[IkeMessage], None]) -> None:
        """Set where responses are delivered (usually IkeSession.receive_message)."""
        self._deliver = deliver

    def send_message(self, message: IkeMessage) -> None:
        with self._lock:
            self.stats.sent.append(message)
            if message.is_response:
                return
            self.stats.requests_received += 1
            if not self.online or self._rng.random() < self.loss_rate:
                self.stats.requests_dropped += 1
                logger.debug(f"Peer dropped request {message.message_id}")
                return
            self.stats.responses_sent += 1

        response = message.build_response()
        if self._deliver is None:
            return
        timer = threading.Timer(self.latency_ms / 1000.0, self._deliver, args=(response,))
        timer.daemon = True
        timer.start()

    def send_keepalive(self) -> None:
        with self._lock:
            self.stats.keepalives_received += 1
