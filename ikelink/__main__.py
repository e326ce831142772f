"""
Entry point for ikelink.

Runs a session against an in-memory peer and reports liveness checks.

Run with: python -m ikelink --loss 0.3 --checks 5
"""

from __future__ import annotations

import argparse
import sys
import threading
import time

from .config import (
    CONFIG_FILE,
    RuntimeConfig,
    load_config_file,
    apply_config_file,
    save_default_config,
)
from .exceptions import InvalidParamsError, SessionClosedError
from .liveness import LivenessStatus
from .logging_setup import setup_logging, log_block
from .metrics import MetricsCollector, SessionCaller, UnderlyingNetworkType
from .session import IkeSession, SessionCallback
from .transport import SimulatedPeer


class _ReportingCallback(SessionCallback):
    """Prints session events and counts finished checks."""

    def __init__(self):
        self.finished = threading.Semaphore(0)
        self.closed = threading.Event()

    def on_liveness_status_changed(self, status: LivenessStatus) -> None:
        print(f"  liveness: {status.name}")
        if status in (LivenessStatus.SUCCESS, LivenessStatus.FAILURE):
            self.finished.release()

    def on_error(self, error) -> None:
        print(f"  error: {error}")

    def on_closed(self) -> None:
        self.closed.set()

    def on_closed_with_error(self, error) -> None:
        print(f"  session closed: {error}")
        self.closed.set()
        self.finished.release()


def _parse_schedule(value: str) -> tuple:
    try:
        return tuple(int(v) for v in value.split(",") if v.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid schedule: {value!r}")


def main(argv=None):
    """Main entry point for ikelink."""
    ap = argparse.ArgumentParser(
        description="ikelink - IKE session liveness and retransmission simulator"
    )
    ap.add_argument(
        "--loss",
        type=float,
        default=0.0,
        help="Probability that the peer drops a request (default: 0.0)",
    )
    ap.add_argument(
        "--latency-ms",
        type=float,
        default=5.0,
        help="Peer response latency in milliseconds (default: 5)",
    )
    ap.add_argument(
        "--schedule",
        type=_parse_schedule,
        help="Retransmission timeouts in ms, comma separated (e.g. 500,1000,2000)",
    )
    ap.add_argument(
        "--checks",
        type=int,
        default=3,
        help="Number of on-demand liveness checks to run (default: 3)",
    )
    ap.add_argument(
        "--seed",
        type=int,
        help="Random seed for the simulated peer",
    )
    ap.add_argument(
        "--caller",
        choices=[c.name.lower() for c in SessionCaller],
        default="unspecified",
        help="Kind of client the session is recorded for (default: unspecified)",
    )
    ap.add_argument(
        "--network",
        choices=[n.name.lower() for n in UnderlyingNetworkType],
        default="unspecified",
        help="Underlying network the session is recorded for (default: unspecified)",
    )
    ap.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable file logging",
    )
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    ap.add_argument(
        "--config",
        help=f"Path to config file (default: {CONFIG_FILE})",
    )
    ap.add_argument(
        "--init-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    args = ap.parse_args(argv)

    # Generate default config if requested
    if args.init_config:
        config_path = args.config or CONFIG_FILE
        if save_default_config(config_path):
            print(f"Default configuration saved to: {config_path}")
            sys.exit(0)
        else:
            print(f"Failed to save configuration to: {config_path}")
            sys.exit(1)

    # File config first, CLI args take precedence
    config = RuntimeConfig(log_to_file=not args.no_log_file)
    try:
        apply_config_file(config, load_config_file(args.config))
    except InvalidParamsError as e:
        ap.error(f"{args.config or CONFIG_FILE}: {e}")
    if args.no_log_file:
        config.log_to_file = False
    if args.log_level:
        config.log_level = args.log_level
    if args.schedule:
        config.session.retransmission_timeouts_ms = args.schedule

    try:
        config.session.validate()
    except InvalidParamsError as e:
        ap.error(str(e))

    setup_logging(
        log_to_file=config.log_to_file,
        log_to_console=True,
        log_level=config.log_level,
    )

    peer = SimulatedPeer(latency_ms=args.latency_ms, loss_rate=args.loss, seed=args.seed)
    callback = _ReportingCallback()
    metrics = MetricsCollector(
        SessionCaller[args.caller.upper()],
        UnderlyingNetworkType[args.network.upper()],
    )
    session = IkeSession(config.session, peer, callback, metrics=metrics)
    peer.connect(session.receive_message)
    session.start()

    log_block(
        "SESSION",
        [
            f"id        : {session.session_id}",
            f"SPI       : {session.local_spi:016x}",
            f"schedule  : {list(config.session.retransmission_timeouts_ms)} ms",
            f"peer loss : {args.loss:.0%}",
        ],
    )

    # Worst case for one check is the whole schedule
    check_timeout = sum(config.session.retransmission_timeouts_ms) / 1000.0 + 1.0

    try:
        for i in range(args.checks):
            if session.is_closed:
                break
            print(f"Check {i + 1}/{args.checks}")
            try:
                session.request_liveness_check()
            except SessionClosedError:
                break
            if not callback.finished.acquire(timeout=check_timeout):
                print("  timed out waiting for the check to finish")
                break
        if not session.is_closed:
            session.close()
        callback.closed.wait(timeout=2.0)
        # Let the callback executor drain the last metric sample
        time.sleep(0.05)
    except KeyboardInterrupt:
        session.close()

    print(metrics.format_summary())
    print(
        f"Peer: requests={peer.stats.requests_received} "
        f"dropped={peer.stats.requests_dropped} responses={peer.stats.responses_sent}"
    )


if __name__ == "__main__":
    main()
