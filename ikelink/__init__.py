"""
ikelink - reliable request delivery and peer liveness for IKEv2-style sessions.

This package provides request retransmission on a backoff schedule,
coordinated liveness checks (on-demand and DPD) and alarm routing back to
per-session event threads.
"""

__version__ = "1.0.0"
__author__ = "ikelink Contributors"
