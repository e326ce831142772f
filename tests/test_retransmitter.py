"""
Tests for ikelink.retransmitter module.
"""

import pytest

from ikelink.retransmitter import Retransmitter, RetransmitterState
from ikelink.scheduler import SessionCommand


class RecordingRetransmitter(Retransmitter):
    """Retransmitter that logs its side effects."""

    def __init__(self, scheduler, message, timeouts, log=None):
        super().__init__(scheduler, message, timeouts)
        self.log = log if log is not None else []
        self.sends = 0
        self.failures = 0

    def send(self):
        self.sends += 1
        self.log.append(("send", self.retransmit_count))

    def handle_retransmission_failure(self):
        self.failures += 1
        self.log.append(("failure", self.retransmit_count))


class FailingSendRetransmitter(RecordingRetransmitter):
    """Retransmitter whose first sends raise like a broken socket."""

    def __init__(self, scheduler, message, timeouts, fail_first):
        super().__init__(scheduler, message, timeouts)
        self.fail_first = fail_first
        self.attempts = 0

    def send(self):
        self.attempts += 1
        if self.attempts <= self.fail_first:
            raise OSError("network unreachable")
        super().send()


class LoggingScheduler:
    """Scheduler that writes into the same log as the retransmitter."""

    def __init__(self, log):
        self.log = log

    def send_delayed(self, token, event, delay_ms):
        self.log.append(("arm", delay_ms))

    def cancel(self, token):
        self.log.append(("cancel",))


class TestRetransmit:
    """Tests for the retransmit tick."""

    def test_initial_state(self, fake_scheduler):
        """Test a new retransmitter is allowed with no attempts."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])

        assert rt.state == RetransmitterState.ALLOWED
        assert rt.retransmit_count == 0
        assert rt.get_message() == b"req"
        assert fake_scheduler.armed == []

    def test_send_before_arming(self):
        """Test the send happens before the next timer is armed."""
        log = []
        rt = RecordingRetransmitter(LoggingScheduler(log), b"req", [500], log=log)

        rt.retransmit()

        assert log == [("send", 0), ("arm", 500)]
        assert rt.retransmit_count == 1

    def test_schedule_indexed_by_attempt(self, fake_scheduler):
        """Test the Nth tick uses schedule[N-1] as its delay."""
        schedule = [500, 1000, 2000, 4000, 8000]
        rt = RecordingRetransmitter(fake_scheduler, b"req", schedule)

        for n in range(1, len(schedule) + 1):
            rt.retransmit()
            assert rt.retransmit_count == n
            token, event, delay = fake_scheduler.armed[-1]
            assert delay == schedule[n - 1]
            assert token is rt
            assert event.what == SessionCommand.RETRANSMIT
            assert event.obj is rt

        assert rt.sends == len(schedule)
        assert rt.failures == 0

    def test_exhaustion_reports_failure_once(self, fake_scheduler):
        """Test running off the schedule calls the failure hook without sending."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()
        rt.retransmit()
        armed_before = len(fake_scheduler.armed)

        rt.retransmit()

        assert rt.failures == 1
        assert rt.sends == 2
        assert len(fake_scheduler.armed) == armed_before
        # Reported, not self-terminated
        assert rt.state == RetransmitterState.ALLOWED

    def test_backoff_timeline(self, fake_scheduler):
        """Test sends land at 0, 1000 and 3000ms and the tick at 7000ms fails."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [1000, 2000, 4000])
        now = 0
        send_times = []

        for _ in range(3):
            sends_before = rt.sends
            rt.retransmit()
            if rt.sends > sends_before:
                send_times.append(now)
            now += fake_scheduler.armed[-1][2]

        assert send_times == [0, 1000, 3000]
        assert now == 7000

        rt.retransmit()
        assert rt.failures == 1
        assert rt.sends == 3

    def test_empty_schedule_fails_first_tick(self, fake_scheduler):
        """Test an empty schedule is terminal on the first tick."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [])

        rt.retransmit()

        assert rt.sends == 0
        assert rt.failures == 1
        assert fake_scheduler.armed == []

    def test_send_error_still_advances_schedule(self, fake_scheduler):
        """Test a raising send is counted as an attempt and the next tick is armed."""
        rt = FailingSendRetransmitter(fake_scheduler, b"req", [500, 1000], fail_first=1)

        rt.retransmit()

        assert rt.retransmit_count == 1
        assert fake_scheduler.pending(rt)[-1][2] == 500

        rt.retransmit()
        rt.retransmit()

        assert rt.sends == 1
        assert rt.failures == 1

    def test_send_error_on_every_attempt_reports_failure(self, fake_scheduler):
        """Test a transport that always fails still ends in the failure hook."""
        rt = FailingSendRetransmitter(fake_scheduler, b"req", [500, 500, 500], fail_first=99)

        for _ in range(4):
            rt.retransmit()

        assert rt.sends == 0
        assert rt.failures == 1

    def test_no_message_is_noop(self, fake_scheduler):
        """Test a retransmitter without a message never sends."""
        rt = RecordingRetransmitter(fake_scheduler, None, [500])

        rt.retransmit()

        assert rt.sends == 0
        assert rt.failures == 0
        assert fake_scheduler.armed == []


class TestStop:
    """Tests for stop_retransmitting."""

    def test_stop_cancels_and_finishes(self, fake_scheduler):
        """Test stop cancels this instance's timers."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()

        rt.stop_retransmitting()

        assert rt.state == RetransmitterState.FINISHED
        assert fake_scheduler.pending(rt) == []

    def test_stop_is_absorbing(self, fake_scheduler):
        """Test nothing revives a finished retransmitter."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()
        rt.stop_retransmitting()
        count = rt.retransmit_count

        rt.retransmit()
        rt.suspend_retransmitting()
        rt.restart_retransmitting()
        rt.stop_retransmitting()

        assert rt.state == RetransmitterState.FINISHED
        assert rt.sends == 1
        assert rt.retransmit_count == count
        assert fake_scheduler.pending(rt) == []

    def test_stop_only_affects_own_timers(self, fake_scheduler):
        """Test retransmitters sharing a scheduler do not cancel each other."""
        first = RecordingRetransmitter(fake_scheduler, b"a", [500])
        second = RecordingRetransmitter(fake_scheduler, b"b", [500])
        first.retransmit()
        second.retransmit()

        first.stop_retransmitting()

        assert fake_scheduler.pending(first) == []
        assert len(fake_scheduler.pending(second)) == 1
        assert second.state == RetransmitterState.ALLOWED


class TestSuspendRestart:
    """Tests for suspending and restarting."""

    def test_suspend_cancels_timers(self, fake_scheduler):
        """Test suspend moves to SUSPENDED and drops pending ticks."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()

        rt.suspend_retransmitting()

        assert rt.state == RetransmitterState.SUSPENDED
        assert fake_scheduler.pending(rt) == []

    def test_retransmit_while_suspended_is_noop(self, fake_scheduler):
        """Test a stray tick does nothing while suspended."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()
        rt.suspend_retransmitting()

        rt.retransmit()

        assert rt.sends == 1
        assert rt.retransmit_count == 1

    def test_restart_is_fresh_start(self, fake_scheduler):
        """Test restart resets the attempt count and sends immediately."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000, 2000])
        rt.retransmit()
        rt.retransmit()
        rt.suspend_retransmitting()

        rt.restart_retransmitting()

        assert rt.state == RetransmitterState.ALLOWED
        assert rt.sends == 3
        assert rt.retransmit_count == 1
        assert fake_scheduler.pending(rt)[-1][2] == 500
        assert rt.get_message() == b"req"

    def test_restart_from_allowed_is_noop(self, fake_scheduler):
        """Test restart only acts on a suspended retransmitter."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500, 1000])
        rt.retransmit()

        rt.restart_retransmitting()

        assert rt.sends == 1
        assert rt.retransmit_count == 1

    @pytest.mark.parametrize("setup", ["finished", "suspended"])
    def test_suspend_outside_allowed_is_noop(self, fake_scheduler, setup):
        """Test suspend does not change FINISHED or SUSPENDED."""
        rt = RecordingRetransmitter(fake_scheduler, b"req", [500])
        if setup == "finished":
            rt.stop_retransmitting()
            expected = RetransmitterState.FINISHED
        else:
            rt.suspend_retransmitting()
            expected = RetransmitterState.SUSPENDED

        rt.suspend_retransmitting()

        assert rt.state == expected
