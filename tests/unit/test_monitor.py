"""Unit tests for the installation monitor state machine."""

import pytest
from unittest.mock import AsyncMock, Mock

from kvm_spinup.exceptions import (
    CrashError,
    DomainNotFoundError,
    InstallTimeoutError,
    StuckInstallError,
)
from kvm_spinup.models import InstallationState
from kvm_spinup.monitor import ActivityTracker, InstallationMonitor

RUNNING = InstallationState.RUNNING
PAUSED = InstallationState.PAUSED
SHUT_OFF = InstallationState.SHUT_OFF


class FakeClock:
    """Simulated time advanced only by the monitor's sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_libvirt(states, activity=None):
    """States are consumed one per poll; the last one repeats."""
    libvirt = Mock()
    states = list(states)

    async def state(vm_name):
        return states.pop(0) if len(states) > 1 else states[0]

    libvirt.get_domain_state = AsyncMock(side_effect=state)
    counters = list(activity or [None])

    async def block_activity(vm_name):
        return counters.pop(0) if len(counters) > 1 else counters[0]

    libvirt.get_block_activity = AsyncMock(side_effect=block_activity)
    libvirt.resume = AsyncMock()
    return libvirt


def make_monitor(libvirt, clock, timeout=1800, interval=10, stuck=300):
    return InstallationMonitor(
        libvirt,
        install_timeout=timeout,
        poll_interval=interval,
        stuck_threshold=stuck,
        clock=clock,
        sleep=clock.sleep,
    )


class TestInstallationMonitor:
    """Test monitor outcomes."""

    @pytest.mark.asyncio
    async def test_shut_off_is_success(self):
        clock = FakeClock()
        libvirt = make_libvirt([RUNNING, RUNNING, SHUT_OFF], activity=[100, 200])

        state = await make_monitor(libvirt, clock).wait("web-01")

        assert state is SHUT_OFF
        assert clock.now == 20

    @pytest.mark.asyncio
    async def test_stuck_before_timeout(self):
        """Test activity followed by 301s of silence ends well before 1800s."""
        clock = FakeClock()
        libvirt = make_libvirt([RUNNING], activity=[100, 500, 900])

        with pytest.raises(StuckInstallError) as exc_info:
            await make_monitor(libvirt, clock).wait("web-01")

        assert exc_info.value.idle_seconds > 300
        # Last increase seen at t=20; stuck declared on the first poll past 320s
        assert clock.now == 330
        assert clock.now < 1800

    @pytest.mark.asyncio
    async def test_no_stuck_before_any_activity(self):
        """Test an install that never touched its disk runs to the timeout instead."""
        clock = FakeClock()
        libvirt = make_libvirt([RUNNING], activity=[0])

        with pytest.raises(InstallTimeoutError):
            await make_monitor(libvirt, clock, timeout=600).wait("web-01")

        assert clock.now == 600

    @pytest.mark.asyncio
    async def test_steady_activity_not_stuck(self):
        clock = FakeClock()
        counters = list(range(0, 10000, 100))
        states = [RUNNING] * 60 + [SHUT_OFF]
        libvirt = make_libvirt(states, activity=counters)

        assert await make_monitor(libvirt, clock).wait("web-01") is SHUT_OFF

    @pytest.mark.asyncio
    async def test_paused_is_resumed_not_terminal(self):
        clock = FakeClock()
        libvirt = make_libvirt([PAUSED, PAUSED, RUNNING, SHUT_OFF], activity=[10])

        assert await make_monitor(libvirt, clock).wait("web-01") is SHUT_OFF

        assert libvirt.resume.await_count == 2
        libvirt.resume.assert_awaited_with("web-01")

    @pytest.mark.asyncio
    async def test_paused_forever_keeps_polling_until_timeout(self):
        clock = FakeClock()
        libvirt = make_libvirt([PAUSED])

        with pytest.raises(InstallTimeoutError):
            await make_monitor(libvirt, clock, timeout=100).wait("web-01")

        assert libvirt.resume.await_count == 10

    @pytest.mark.asyncio
    async def test_crashed_fails_immediately(self):
        clock = FakeClock()
        libvirt = make_libvirt([RUNNING, InstallationState.CRASHED], activity=[1])

        with pytest.raises(CrashError):
            await make_monitor(libvirt, clock).wait("web-01")

        assert clock.now == 10

    @pytest.mark.asyncio
    async def test_not_found_fails_immediately(self):
        clock = FakeClock()
        libvirt = make_libvirt([InstallationState.NOT_FOUND])

        with pytest.raises(DomainNotFoundError):
            await make_monitor(libvirt, clock).wait("web-01")

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_other_states_count_against_timeout(self):
        clock = FakeClock()
        libvirt = make_libvirt([InstallationState.OTHER])

        with pytest.raises(InstallTimeoutError) as exc_info:
            await make_monitor(libvirt, clock, timeout=50).wait("web-01")

        assert exc_info.value.timeout == 50
        libvirt.get_block_activity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        clock = FakeClock()
        libvirt = make_libvirt([RUNNING, SHUT_OFF], activity=[1])
        seen = []

        await make_monitor(libvirt, clock).wait("web-01", lambda s, e: seen.append((s, e)))

        assert seen == [(RUNNING, 0), (SHUT_OFF, 10)]

    @pytest.mark.asyncio
    async def test_real_clock_with_shrunk_thresholds(self):
        """Test configurable thresholds keep a real-time run short."""
        libvirt = make_libvirt([RUNNING], activity=[5])
        monitor = InstallationMonitor(
            libvirt, install_timeout=5, poll_interval=0.01, stuck_threshold=0.05
        )

        with pytest.raises(StuckInstallError):
            await monitor.wait("web-01")

    def test_from_config(self, app_config):
        monitor = InstallationMonitor.from_config(Mock(), app_config)
        assert monitor.install_timeout == 1800
        assert monitor.poll_interval == 10
        assert monitor.stuck_threshold == 300


class TestActivityTracker:
    """Test activity bookkeeping."""

    def test_unavailable_counters_ignored(self):
        tracker = ActivityTracker()
        tracker.observe(None, 5)
        assert not tracker.started

    def test_first_nonzero_sample_counts(self):
        tracker = ActivityTracker()
        tracker.observe(42, 5)
        assert tracker.started
        assert tracker.idle_for(15) == 10

    def test_unchanged_counter_not_activity(self):
        tracker = ActivityTracker()
        tracker.observe(0, 0)
        tracker.observe(0, 10)
        assert not tracker.started
        tracker.observe(7, 20)
        tracker.observe(7, 30)
        assert tracker.idle_for(30) == 10
