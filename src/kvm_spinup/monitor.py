"""
Installation monitoring.

Polls a domain until the unattended install powers it off. A domain that
keeps running but stops touching its disks after having been busy is
declared stuck once the idle period passes the configured threshold, so an
installer waiting for input that never arrives fails in minutes rather than
running out the whole timeout.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from .config import AppConfig
from .exceptions import (
    CrashError,
    DomainNotFoundError,
    InstallTimeoutError,
    StuckInstallError,
)
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger
from .models import InstallationState

ProgressCallback = Callable[[InstallationState, float], None]


class ActivityTracker:
    """Remembers when the disk counters last moved."""

    def __init__(self) -> None:
        self.last_counter: Optional[int] = None
        self.last_activity: Optional[float] = None

    def observe(self, counter: Optional[int], now: float) -> None:
        if counter is None:
            return
        if self.last_counter is None:
            if counter > 0:
                self.last_activity = now
        elif counter > self.last_counter:
            self.last_activity = now
        self.last_counter = counter

    @property
    def started(self) -> bool:
        return self.last_activity is not None

    def idle_for(self, now: float) -> float:
        if self.last_activity is None:
            return 0.0
        return now - self.last_activity


class InstallationMonitor:
    """Waits for an installing domain to reach a terminal state."""

    def __init__(
        self,
        libvirt: LibvirtWrapper,
        install_timeout: float = 1800,
        poll_interval: float = 10,
        stuck_threshold: float = 300,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.libvirt = libvirt
        self.install_timeout = install_timeout
        self.poll_interval = poll_interval
        self.stuck_threshold = stuck_threshold
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, libvirt: LibvirtWrapper, config: AppConfig) -> "InstallationMonitor":
        return cls(
            libvirt,
            install_timeout=config.install_timeout,
            poll_interval=config.poll_interval,
            stuck_threshold=config.stuck_threshold,
        )

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def wait(
        self, vm_name: str, progress_callback: Optional[ProgressCallback] = None
    ) -> InstallationState:
        """
        Poll the domain until it shuts off.

        Args:
            vm_name: Domain to watch
            progress_callback: Called with (state, elapsed seconds) on every poll

        Returns:
            InstallationState: SHUT_OFF once the install has finished

        Raises:
            CrashError: The domain crashed
            DomainNotFoundError: The domain disappeared
            StuckInstallError: The domain went idle while running
            InstallTimeoutError: No terminal state within the timeout
        """
        log = logger.bind(vm_name=vm_name)
        log.info(
            f"Monitoring installation for {vm_name}",
            timeout=self.install_timeout,
        )
        start = self._now()
        activity = ActivityTracker()
        previous_state: Optional[InstallationState] = None

        while True:
            now = self._now()
            elapsed = now - start
            if elapsed >= self.install_timeout:
                log.error(f"Installation timeout for {vm_name}", elapsed=elapsed)
                raise InstallTimeoutError(vm_name, self.install_timeout)

            state = await self.libvirt.get_domain_state(vm_name)
            if state is not previous_state:
                log.info(f"VM {vm_name} state: {state.value}", state=state.value)
                previous_state = state
            if progress_callback:
                progress_callback(state, elapsed)

            if state is InstallationState.SHUT_OFF:
                log.info(
                    f"Installation completed for {vm_name} (VM shut down)",
                    elapsed=elapsed,
                )
                return state

            if state is InstallationState.CRASHED:
                raise CrashError(vm_name, state.value)

            if state is InstallationState.NOT_FOUND:
                raise DomainNotFoundError(vm_name)

            if state is InstallationState.PAUSED:
                log.warning(f"VM {vm_name} is paused. Resuming...")
                await self.libvirt.resume(vm_name)

            elif state is InstallationState.RUNNING:
                counter = await self.libvirt.get_block_activity(vm_name)
                activity.observe(counter, now)
                idle = activity.idle_for(now)
                if activity.started and idle > self.stuck_threshold:
                    log.warning(f"No disk activity for {idle:.0f}s; installation may be stuck")
                    raise StuckInstallError(vm_name, idle)

            await self._sleep(self.poll_interval)
