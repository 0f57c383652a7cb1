"""
Kickstart delivery endpoint.

Serves the directory of rendered kickstart files over HTTP on all interfaces
so guests on the libvirt NAT network can fetch them during boot. The server
runs as a child process whose pid is recorded on disk, which lets a later
run find and terminate a listener left behind by an earlier one.
"""

import asyncio
import os
import secrets
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from .commands import CommandBuilder, CommandRunner
from .config import AppConfig
from .exceptions import DependencyError, TransportError
from .logging import logger
from .models import EndpointHandle
from .scope import ResourceType, RunScope, ScopedResource

PROBE_FILENAME = "test_http.txt"
TERMINATE_GRACE = 2.0


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DeliveryEndpoint:
    """Starts, verifies and stops the kickstart HTTP server."""

    def __init__(
        self,
        config: AppConfig,
        runner: CommandRunner,
        scope: RunScope,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.scope = scope
        self.http_transport = http_transport
        self._registrations: Dict[int, ScopedResource] = {}

    async def start(self, directory: Path, port: int) -> EndpointHandle:
        """
        Start serving directory on port and confirm it answers.

        Returns:
            EndpointHandle: Handle of the verified server; also stored on the scope

        Raises:
            TransportError: If the server cannot be confirmed reachable
        """
        await self.terminate_stale(port)
        directory.mkdir(parents=True, exist_ok=True)

        logger.info(f"Starting HTTP server on port {port}", port=port, directory=str(directory))
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "http.server",
            str(port),
            "--bind",
            "0.0.0.0",
            "--directory",
            str(directory),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        pid_file = self.config.pid_file
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(f"{process.pid}\n")

        handle = EndpointHandle(
            directory=directory,
            port=port,
            pid=process.pid,
            pid_file=pid_file,
            process=process,
        )
        registered = self.scope.register(
            ResourceType.ENDPOINT, f"http://0.0.0.0:{port}", lambda: self.stop(handle)
        )
        self._registrations[handle.pid] = registered

        try:
            await self.verify(handle)
        except TransportError:
            await self.scope.release(self._registrations.pop(handle.pid))
            raise

        self.scope.endpoint = handle
        logger.info(f"HTTP server running on http://0.0.0.0:{port}", port=port, pid=process.pid)
        return handle

    async def verify(self, handle: EndpointHandle) -> None:
        """Write a probe file and fetch it back through the server."""
        probe_path = handle.directory / PROBE_FILENAME
        token = secrets.token_hex(8)
        probe_path.write_text(token)

        async def remove_probe() -> None:
            probe_path.unlink(missing_ok=True)

        probe = self.scope.register(ResourceType.TEMP_FILE, str(probe_path), remove_probe)
        url = f"http://127.0.0.1:{handle.port}/{PROBE_FILENAME}"
        try:
            async with httpx.AsyncClient(timeout=2.0, transport=self.http_transport) as client:
                for attempt in range(1, self.config.probe_attempts + 1):
                    process = handle.process
                    if process is not None and getattr(process, "returncode", None) is not None:
                        raise TransportError("HTTP server exited during startup", url)
                    try:
                        response = await client.get(url)
                        if response.status_code == 200 and response.text.strip() == token:
                            logger.debug(f"Endpoint probe succeeded on attempt {attempt}", attempt=attempt)
                            return
                    except httpx.HTTPError as e:
                        logger.debug(f"Endpoint probe attempt {attempt} failed: {e}", attempt=attempt)
                    await asyncio.sleep(self.config.probe_interval)
        finally:
            await self.scope.release(probe)

        raise TransportError(
            f"HTTP server not responding after {self.config.probe_attempts} attempts", url
        )

    async def is_healthy(self, handle: EndpointHandle) -> bool:
        process = handle.process
        if process is not None and getattr(process, "returncode", None) is not None:
            return False
        try:
            async with httpx.AsyncClient(timeout=2.0, transport=self.http_transport) as client:
                await client.get(f"http://127.0.0.1:{handle.port}/")
        except httpx.HTTPError:
            return False
        return True

    async def ensure(self, directory: Path, port: int) -> EndpointHandle:
        """Reuse the scope's endpoint if it still answers, otherwise (re)start it."""
        handle = self.scope.endpoint
        if handle is not None and handle.directory == directory and handle.port == port:
            if await self.is_healthy(handle):
                return handle
            logger.warning("HTTP server is not responding, restarting", port=port)
            registered = self._registrations.pop(handle.pid, None)
            if registered is not None:
                await self.scope.release(registered)
            else:
                await self.stop(handle)
        return await self.start(directory, port)

    async def stop(self, handle: EndpointHandle) -> None:
        """Terminate the server process and remove its pid file."""
        process = handle.process
        if process is not None and getattr(process, "returncode", None) is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        elif process is None and pid_alive(handle.pid):
            await self._terminate_pid(handle.pid)

        try:
            if handle.pid_file.read_text().strip() == str(handle.pid):
                handle.pid_file.unlink()
        except FileNotFoundError:
            pass

        if self.scope.endpoint is handle:
            self.scope.endpoint = None
        logger.info("HTTP server stopped", port=handle.port, pid=handle.pid)

    async def terminate_stale(self, port: int) -> None:
        """Kill a listener left on the port by an earlier run."""
        pids: List[int] = []
        pid_file = self.config.pid_file
        try:
            recorded = int(pid_file.read_text().strip())
            if recorded != os.getpid() and pid_alive(recorded):
                pids.append(recorded)
        except (FileNotFoundError, ValueError):
            pass

        try:
            stdout, _, _ = await self.runner.run(CommandBuilder.lsof_listener(port), check=False)
            for line in stdout.split():
                if line.isdigit() and int(line) != os.getpid() and int(line) not in pids:
                    pids.append(int(line))
        except DependencyError:
            logger.debug("lsof not available, relying on pid file only")

        for pid in pids:
            logger.warning(f"Terminating stale listener on port {port}", port=port, pid=pid)
            await self._terminate_pid(pid)

        pid_file.unlink(missing_ok=True)

    async def _terminate_pid(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError as e:
            raise TransportError(f"cannot terminate pid {pid}: {e}", f"port {self.config.http_port}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + TERMINATE_GRACE
        while loop.time() < deadline:
            if not pid_alive(pid):
                return
            await asyncio.sleep(0.1)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
