"""
Clawgate - Gateway Supervisor
=============================
Manages the lifecycle of the backend gateway process.

The supervisor spawns the backend as a child process, waits for it to
become ready, watches it for exit and stops it on shutdown. Standard
output and error are inherited so backend logs go straight to the
container log; nothing is buffered here.

States:
    - "idle"     : Nothing started yet
    - "starting" : Process spawned, waiting for a readiness endpoint
    - "running"  : Backend answered a readiness endpoint
    - "stopping" : Stop requested, waiting for the process to exit
    - "stopped"  : Stopped on request
    - "failed"   : Spawn failed, readiness timed out or the process died early
    - "exited"   : Process exited unexpectedly after becoming ready

A crash is not restarted. Provisioning is one-shot per parent process:
once "failed" or "exited", launch() refuses and the proxy rejects traffic
until the wrapper itself is restarted.

Usage:
    supervisor = GatewaySupervisor(settings, token_store, probe)
    handle = await supervisor.ensure_running()   # start + wait_ready, single-flight
    await supervisor.stop()
    status = supervisor.status
"""

import asyncio
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from clawgate.auth import TokenStore
from clawgate.config import GatewaySettings
from clawgate.errors import (
    BackendUnavailableError,
    DoubleStartError,
    GatewayError,
    ProcessSpawnError,
)
from clawgate.readiness import ReadinessProbe


@dataclass
class BackendProcessHandle:
    """
    A spawned backend process.

    Attributes:
        process:        The asyncio subprocess.
        command:        argv used to start it.
        started_at:     ISO timestamp of the spawn.
        returncode:     Exit code once the process has exited.
        ready_endpoint: Readiness path that answered, once ready.
        exited:         Set when the process has exited.
    """

    process: asyncio.subprocess.Process
    command: list[str]
    started_at: str
    returncode: int | None = None
    ready_endpoint: str | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.returncode is None and not self.exited.is_set()

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        await self.exited.wait()
        return self.returncode


class GatewaySupervisor:
    """
    Owns the backend child process.

    At most one backend process is supervised at a time. All state is
    mutated on the event loop, so no lock is needed; concurrent start
    attempts are folded into one task by launch().

    Attributes:
        settings:   Resolved gateway settings.
        tokens:     Token store; its token is handed to the backend.
        probe:      Readiness probe for the backend target.
        state:      Current state string (see module docstring).
        last_error: Message describing the last failure, if any.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        tokens: TokenStore,
        probe: ReadinessProbe | None = None,
    ):
        self.settings = settings
        self.tokens = tokens
        self.probe = probe or ReadinessProbe(
            settings.target,
            endpoints=settings.ready_endpoints,
            timeout_ms=settings.startup_timeout_ms,
            interval_ms=settings.ready_interval_ms,
        )
        self.state: str = "idle"
        self.last_error: str | None = None

        self._handle: BackendProcessHandle | None = None
        self._spawning = False
        self._stopping = False
        self._start_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None

    @property
    def handle(self) -> BackendProcessHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        """Check if the backend process is alive (ready or not)."""
        return self._spawning or (self._handle is not None and self._handle.alive)

    @property
    def is_ready(self) -> bool:
        # The watcher moves "running" to "exited" as soon as the process dies.
        return self.state == "running"

    @property
    def status(self) -> dict[str, Any]:
        """
        Get a status snapshot. Contains no secrets.

        Returns:
            Dict with state, pid, timing and error information.
        """
        handle = self._handle
        return {
            "state": self.state,
            "is_running": self.is_running,
            "pid": handle.pid if handle else None,
            "start_time": handle.started_at if handle else None,
            "ready_endpoint": handle.ready_endpoint if handle else None,
            "exit_code": handle.returncode if handle else None,
            "last_error": self.last_error,
            "target": self.settings.target.http_url,
        }

    # -- Process lifecycle -----------------------------------------------------

    def build_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """
        Environment for the backend: parent environment plus the state,
        workspace, port and token variables the backend expects.
        """
        env = dict(os.environ)
        env.update({
            "OPENCLAW_STATE_DIR": self.settings.state_dir,
            "OPENCLAW_WORKSPACE_DIR": self.settings.workspace_dir,
            "OPENCLAW_GATEWAY_PORT": str(self.settings.target.port),
            "OPENCLAW_GATEWAY_TOKEN": self.tokens.get_or_create_token(),
        })
        if extra:
            env.update(extra)
        return env

    async def start(
        self,
        command: list[str] | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> BackendProcessHandle:
        """
        Spawn the backend process.

        Args:
            command: argv to run (default: the configured gateway command).
            env:     Extra environment variables layered over build_env().
            cwd:     Working directory (default: the workspace directory).

        Returns:
            Handle of the spawned process.

        Raises:
            DoubleStartError:  If a backend is already running or spawning.
            ProcessSpawnError: If the executable could not be launched.
        """
        if self.is_running:
            raise DoubleStartError(
                f"Backend is already running (pid {self._handle.pid if self._handle else '?'})"
            )

        argv = list(command) if command else self.settings.backend_argv
        if cwd is None:
            cwd = self.settings.workspace_dir
            os.makedirs(cwd, exist_ok=True)

        self._spawning = True
        self._stopping = False
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=self.build_env(env),
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=None,
                stderr=None,
            )
        except OSError as e:
            self.state = "failed"
            self.last_error = f"Cannot start backend {argv[0]!r}: {e}"
            print(f"[FATAL] {self.last_error}", flush=True)
            raise ProcessSpawnError(self.last_error) from e
        finally:
            self._spawning = False

        handle = BackendProcessHandle(
            process=process,
            command=argv,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._handle = handle
        self.state = "starting"
        self.last_error = None
        self._watch_task = asyncio.create_task(
            self._watch(handle), name=f"clawgate-watch-{process.pid}"
        )
        print(f"[GATEWAY] Started backend pid={process.pid}: {argv[0]}", flush=True)
        return handle

    async def wait_ready(
        self,
        endpoints: list[str] | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        """
        Wait for the started backend to answer a readiness endpoint.

        The probe is raced against process exit, so a backend that dies
        during startup fails the attempt without waiting out the timeout.

        Returns:
            The endpoint that answered.

        Raises:
            ReadinessTimeoutError: No endpoint answered in time.
            ProcessSpawnError:     The process exited before it was ready.
        """
        handle = self._handle
        if handle is None:
            raise ProcessSpawnError("Backend has not been started")

        probe_task = asyncio.create_task(
            self.probe.wait_ready(endpoints=endpoints, timeout_ms=timeout_ms)
        )
        exit_task = asyncio.create_task(handle.exited.wait())
        try:
            await asyncio.wait({probe_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (probe_task, exit_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(probe_task, exit_task, return_exceptions=True)

        if probe_task.cancelled() or not handle.alive:
            await self._fail(
                f"Backend exited with code {handle.returncode} before becoming ready"
            )
            raise ProcessSpawnError(self.last_error)

        error = probe_task.exception()
        if error is not None:
            await self._fail(str(error))
            raise error

        endpoint = probe_task.result()
        handle.ready_endpoint = endpoint
        self.state = "running"
        print(f"[GATEWAY] Backend ready on {self.settings.target.http_url}{endpoint}", flush=True)
        return endpoint

    def launch(self) -> asyncio.Task:
        """
        Start the backend and wait for readiness in a background task.

        Concurrent callers share one task. Once the backend has failed or
        exited it is not started again.

        Returns:
            The start-cycle task.

        Raises:
            BackendUnavailableError: If the backend failed or exited earlier.
        """
        if self._start_task is not None:
            return self._start_task
        if self.state in ("failed", "exited", "stopped"):
            raise BackendUnavailableError(self.last_error or f"Backend is {self.state}")

        task = asyncio.create_task(self._start_cycle(), name="clawgate-start")
        task.add_done_callback(_consume_exception)
        self._start_task = task
        return task

    async def ensure_running(self) -> BackendProcessHandle:
        """
        Return the handle of a ready backend, starting it if needed.

        Raises:
            BackendUnavailableError: If the backend failed or exited.
            GatewayError:            The error of the start cycle, if it fails now.
        """
        if self.is_ready:
            return self._handle
        await asyncio.shield(self.launch())
        if not self.is_ready:
            raise BackendUnavailableError(self.last_error or f"Backend is {self.state}")
        return self._handle

    async def stop(self, handle: BackendProcessHandle | None = None, timeout: float | None = None) -> dict:
        """
        Stop the backend: SIGTERM, then SIGKILL after the timeout.

        Args:
            handle:  Process to stop (default: the supervised one).
            timeout: Seconds to wait after SIGTERM (default: settings.stop_timeout).

        Returns:
            Current status dict.
        """
        handle = handle or self._handle
        start_task = self._start_task
        if start_task is not None and not start_task.done() and start_task is not asyncio.current_task():
            start_task.cancel()
        if handle is None or not handle.alive:
            if self.state in ("idle", "starting"):
                self.state = "stopped"
            return self.status

        timeout = self.settings.stop_timeout if timeout is None else timeout
        self._stopping = True
        self.state = "stopping"
        print(f"[GATEWAY] Stopping backend pid={handle.pid}", flush=True)

        _signal(handle.process, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            print(f"[WARN] Backend pid={handle.pid} ignored SIGTERM, killing", flush=True)
            _signal(handle.process, signal.SIGKILL)
            await handle.wait()

        if self.state == "stopping":
            self.state = "stopped"
        return self.status

    async def check_backend(self, timeout: float = 30.0) -> str:
        """
        Sanity check that the backend command exists: run it with --version.

        Returns:
            The trimmed version output.

        Raises:
            ProcessSpawnError: If the command is missing, fails or hangs.
        """
        argv = [*self.settings.command, "--version"]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Cannot run {argv[0]!r}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProcessSpawnError(f"{' '.join(argv)} did not finish within {timeout:g}s") from None

        if process.returncode != 0:
            detail = (stdout or stderr).decode("utf-8", errors="replace").strip()
            raise ProcessSpawnError(
                f"{' '.join(argv)} exited with code {process.returncode}: {detail}"
            )
        return stdout.decode("utf-8", errors="replace").strip()

    # -- Internal helpers ------------------------------------------------------

    async def _start_cycle(self) -> BackendProcessHandle:
        await self.start()
        await self.wait_ready()
        return self._handle

    async def _fail(self, message: str) -> None:
        """Record a failed start attempt and make sure the process is gone."""
        self.last_error = message
        print(f"[FATAL] {message}", flush=True)
        if self._handle is not None and self._handle.alive:
            await self.stop(self._handle)
        self.state = "failed"

    async def _watch(self, handle: BackendProcessHandle) -> None:
        """Wait for the process to exit and update the state."""
        try:
            handle.returncode = await handle.process.wait()
        finally:
            handle.exited.set()

        if self._stopping:
            print(f"[GATEWAY] Backend pid={handle.pid} exited with code {handle.returncode}", flush=True)
            return
        if self.state == "running":
            self.state = "exited"
            self.last_error = (
                f"Backend exited unexpectedly with code {handle.returncode}; "
                "restart the service to start it again"
            )
            print(f"[FATAL] {self.last_error}", flush=True)


def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        pass


def _consume_exception(task: asyncio.Task) -> None:
    # The failure is kept in state/last_error; ensure_running() re-raises it.
    if not task.cancelled():
        task.exception()
