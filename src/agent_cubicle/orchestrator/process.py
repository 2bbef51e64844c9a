"""Subprocess boundary: spawn an agent CLI and stream its output."""

from __future__ import annotations

import codecs
import logging
import os
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from agent_cubicle.orchestrator.errors import ProcessError

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096


@dataclass(slots=True)
class SpawnRequest:
    """Everything needed to launch one agent process."""

    command: str
    args: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessHandlers:
    """Callbacks invoked from reader threads; on_exit fires after all output."""

    on_stdout: Callable[[str], None]
    on_stderr: Callable[[str], None]
    on_exit: Callable[[int | None], None]


class AgentProcess(Protocol):
    """Handle to a running agent, exclusively owned by the instance manager."""

    @property
    def pid(self) -> int | None: ...

    def write(self, text: str) -> None:
        """Write text to the process input stream."""

    def terminate(self) -> None:
        """Ask the process to exit; output is not guaranteed to be flushed."""


Spawner = Callable[[SpawnRequest, ProcessHandlers], AgentProcess]


class SubprocessAgentProcess:
    """Popen wrapper with one reader thread per output stream."""

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        handlers: ProcessHandlers,
        *,
        kill_after_seconds: float = 2.0,
    ) -> None:
        self._process = process
        self._handlers = handlers
        self._kill_after_seconds = kill_after_seconds
        self._write_lock = threading.Lock()
        self._readers = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, handlers.on_stdout),
                daemon=True,
                name=f"agent-stdout-{process.pid}",
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, handlers.on_stderr),
                daemon=True,
                name=f"agent-stderr-{process.pid}",
            ),
        ]
        self._waiter = threading.Thread(
            target=self._wait_for_exit,
            daemon=True,
            name=f"agent-exit-{process.pid}",
        )

    def start(self) -> None:
        for reader in self._readers:
            reader.start()
        self._waiter.start()

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def write(self, text: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise ProcessError("Agent process has no input stream.")
        with self._write_lock:
            try:
                stdin.write(text.encode("utf-8"))
                stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as error:
                raise ProcessError(f"Agent process input is closed: {error}") from error

    def terminate(self) -> None:
        if self._process.poll() is not None:
            return
        try:
            self._process.terminate()
        except OSError:
            return
        killer = threading.Timer(self._kill_after_seconds, self._kill_if_running)
        killer.daemon = True
        killer.start()

    def _kill_if_running(self) -> None:
        if self._process.poll() is not None:
            return
        try:
            self._process.kill()
        except OSError:
            return

    def _wait_for_exit(self) -> None:
        returncode = self._process.wait()
        for reader in self._readers:
            reader.join()
        if self._process.stdin is not None:
            try:
                self._process.stdin.close()
            except OSError:
                pass
        self._handlers.on_exit(returncode)


def spawn_process(request: SpawnRequest, handlers: ProcessHandlers) -> SubprocessAgentProcess:
    """Launch the provider command with piped stdio and start streaming."""

    request.cwd.mkdir(parents=True, exist_ok=True)
    env = os.environ.copy()
    env.update(request.env)
    try:
        process = subprocess.Popen(  # noqa: S603
            [request.command, *request.args],
            cwd=request.cwd,
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as error:
        raise ProcessError(f"Agent command not found: {request.command}") from error
    except OSError as error:
        raise ProcessError(f"Agent process failed to start: {error}") from error

    agent_process = SubprocessAgentProcess(process, handlers)
    agent_process.start()
    logger.debug("Spawned %s (pid=%s) in %s", request.command, process.pid, request.cwd)
    return agent_process


def _pump(stream: IO[bytes] | None, sink: Callable[[str], None]) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    # read1 returns as soon as any bytes are available, so prompts without a
    # trailing newline are delivered immediately.
    read = getattr(stream, "read1", stream.read)
    try:
        while True:
            data = read(_READ_CHUNK_BYTES)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                _deliver(sink, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            _deliver(sink, tail)
    except (OSError, ValueError):
        logger.debug("Output stream closed while reading", exc_info=True)
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _deliver(sink: Callable[[str], None], text: str) -> None:
    try:
        sink(text)
    except Exception:
        logger.exception("Output handler failed")
