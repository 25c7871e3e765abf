"""Pseudo-terminal processes backing interactive task sessions."""
from __future__ import annotations

import asyncio
import errno
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Sequence

import ptyprocess


DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int]], None]

READ_CHUNK = 65536

# Everything a spawner may raise when the child cannot be started.
SPAWN_ERRORS = (OSError, subprocess.SubprocessError, ptyprocess.PtyProcessError)


@dataclass(frozen=True)
class TerminalSize:
    cols: int = 80
    rows: int = 30


class TerminalProcess(Protocol):
    pid: int
    size: TerminalSize

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, size: TerminalSize) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[..., Awaitable[TerminalProcess]]


class PtyProcess:
    """Child process running on a pseudo-terminal from :mod:`ptyprocess`.

    Output is read from the terminal descriptor by the running event loop and
    handed to ``on_data`` chunk by chunk, in the order the kernel delivers it.
    ``on_exit`` fires once after the child closes its terminal and is reaped;
    it never fires for a process stopped through :meth:`kill`.
    """

    def __init__(self, pty: ptyprocess.PtyProcess, size: TerminalSize) -> None:
        self._pty = pty
        self._loop = asyncio.get_running_loop()
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None
        self._closed = False
        self._reaper: asyncio.Task[Optional[int]] | None = None
        self.size = size

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        size: TerminalSize,
    ) -> "PtyProcess":
        pty = ptyprocess.PtyProcess.spawn(
            list(argv),
            cwd=str(cwd),
            env=dict(env),
            dimensions=(size.rows, size.cols),
        )
        return cls(pty, size)

    @property
    def pid(self) -> int:
        return self._pty.pid

    # ------------------------------------------------------------------
    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop.add_reader(self._pty.fd, self._handle_readable)

    def write(self, data: bytes) -> None:
        if self._closed:
            raise OSError(errno.EIO, "terminal is closed")
        self._pty.write(data)

    def resize(self, size: TerminalSize) -> None:
        if self._closed:
            raise OSError(errno.EIO, "terminal is closed")
        self._pty.setwinsize(size.rows, size.cols)
        self.size = size

    def kill(self) -> None:
        self._on_data = None
        self._on_exit = None
        # Once the reaper runs it owns waitpid for this child.
        if self._reaper is None:
            try:
                self._pty.kill(signal.SIGKILL)
            except (ProcessLookupError, ptyprocess.PtyProcessError):
                pass
        self._stop_reading()

    async def wait(self) -> Optional[int]:
        """Exit code of a killed or hung-up child; negative for a signal."""
        if self._reaper is None:
            raise RuntimeError("terminal is still running")
        return await asyncio.shield(self._reaper)

    # ------------------------------------------------------------------
    def _handle_readable(self) -> None:
        try:
            data = os.read(self._pty.fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once every slave descriptor has been closed.
            data = b""
        if data:
            if self._on_data is not None:
                self._on_data(data)
            return
        self._stop_reading()

    def _stop_reading(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._loop.remove_reader(self._pty.fd)
        self._reaper = self._loop.create_task(self._reap())

    async def _reap(self) -> Optional[int]:
        code = await asyncio.to_thread(self._wait_and_close)
        callback = self._on_exit
        self._on_data = None
        self._on_exit = None
        if callback is not None:
            callback(code)
        return code

    def _wait_and_close(self) -> Optional[int]:
        self._pty.wait()
        self._pty.close()
        if self._pty.signalstatus is not None:
            return -self._pty.signalstatus
        return self._pty.exitstatus


class FakePtyProcess:
    """Testing double that keeps terminal traffic in memory."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        size: TerminalSize,
        pid: int,
    ) -> None:
        self.argv = list(argv)
        self.cwd = Path(cwd)
        self.env = dict(env)
        self.size = size
        self.pid = pid
        self.written = bytearray()
        self.resizes: list[TerminalSize] = []
        self.killed = False
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def write(self, data: bytes) -> None:
        if self.killed:
            raise OSError(errno.EIO, "terminal is closed")
        self.written.extend(data)

    def resize(self, size: TerminalSize) -> None:
        self.resizes.append(size)
        self.size = size

    def kill(self) -> None:
        self.killed = True
        self._on_data = None
        self._on_exit = None

    # Test helpers -----------------------------------------------------
    def emit(self, data: bytes) -> None:
        if self._on_data is not None:
            self._on_data(data)

    def finish(self, code: int = 0) -> None:
        callback = self._on_exit
        self._on_data = None
        self._on_exit = None
        if callback is not None:
            callback(code)


class FakePtySpawner:
    """Spawner double handing out :class:`FakePtyProcess` instances."""

    def __init__(self, *, fail_with: BaseException | None = None) -> None:
        self.processes: list[FakePtyProcess] = []
        self.fail_with = fail_with

    async def __call__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        size: TerminalSize,
    ) -> FakePtyProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakePtyProcess(argv, cwd=cwd, env=env, size=size, pid=4000 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakePtyProcess:
        return self.processes[-1]
