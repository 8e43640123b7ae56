from __future__ import annotations

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading
from typing import IO

from xci.executors.base import OutputChunk, ProcessLaunch, StreamKind

_log = logging.getLogger("xci.executors.process")

_READ_SIZE = 65536


def _signal_process_tree(process: subprocess.Popen[bytes], signum: int) -> None:
    if process.poll() is not None:
        return

    if os.name == "posix":
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            return
        except ProcessLookupError:
            return
        except OSError:
            pass

    try:
        process.send_signal(signum)
    except ProcessLookupError:
        return


class SubprocessProcess:
    """A child process whose stdout and stderr are drained by reader threads.

    Each stream is decoded incrementally so a multi-byte character split
    across reads is never mangled. Chunks from both streams land on a single
    queue in arrival order.
    """

    def __init__(self, process: subprocess.Popen[bytes]):
        self._process = process
        self.pid: int | None = process.pid
        self._chunks: queue.Queue[OutputChunk | None] = queue.Queue()
        self._open_streams = 0
        self._threads: list[threading.Thread] = []
        for kind, handle in (("stdout", process.stdout), ("stderr", process.stderr)):
            if handle is None:
                continue
            self._open_streams += 1
            thread = threading.Thread(
                target=self._pump,
                args=(kind, handle),
                name=f"xci-{kind}-{process.pid}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _pump(self, kind: StreamKind, handle: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(handle, "read1", handle.read)
        try:
            while True:
                data = read(_READ_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._chunks.put(OutputChunk(kind, text))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._chunks.put(OutputChunk(kind, tail))
        except (OSError, ValueError) as exc:
            _log.debug("stream_read_stopped stream=%s pid=%s error=%s", kind, self.pid, exc)
        finally:
            handle.close()
            self._chunks.put(None)

    def read_chunk(self, timeout: float) -> OutputChunk | None:
        while self._open_streams > 0:
            try:
                item = self._chunks.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is None:
                self._open_streams -= 1
                continue
            return item
        return None

    @property
    def streams_closed(self) -> bool:
        return self._open_streams == 0

    def poll(self) -> int | None:
        return self._process.poll()

    def wait(self, timeout: float | None = None) -> int:
        return self._process.wait(timeout=timeout)

    def terminate(self) -> None:
        _log.info("process_terminate pid=%s", self.pid)
        _signal_process_tree(self._process, signal.SIGTERM)


class SubprocessLauncher:
    name = "subprocess"

    def start(self, launch: ProcessLaunch) -> SubprocessProcess:
        env = dict(os.environ) if launch.env is None else dict(launch.env)
        process = subprocess.Popen(
            list(launch.args),
            cwd=str(launch.cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        _log.info("process_started pid=%s executable=%s", process.pid, launch.args[0])
        return SubprocessProcess(process)
