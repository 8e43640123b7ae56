from __future__ import annotations

from collections import deque
from pathlib import Path
import time
from typing import Iterable

import pytest

from xci.executors.base import OutputChunk, ProcessLaunch, StreamKind


class FakeProcess:
    """Scripted stand-in for a supervised child process."""

    def __init__(
        self,
        chunks: Iterable[tuple[StreamKind, str]] = (),
        *,
        exit_code: int = 0,
        hold_open: bool = False,
    ):
        self.pid: int | None = 4242
        self._chunks = deque(OutputChunk(stream, text) for stream, text in chunks)
        self.exit_code = exit_code
        self.hold_open = hold_open
        self.terminated = False

    def _running(self) -> bool:
        return self.hold_open and not self.terminated

    def read_chunk(self, timeout: float) -> OutputChunk | None:
        if self._chunks:
            return self._chunks.popleft()
        if self._running():
            time.sleep(min(timeout, 0.01))
        return None

    @property
    def streams_closed(self) -> bool:
        return not self._chunks and not self._running()

    def poll(self) -> int | None:
        if self._running():
            return None
        return -15 if self.terminated else self.exit_code

    def wait(self, timeout: float | None = None) -> int:
        code = self.poll()
        return self.exit_code if code is None else code

    def terminate(self) -> None:
        self.terminated = True


class FakeLauncher:
    """Hands out scripted processes keyed by the ``--job`` argument."""

    def __init__(self, scripts: dict[str, FakeProcess | OSError] | None = None):
        self.scripts = dict(scripts or {})
        self.launches: list[ProcessLaunch] = []

    def start(self, launch: ProcessLaunch) -> FakeProcess:
        self.launches.append(launch)
        args = list(launch.args)
        job_id = args[args.index("--job") + 1]
        script = self.scripts.get(job_id)
        if isinstance(script, OSError):
            raise script
        return script if script is not None else FakeProcess()

    @property
    def started_jobs(self) -> list[str]:
        return [launch.args[launch.args.index("--job") + 1] for launch in self.launches]


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


def write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")
