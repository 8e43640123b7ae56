from __future__ import annotations

from dataclasses import dataclass, field
import errno
from pathlib import Path
from typing import Literal, Protocol

StreamKind = Literal["stdout", "stderr"]


@dataclass(frozen=True)
class ProcessLaunch:
    args: tuple[str, ...]
    cwd: Path
    env: dict[str, str] | None = field(default=None)


@dataclass(frozen=True)
class OutputChunk:
    stream: StreamKind
    text: str


class SupervisedProcess(Protocol):
    pid: int | None

    def read_chunk(self, timeout: float) -> OutputChunk | None:
        """Next decoded chunk, or ``None`` if nothing arrived within *timeout*."""
        ...

    @property
    def streams_closed(self) -> bool: ...

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def terminate(self) -> None: ...


class ProcessLauncher(Protocol):
    def start(self, launch: ProcessLaunch) -> SupervisedProcess:
        """Spawn the process. Raises ``OSError`` when it cannot be started."""
        ...


def classify_spawn_error(exc: OSError) -> str:
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return "ENOENT"
    if isinstance(exc, PermissionError) or exc.errno == errno.EACCES:
        return "EACCES"
    return "OTHER"


def describe_spawn_error(executable: str, exc: OSError) -> str:
    kind = classify_spawn_error(exc)
    if kind == "ENOENT":
        return f"{executable} executable not found on PATH. Install it and retry.\n"
    if kind == "EACCES":
        return f"Permission denied while starting {executable}: {exc}\n"
    return f"Failed to start {executable}: {exc}\n"
