from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from xci.models import ConfigError

_log = logging.getLogger("xci.utils")

REDACTED = "<redacted>"
REDACTED_FLAGS = frozenset({"--secret-file", "--env-file", "--var-file"})

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_UNSAFE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_SLASHES_RE = re.compile(r"[\\/]+")
_NEEDS_QUOTING_RE = re.compile(r"[\s\"'\\]")
_MAX_SEGMENT_LEN = 64


def stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def sha1_hex(value: Any) -> str:
    payload = value if isinstance(value, str) else stable_json(value)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except Exception:
        # Clean up the temp file so we don't leave partial writes on disk.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    if not path.exists():
        return iter(())

    def _iter() -> Iterator[dict[str, Any]]:
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    _log.warning(
                        "Skipping corrupt JSONL line %d in %s", line_number, path
                    )

    return _iter()


def append_jsonl(path: Path, record: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(stable_json(dict(record)) + "\n")
    except OSError as exc:
        _log.error("Failed to append JSONL record to %s: %s", path, exc)
        raise


def sanitize_path_segment(value: str, fallback: str) -> str:
    text = _SLASHES_RE.sub("-", value.strip())
    text = _UNSAFE_SEGMENT_RE.sub("-", text).strip("-")
    text = text[:_MAX_SEGMENT_LEN]
    return text or fallback


def ensure_within_base(base_dir: Path, candidate: Path, *, label: str) -> Path:
    base = base_dir.resolve()
    resolved = candidate.resolve()
    if resolved != base and base not in resolved.parents:
        raise ConfigError(f"Invalid {label}: path escapes base directory")
    return resolved


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def quote_arg(value: str) -> str:
    if not value:
        return '""'
    if _NEEDS_QUOTING_RE.search(value):
        return json.dumps(value)
    return value


def redact_args(args: Sequence[str]) -> list[str]:
    """Replace the values of secret-bearing file flags with ``REDACTED``.

    Both ``--flag value`` and ``--flag=value`` spellings are handled.
    """
    redacted: list[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            redacted.append(REDACTED)
            hide_next = False
            continue
        if arg in REDACTED_FLAGS:
            redacted.append(arg)
            hide_next = True
            continue
        flag, sep, _value = arg.partition("=")
        if sep and flag in REDACTED_FLAGS:
            redacted.append(f"{flag}={REDACTED}")
            continue
        redacted.append(arg)
    return redacted


def format_command(args: Sequence[str]) -> str:
    return " ".join(quote_arg(arg) for arg in redact_args(args))
