"""Logging setup for xci.

Terminal logging stays at WARNING unless ``XCI_LOG_LEVEL`` says otherwise, so
job output is not interleaved with lifecycle lines. ``XCI_LOG_FILE`` keeps a
persistent INFO log, and every run also records its own lifecycle lines in
``<run_dir>/xci.log`` through :func:`run_log`.
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
from typing import Iterator

ROOT_LOGGER = "xci"
RUN_LOG_FILE = "xci.log"
_HANDLER_ATTR = "_xci_handler_id"
_STREAM_HANDLER_ID = "xci_stream"
_FILE_HANDLER_ID = "xci_file"
_RUN_HANDLER_ID = "xci_run"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _env_level(default: int = logging.WARNING) -> int:
    name = os.environ.get("XCI_LOG_LEVEL", "").strip().upper()
    value = logging.getLevelName(name) if name else None
    return value if isinstance(value, int) else default


def _tagged(handler: logging.Handler, handler_id: str, level: int) -> logging.Handler:
    setattr(handler, _HANDLER_ATTR, handler_id)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    return handler


def _find(logger: logging.Logger, handler_id: str) -> logging.Handler | None:
    return next(
        (h for h in logger.handlers if getattr(h, _HANDLER_ATTR, None) == handler_id),
        None,
    )


def _drop(logger: logging.Logger, handler_id: str) -> None:
    handler = _find(logger, handler_id)
    if handler is not None:
        logger.removeHandler(handler)
        handler.close()


def _sync_logger_level(logger: logging.Logger) -> None:
    levels = [handler.level for handler in logger.handlers if getattr(handler, _HANDLER_ATTR, None)]
    logger.setLevel(min(levels) if levels else logging.WARNING)


def setup_logging(*, level: int | None = None) -> None:
    """Configure the ``xci`` logger; safe to call more than once."""
    logger = logging.getLogger(ROOT_LOGGER)
    stream_level = level if level is not None else _env_level()

    stream = _find(logger, _STREAM_HANDLER_ID)
    if stream is None:
        logger.addHandler(_tagged(logging.StreamHandler(), _STREAM_HANDLER_ID, stream_level))
    else:
        stream.setLevel(stream_level)

    raw_path = os.environ.get("XCI_LOG_FILE", "").strip()
    if not raw_path:
        _drop(logger, _FILE_HANDLER_ID)
    else:
        path = Path(raw_path).expanduser().resolve()
        current = _find(logger, _FILE_HANDLER_ID)
        if not isinstance(current, logging.FileHandler) or Path(current.baseFilename) != path:
            _drop(logger, _FILE_HANDLER_ID)
            path.parent.mkdir(parents=True, exist_ok=True)
            current = logging.FileHandler(path, encoding="utf-8")
            logger.addHandler(current)
        _tagged(current, _FILE_HANDLER_ID, min(stream_level, logging.INFO))

    _sync_logger_level(logger)


@contextlib.contextmanager
def run_log(run_dir: Path) -> Iterator[Path]:
    """Record INFO lifecycle lines in ``<run_dir>/xci.log`` while active."""
    logger = logging.getLogger(ROOT_LOGGER)
    path = Path(run_dir) / RUN_LOG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    _drop(logger, _RUN_HANDLER_ID)
    logger.addHandler(
        _tagged(logging.FileHandler(path, encoding="utf-8"), _RUN_HANDLER_ID, logging.INFO)
    )
    _sync_logger_level(logger)
    try:
        yield path
    finally:
        _drop(logger, _RUN_HANDLER_ID)
        _sync_logger_level(logger)
