"""Local logging for refinery.

Two streams under ``<data dir>/logs``:

- ``local-YYYY-MM-DD.log``: the ``refinery`` logger (module loggers
  feed into it)
- ``memory-events-YYYY-MM-DD.log``: one line per refinement event, for
  reviewing what a session did without reading the database
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from refinery.utils import get_refinery_home

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _log_dir() -> Path:
    log_dir = get_refinery_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_refinery_logging(owner_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``refinery`` logger with a daily file handler.

    The console shows WARNING and above, or everything at DEBUG. Calling
    this twice does not add duplicate handlers. Unknown level names fall
    back to INFO.
    """
    level_name = (level or "INFO").upper()
    if level_name not in _VALID_LEVELS:
        level_name = "INFO"

    logger = logging.getLogger("refinery")
    logger.setLevel(getattr(logging, level_name))
    logger.propagate = False

    log_file = _log_dir() / f"local-{_today()}.log"
    formatter = logging.Formatter(LOG_FORMAT)

    has_file = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console = next(
        (
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ),
        None,
    )
    if console is None:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)
    console.setLevel(logging.DEBUG if level_name == "DEBUG" else logging.WARNING)

    logger.debug(f"Logging initialised for owner={owner_id} at {level_name}")
    return logger


def log_memory_event(event_type: str, details: str, owner_id: str = "default") -> None:
    """Append one line to today's memory-events log.

    Events are written after the change they describe has committed, so an
    unwritable log directory is reported and otherwise ignored.
    """
    ts = datetime.now(timezone.utc).isoformat(timespec="seconds")
    try:
        event_file = _log_dir() / f"memory-events-{_today()}.log"
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(f"{ts} | {event_type} | owner={owner_id} | {details}\n")
    except OSError as e:
        logger.warning(f"Could not write memory event ({event_type}): {e}")


def log_refinement(
    owner_id: str,
    session_id: str,
    operation: str,
    result_type: str,
    target: Optional[Any] = None,
) -> None:
    parts = [f"session={session_id[:8]}", f"op={operation}", f"result={result_type}"]
    if target is not None:
        parts.append(f"target={target}")
    log_memory_event("refine", ", ".join(parts), owner_id=owner_id)


def log_rollback(
    owner_id: str,
    session_id: str,
    pre_session_mass: int,
    post_compression_mass: int,
    threshold: float,
    reverted: Dict[str, int],
) -> None:
    counts = ", ".join(f"{k}={v}" for k, v in reverted.items())
    log_memory_event(
        "rollback",
        f"session={session_id[:8]}, mass={pre_session_mass}->{post_compression_mass}, "
        f"threshold={threshold}, {counts}",
        owner_id=owner_id,
    )
