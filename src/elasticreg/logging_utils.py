"""
Logging helpers.

Registration runs can take minutes, so logs go to a stable file location by
default. Convergence warnings are routed into the same file through
`logging.captureWarnings`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

ENV_LOG_LEVEL = "ELASTICREG_LOG_LEVEL"


def default_log_dir() -> Path:
    if os.name == "nt":
        base = os.environ.get("LOCALAPPDATA") or os.environ.get("APPDATA") or str(Path.home())
        return Path(base) / "ElasticReg" / "logs"

    xdg_state_home = os.environ.get("XDG_STATE_HOME")
    if xdg_state_home:
        return Path(xdg_state_home) / "elasticreg" / "logs"

    return Path.home() / ".local" / "state" / "elasticreg" / "logs"


def _parse_log_level(level: str | int) -> int:
    if isinstance(level, int):
        return int(level)
    value = str(level).strip().upper()
    if not value:
        return logging.INFO
    return int(getattr(logging, value, logging.INFO))


def setup_logging(
    *,
    log_level: str | int = "INFO",
    log_dir: Optional[str | Path] = None,
    filename: str = "elasticreg.log",
) -> Optional[Path]:
    """
    Configure root logging to a UTF-8 file.

    Idempotent: when a FileHandler is already attached its path is returned
    and nothing is added. Returns None when the log file cannot be created.
    """
    root = logging.getLogger()

    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            return Path(handler.baseFilename)

    level = _parse_log_level(os.environ.get(ENV_LOG_LEVEL) or log_level)
    root.setLevel(level)

    resolved_dir = Path(log_dir) if log_dir is not None else default_log_dir()
    try:
        resolved_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None

    log_path = resolved_dir / filename

    fmt = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s] %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    try:
        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
    except OSError:
        return None
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    root.info("Logging initialized: %s (level=%s)", log_path, logging.getLevelName(level))
    return log_path
