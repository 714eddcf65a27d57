"""
Logging configuration for cisflow runs.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOG_PATH = Path("cisflow_data") / "cisflow.log"


class _FastFileHandler(logging.FileHandler):
    """File handler that can fsync on flush so `tail -f` sees lines immediately."""

    def __init__(self, filename, mode="a", encoding=None, delay=False, *, fsync=False):
        super().__init__(filename, mode=mode, encoding=encoding, delay=delay)
        self._fsync = bool(fsync)

    def flush(self):
        super().flush()
        if self._fsync and self.stream and hasattr(self.stream, "fileno"):
            try:
                os.fsync(self.stream.fileno())
            except OSError:
                # fsync is best effort on pipes and special files
                pass


def _env_flag(name: str) -> bool:
    v = os.environ.get(name)
    if v is None:
        return False
    return v not in ("0", "false", "False", "no", "NO", "")


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    console_level: Optional[str] = None,
) -> logging.Logger:
    """
    Setup logging configuration.

    Args:
        level: Logging level for the log file (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path (default: cisflow_data/cisflow.log)
        format_string: Custom format string
        console_level: Level for the stdout handler (default: WARNING)

    Returns:
        Configured logger
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    log_path = LOG_PATH if log_file is None else Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fh = _FastFileHandler(log_path, encoding="utf-8", fsync=_env_flag("CISFLOW_LOG_FSYNC"))
    fh.setFormatter(logging.Formatter(format_string))
    fh.setLevel(getattr(logging, level.upper()))
    root.addHandler(fh)

    # Console handler (quiet by default)
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(getattr(logging, (console_level or "WARNING").upper()))
    ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(ch)

    return logging.getLogger("cisflow")
