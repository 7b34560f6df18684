"""Per-session debug log files under the config directory."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SessionLog:
    """Mirrors the ``idesync`` logger into ``debug_port<port>_<timestamp>.log`` while paired."""

    def __init__(self, log_dir: Optional[Path], logger_name: str = "idesync") -> None:
        self._log_dir = log_dir
        self._target = logging.getLogger(logger_name)
        self._handler: Optional[logging.FileHandler] = None
        self.path: Optional[Path] = None

    def start(self, port: int) -> Optional[Path]:
        self.stop()
        if self._log_dir is None:
            return None

        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        path = self._log_dir / f"debug_port{port}_{stamp}.log"
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to create session log {path}: {e}")
            return None

        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._target.addHandler(handler)
        self._handler = handler
        self.path = path
        logger.info(f"Writing session log to {path}")
        return path

    def stop(self) -> None:
        handler, self._handler = self._handler, None
        if handler is None:
            return
        self._target.removeHandler(handler)
        handler.close()
        self.path = None
