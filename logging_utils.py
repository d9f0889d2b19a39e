import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

LOG_DIR = Path("logs")
LOG_PATH = LOG_DIR / "slot_advancer.log"
LOG_PANEL_LINES = 200

NOISY_LOGGERS = [
    "selenium",
    "selenium.webdriver.remote.remote_connection",
    "urllib3",
    "urllib3.connectionpool",
    "requests",
    "WDM",
    "werkzeug",
]


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        return json.dumps(payload, ensure_ascii=False)


class LogPanelHandler(logging.Handler):
    """Keeps the most recent log lines for the control panel."""

    def __init__(self, capacity: int = LOG_PANEL_LINES) -> None:
        super().__init__(level=logging.INFO)
        self._lines = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = f"[{time.strftime('%H:%M:%S', time.localtime(record.created))}] {record.getMessage()}"
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        with self._lock:
            self._lines.append(line)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)


def configure_logging(
    *, debug: bool = False, json_logs: bool = False, log_path: Optional[Path] = None
) -> LogPanelHandler:
    level = logging.DEBUG if debug else logging.INFO
    path = Path(log_path) if log_path else LOG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    stream_handler = logging.StreamHandler()
    file_handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8")
    handlers = [file_handler, stream_handler]

    if json_logs:
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    for handler in handlers:
        handler.setFormatter(formatter)

    panel = LogPanelHandler()
    logging.basicConfig(level=level, handlers=handlers + [panel], force=True)

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.info("Slot advancer logs will rotate under %s", path.resolve())
    return panel
