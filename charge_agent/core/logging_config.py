# charge_agent/core/logging_config.py
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

# Resolve log path relative to the project root to avoid surprises with CWD.
PROJECT_ROOT = Path(__file__).resolve().parents[2]

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]  %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Named logger for convenience imports; handlers are attached by setup_logging().
logger = logging.getLogger("charge_agent")


def setup_logging(log_dir: str = "logs", level: str = "INFO") -> Path:
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    path = Path(log_dir)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    path.mkdir(parents=True, exist_ok=True)
    log_file_path = path / "logs.log"

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    file_handler = TimedRotatingFileHandler(
        log_file_path,
        when="midnight",
        interval=1,
        backupCount=7,
        encoding="utf-8",
        delay=True,  # create file lazily
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # gpiozero and nats are chatty at INFO during reconnects.
    for name in ["nats", "gpiozero"]:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logger.setLevel(numeric_level)

    root_logger.info(f"✅ Logging initialized. Writing logs to: {log_file_path}")
    root_logger.info(f"logging start time UTC: {datetime.now(timezone.utc).isoformat()}")

    return log_file_path


__all__ = ["logging", "logger", "setup_logging"]
